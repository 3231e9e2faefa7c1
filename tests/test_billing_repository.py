from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from billing import (
    BillingFrequency,
    BillingRepository,
    BillingStateError,
    InvoiceStatus,
    SubscriptionValidationError,
    build_session_factory,
    init_billing_db,
    session_scope,
)
from billing.schedule import as_utc


def make_db():
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_billing_db(engine)
    return engine, session_factory


def test_clients_are_scoped_to_their_owner() -> None:
    engine, session_factory = make_db()

    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        acme = repo.create_client(owner_id="alice", name="Acme Ltd", email="billing@acme.test", phone=" ")
        repo.create_client(owner_id="bob", name="Globex", email="ap@globex.test", phone="+911234567890")

        assert acme.phone is None
        assert [c.name for c in repo.list_clients("alice")] == ["Acme Ltd"]
        assert repo.delete_client(acme.id, owner_id="bob") is False
        assert repo.get_client(acme.id) is not None
        assert repo.delete_client(acme.id, owner_id="alice") is True
        assert repo.get_client(acme.id) is None

        with pytest.raises(BillingStateError, match="client email is required"):
            repo.create_client(owner_id="alice", name="No Email", email="")

    engine.dispose()


def test_create_subscription_validates_input() -> None:
    engine, session_factory = make_db()
    due = datetime(2024, 5, 1, tzinfo=timezone.utc)

    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        client = repo.create_client(owner_id="alice", name="Acme", email="billing@acme.test")

        with pytest.raises(SubscriptionValidationError, match="frequency"):
            repo.create_subscription(
                owner_id="alice",
                client_id=client.id,
                amount="10",
                description="Hosting",
                frequency="weekly",
                next_due_date=due,
            )
        with pytest.raises(SubscriptionValidationError, match="positive"):
            repo.create_subscription(
                owner_id="alice",
                client_id=client.id,
                amount="-5",
                description="Hosting",
                frequency="monthly",
                next_due_date=due,
            )
        with pytest.raises(SubscriptionValidationError, match="client not found"):
            repo.create_subscription(
                owner_id="bob",
                client_id=client.id,
                amount="10",
                description="Hosting",
                frequency="monthly",
                next_due_date=due,
            )

        subscription = repo.create_subscription(
            owner_id="alice",
            client_id=client.id,
            amount="1499.99",
            description="Hosting",
            frequency="Monthly",
            next_due_date=due,
        )
        assert subscription.frequency == BillingFrequency.MONTHLY
        assert subscription.amount_minor == 149999
        assert subscription.amount == Decimal("1499.99")

    engine.dispose()


def test_subscriptions_list_by_due_date_and_delete_keeps_invoices() -> None:
    engine, session_factory = make_db()
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)

    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        client = repo.create_client(owner_id="alice", name="Acme", email="billing@acme.test")
        later = repo.create_subscription(
            owner_id="alice",
            client_id=client.id,
            amount=100,
            description="Support",
            frequency="yearly",
            next_due_date=base + timedelta(days=30),
        )
        sooner = repo.create_subscription(
            owner_id="alice",
            client_id=client.id,
            amount=50,
            description="Hosting",
            frequency="monthly",
            next_due_date=base,
        )
        assert [s.id for s in repo.list_subscriptions("alice")] == [sooner.id, later.id]
        assert repo.list_subscriptions("bob") == []

        invoice = repo.create_invoice(
            owner_id="alice",
            client_name="Acme",
            client_email="billing@acme.test",
            description="Hosting",
            amount=50,
        )
        assert repo.delete_subscription(sooner.id, owner_id="bob") is False
        assert repo.delete_subscription(sooner.id, owner_id="alice") is True
        assert repo.get_subscription(sooner.id) is None
        assert repo.get_invoice(invoice.id) is not None

    engine.dispose()


def test_due_date_updates_must_move_forward() -> None:
    engine, session_factory = make_db()
    due = datetime(2024, 5, 1, tzinfo=timezone.utc)

    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        client = repo.create_client(owner_id="alice", name="Acme", email="billing@acme.test")
        subscription = repo.create_subscription(
            owner_id="alice",
            client_id=client.id,
            amount=10,
            description="Hosting",
            frequency="monthly",
            next_due_date=due,
        )
        with pytest.raises(BillingStateError, match="move forward"):
            repo.update_subscription_due_date(subscription.id, due)

        updated = repo.update_subscription_due_date(subscription.id, due + timedelta(days=31))
        assert as_utc(updated.next_due_date) == due + timedelta(days=31)

    engine.dispose()


def test_manual_invoice_defaults_and_idempotency_key() -> None:
    engine, session_factory = make_db()

    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        invoice = repo.create_invoice(
            owner_id="alice",
            client_name="Acme",
            client_email=None,
            description="Consulting",
            amount="2500.50",
        )
        assert invoice.status == InvoiceStatus.PENDING
        assert invoice.client_email == ""
        assert invoice.amount == Decimal("2500.50")
        assert invoice.paid_at is None

        with pytest.raises(BillingStateError, match="valid number"):
            repo.create_invoice(
                owner_id="alice",
                client_name="Acme",
                client_email="billing@acme.test",
                description="Consulting",
                amount="twelve",
            )

        first = repo.create_invoice(
            owner_id="alice",
            client_name="Acme",
            client_email="billing@acme.test",
            description="Hosting",
            amount=10,
            idempotency_key="subscription:s1:2024-05-01T00:00:00+00:00",
        )
        second = repo.create_invoice(
            owner_id="alice",
            client_name="Acme",
            client_email="billing@acme.test",
            description="Hosting",
            amount=10,
            idempotency_key="subscription:s1:2024-05-01T00:00:00+00:00",
        )
        assert first.id == second.id
        assert len(repo.list_invoices("alice")) == 2

        assert repo.delete_invoice(invoice.id, owner_id="bob") is False
        assert repo.delete_invoice(invoice.id, owner_id="alice") is True

    engine.dispose()


def test_mark_invoice_paid_is_terminal_and_idempotent() -> None:
    engine, session_factory = make_db()
    paid_at = datetime(2024, 5, 2, 10, 0, tzinfo=timezone.utc)

    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        invoice = repo.create_invoice(
            owner_id="alice",
            client_name="Acme",
            client_email="billing@acme.test",
            description="Hosting",
            amount=10,
        )
        repo.mark_invoice_paid(invoice.id, paid_at=paid_at, payment_id="pay_1")
        again = repo.mark_invoice_paid(invoice.id, paid_at=paid_at + timedelta(days=1), payment_id="pay_2")

        assert again.status == InvoiceStatus.PAID
        assert as_utc(again.paid_at) == paid_at
        assert again.payment_id == "pay_1"
        assert [i.id for i in repo.list_invoices("alice", status=InvoiceStatus.PAID)] == [invoice.id]

    engine.dispose()


def test_job_lock_excludes_other_owners_until_expiry() -> None:
    engine, session_factory = make_db()
    now = datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)

    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        assert repo.try_acquire_job_lock("billing.generate_invoices", owner="a", ttl_seconds=600, now=now)
        assert not repo.try_acquire_job_lock("billing.generate_invoices", owner="b", ttl_seconds=600, now=now)
        # Re-entrant for the holder.
        assert repo.try_acquire_job_lock("billing.generate_invoices", owner="a", ttl_seconds=600, now=now)

        later = now + timedelta(seconds=601)
        assert repo.try_acquire_job_lock("billing.generate_invoices", owner="b", ttl_seconds=600, now=later)
        assert repo.release_job_lock("billing.generate_invoices", owner="a") is False
        assert repo.release_job_lock("billing.generate_invoices", owner="b") is True

    engine.dispose()


def test_session_scope_rolls_back_on_error() -> None:
    engine, session_factory = make_db()

    try:
        with session_scope(session_factory) as session:
            repo = BillingRepository(session)
            repo.create_client(owner_id="alice", name="Acme", email="billing@acme.test")
            raise RuntimeError("force rollback")
    except RuntimeError:
        pass

    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        assert repo.list_clients("alice") == []

    engine.dispose()


def test_revenue_summary_and_monthly_paid_revenue() -> None:
    engine, session_factory = make_db()

    with session_scope(session_factory) as session:
        repo = BillingRepository(session)
        assert repo.revenue_summary() == {
            "total_clients": 0,
            "total_invoices": 0,
            "total_revenue": Decimal("0.00"),
            "pending_revenue": Decimal("0.00"),
            "paid_revenue": Decimal("0.00"),
        }
        assert repo.monthly_paid_revenue() == []

        repo.create_client(owner_id="alice", name="Acme", email="billing@acme.test")
        repo.create_client(owner_id="bob", name="Globex", email="ap@globex.test")
        rows = [
            ("alice", "100.00", "paid", datetime(2024, 4, 10, tzinfo=timezone.utc)),
            ("alice", "50.25", "paid", datetime(2024, 5, 2, tzinfo=timezone.utc)),
            ("alice", "20", "pending", datetime(2024, 5, 3, tzinfo=timezone.utc)),
            ("bob", "10", "paid", datetime(2024, 5, 20, tzinfo=timezone.utc)),
        ]
        for owner_id, amount, status, created_at in rows:
            repo.create_invoice(
                owner_id=owner_id,
                client_name="Client",
                client_email="client@example.test",
                description="Hosting",
                amount=amount,
                status=status,
                now=created_at,
            )

        assert repo.revenue_summary() == {
            "total_clients": 2,
            "total_invoices": 4,
            "total_revenue": Decimal("180.25"),
            "pending_revenue": Decimal("20.00"),
            "paid_revenue": Decimal("160.25"),
        }
        alice = repo.revenue_summary(owner_id="alice")
        assert (alice["total_clients"], alice["total_invoices"]) == (1, 3)
        assert alice["paid_revenue"] == Decimal("150.25")

        assert repo.monthly_paid_revenue() == [
            {"name": "2024-4", "revenue": Decimal("100.00")},
            {"name": "2024-5", "revenue": Decimal("60.25")},
        ]
        assert repo.monthly_paid_revenue(owner_id="bob") == [{"name": "2024-5", "revenue": Decimal("10.00")}]

    engine.dispose()
