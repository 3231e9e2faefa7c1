from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional, Union

from sqlalchemy import delete, extract, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    BillingFrequency,
    Client,
    Invoice,
    InvoiceStatus,
    JobLock,
    PaymentAuditLog,
    Subscription,
)
from .db import session_scope
from .money import AmountLike, from_minor_units, to_minor_units
from .schedule import as_utc, parse_frequency


class BillingStateError(RuntimeError):
    pass


class InvoiceNotFoundError(BillingStateError):
    pass


class InvoiceAlreadyPaidError(BillingStateError):
    pass


class SubscriptionValidationError(BillingStateError):
    pass


def _required_text(value: Optional[str], field: str, *, max_length: int) -> str:
    normalized = str(value or "").strip()
    if not normalized:
        raise BillingStateError(f"{field} is required")
    return normalized[:max_length]


def _parse_amount(amount: AmountLike, *, allow_zero: bool = False) -> int:
    try:
        amount_minor = to_minor_units(amount)
    except ValueError as exc:
        raise BillingStateError("amount must be a valid number") from exc
    if amount_minor < 0 or (amount_minor == 0 and not allow_zero):
        raise BillingStateError("amount must be positive")
    return amount_minor


def _clamp_limit(limit: int) -> int:
    return max(1, min(int(limit), 500))


class BillingRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # -- clients -----------------------------------------------------------

    def create_client(
        self,
        *,
        owner_id: str,
        name: str,
        email: str,
        phone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Client:
        client = Client(
            owner_id=_required_text(owner_id, "owner_id", max_length=64),
            name=_required_text(name, "client name", max_length=200),
            email=_required_text(email, "client email", max_length=254),
            phone=str(phone).strip()[:32] if phone and str(phone).strip() else None,
            created_at=as_utc(now) if now else datetime.now(timezone.utc),
        )
        self.session.add(client)
        self.session.flush()
        return client

    def get_client(self, client_id: str) -> Optional[Client]:
        key = str(client_id or "").strip()
        if not key:
            return None
        return self.session.get(Client, key)

    def list_clients(self, owner_id: str, *, limit: int = 200, offset: int = 0) -> list[Client]:
        query = (
            select(Client)
            .where(Client.owner_id == owner_id)
            .order_by(Client.created_at.desc())
            .limit(_clamp_limit(limit))
            .offset(max(0, int(offset)))
        )
        return list(self.session.scalars(query).all())

    def delete_client(self, client_id: str, *, owner_id: str) -> bool:
        result = self.session.execute(
            delete(Client).where(Client.id == client_id, Client.owner_id == owner_id)
        )
        return bool(result.rowcount)

    # -- subscriptions -----------------------------------------------------

    def create_subscription(
        self,
        *,
        owner_id: str,
        client_id: str,
        amount: AmountLike,
        description: str,
        frequency: Union[str, BillingFrequency],
        next_due_date: datetime,
        now: Optional[datetime] = None,
    ) -> Subscription:
        try:
            parsed_frequency = parse_frequency(frequency)
        except ValueError as exc:
            raise SubscriptionValidationError(str(exc)) from exc
        try:
            amount_minor = _parse_amount(amount)
        except BillingStateError as exc:
            raise SubscriptionValidationError(str(exc)) from exc
        if next_due_date is None:
            raise SubscriptionValidationError("next_due_date is required")
        client = self.get_client(client_id)
        if client is None or client.owner_id != owner_id:
            raise SubscriptionValidationError(f"client not found: {client_id}")

        current = as_utc(now) if now else datetime.now(timezone.utc)
        subscription = Subscription(
            owner_id=owner_id,
            client_id=client.id,
            amount_minor=amount_minor,
            description=_required_text(description, "description", max_length=4000),
            frequency=parsed_frequency,
            next_due_date=as_utc(next_due_date),
            created_at=current,
            updated_at=current,
        )
        self.session.add(subscription)
        self.session.flush()
        return subscription

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        key = str(subscription_id or "").strip()
        if not key:
            return None
        return self.session.get(Subscription, key)

    def list_subscriptions(self, owner_id: str, *, limit: int = 200, offset: int = 0) -> list[Subscription]:
        query = (
            select(Subscription)
            .where(Subscription.owner_id == owner_id)
            .order_by(Subscription.next_due_date.asc(), Subscription.id.asc())
            .limit(_clamp_limit(limit))
            .offset(max(0, int(offset)))
        )
        return list(self.session.scalars(query).all())

    def delete_subscription(self, subscription_id: str, *, owner_id: str) -> bool:
        # Generated invoices are snapshots and stay untouched.
        result = self.session.execute(
            delete(Subscription).where(Subscription.id == subscription_id, Subscription.owner_id == owner_id)
        )
        return bool(result.rowcount)

    def list_due_subscriptions(self, now: datetime, *, limit: Optional[int] = None) -> list[Subscription]:
        query = (
            select(Subscription)
            .where(Subscription.next_due_date <= as_utc(now))
            .order_by(Subscription.next_due_date.asc(), Subscription.id.asc())
        )
        if limit is not None:
            query = query.limit(max(1, int(limit)))
        return list(self.session.scalars(query).all())

    def update_subscription_due_date(
        self,
        subscription_id: str,
        next_due_date: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> Subscription:
        subscription = self.get_subscription(subscription_id)
        if subscription is None:
            raise BillingStateError(f"subscription not found: {subscription_id}")
        new_due = as_utc(next_due_date)
        if new_due <= as_utc(subscription.next_due_date):
            raise BillingStateError(
                f"subscription {subscription_id} due date must move forward: "
                f"{as_utc(subscription.next_due_date).isoformat()} -> {new_due.isoformat()}"
            )
        subscription.next_due_date = new_due
        subscription.updated_at = as_utc(now) if now else datetime.now(timezone.utc)
        self.session.flush()
        return subscription

    # -- invoices ----------------------------------------------------------

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        key = str(invoice_id or "").strip()
        if not key:
            return None
        return self.session.get(Invoice, key)

    def get_invoice_by_idempotency_key(self, idempotency_key: str) -> Optional[Invoice]:
        return self.session.scalar(select(Invoice).where(Invoice.idempotency_key == idempotency_key))

    def create_invoice(
        self,
        *,
        owner_id: str,
        client_name: str,
        client_email: Optional[str],
        description: str,
        amount: AmountLike,
        status: Union[str, InvoiceStatus] = InvoiceStatus.PENDING,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Invoice:
        if idempotency_key:
            existing = self.get_invoice_by_idempotency_key(idempotency_key)
            if existing:
                return existing
        try:
            parsed_status = InvoiceStatus(str(getattr(status, "value", status) or "pending").strip().lower())
        except ValueError as exc:
            raise BillingStateError(f"unsupported invoice status: {status!r}") from exc

        current = as_utc(now) if now else datetime.now(timezone.utc)
        invoice = Invoice(
            owner_id=_required_text(owner_id, "owner_id", max_length=64),
            client_name=_required_text(client_name, "client name", max_length=200),
            client_email=str(client_email or "").strip()[:254],
            description=_required_text(description, "description", max_length=4000),
            amount_minor=_parse_amount(amount, allow_zero=True),
            status=parsed_status,
            idempotency_key=idempotency_key,
            paid_at=current if parsed_status == InvoiceStatus.PAID else None,
            created_at=current,
        )
        try:
            with self.session.begin_nested():
                self.session.add(invoice)
                self.session.flush()
        except IntegrityError:
            # Concurrent duplicate insert; fall back to the existing row.
            if idempotency_key:
                existing = self.get_invoice_by_idempotency_key(idempotency_key)
                if existing:
                    return existing
            raise
        return invoice

    def list_invoices(
        self,
        owner_id: str,
        *,
        status: Optional[InvoiceStatus] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> list[Invoice]:
        query = select(Invoice).where(Invoice.owner_id == owner_id).order_by(Invoice.created_at.desc())
        if status:
            query = query.where(Invoice.status == status)
        query = query.limit(_clamp_limit(limit)).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())

    def delete_invoice(self, invoice_id: str, *, owner_id: str) -> bool:
        result = self.session.execute(
            delete(Invoice).where(Invoice.id == invoice_id, Invoice.owner_id == owner_id)
        )
        return bool(result.rowcount)

    def mark_invoice_paid(
        self,
        invoice_id: str,
        *,
        paid_at: Optional[datetime] = None,
        payment_id: Optional[str] = None,
    ) -> Invoice:
        """
        Move an invoice from pending to paid.

        Paid is terminal: calling this on a paid invoice returns it unchanged,
        keeping the original paid_at and payment_id. The conditional UPDATE
        lets concurrent callbacks for one invoice race safely.
        """

        invoice = self.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"invoice not found: {invoice_id}")
        if invoice.status == InvoiceStatus.PAID:
            return invoice

        self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice.id, Invoice.status == InvoiceStatus.PENDING)
            .values(
                status=InvoiceStatus.PAID,
                paid_at=as_utc(paid_at) if paid_at else datetime.now(timezone.utc),
                payment_id=str(payment_id)[:128] if payment_id else None,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(invoice)
        return invoice

    # -- job locks ---------------------------------------------------------

    def try_acquire_job_lock(
        self,
        job_name: str,
        *,
        owner: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Claim ``job_name`` for ``owner`` until ``now + ttl_seconds``.

        An expired lock, or one already held by ``owner``, is taken over.
        """

        current = as_utc(now) if now else datetime.now(timezone.utc)
        locked_until = current + timedelta(seconds=max(1, int(ttl_seconds)))
        result = self.session.execute(
            update(JobLock)
            .where(
                JobLock.job_name == job_name,
                or_(JobLock.locked_until <= current, JobLock.owner == owner),
            )
            .values(owner=owner, locked_until=locked_until, acquired_at=current)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return True
        if self.session.get(JobLock, job_name) is not None:
            return False
        try:
            with self.session.begin_nested():
                self.session.add(
                    JobLock(job_name=job_name, owner=owner, locked_until=locked_until, acquired_at=current)
                )
                self.session.flush()
        except IntegrityError:
            # Another instance inserted the lock first.
            return False
        return True

    def release_job_lock(self, job_name: str, *, owner: str) -> bool:
        result = self.session.execute(
            delete(JobLock).where(JobLock.job_name == job_name, JobLock.owner == owner)
        )
        return bool(result.rowcount)

    # -- payment audit -----------------------------------------------------

    def record_payment_audit(
        self,
        *,
        provider: str,
        outcome: str,
        external_order_id: Optional[str] = None,
        external_payment_id: Optional[str] = None,
        signature: Optional[str] = None,
        signature_valid: bool = False,
        invoice_id: Optional[str] = None,
        detail: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> PaymentAuditLog:
        log = PaymentAuditLog(
            provider=str(provider or "mock")[:32],
            outcome=str(outcome or "")[:32] or "unknown",
            external_order_id=str(external_order_id)[:128] if external_order_id else None,
            external_payment_id=str(external_payment_id)[:128] if external_payment_id else None,
            signature=str(signature)[:512] if signature else None,
            signature_valid=bool(signature_valid),
            invoice_id=str(invoice_id)[:36] if invoice_id else None,
            detail=str(detail) if detail else None,
            occurred_at=as_utc(occurred_at) if occurred_at else datetime.now(timezone.utc),
        )
        self.session.add(log)
        self.session.flush()
        return log

    def list_payment_audit_logs(
        self,
        *,
        external_order_id: Optional[str] = None,
        outcome: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PaymentAuditLog]:
        query = select(PaymentAuditLog).order_by(PaymentAuditLog.occurred_at.desc())
        if external_order_id:
            query = query.where(PaymentAuditLog.external_order_id == external_order_id)
        if outcome:
            query = query.where(PaymentAuditLog.outcome == outcome)
        query = query.limit(_clamp_limit(limit)).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())

    def record_payment_audit_now(self, **fields: Any) -> None:
        """
        Write an audit row in a transaction of its own.

        For paths that raise right after recording: the caller's session is
        rolled back, the audit row must still be kept.
        """

        bind = self.session.get_bind()
        with session_scope(lambda: Session(bind=bind, expire_on_commit=False)) as audit_session:
            BillingRepository(audit_session).record_payment_audit(**fields)

    # -- reporting ---------------------------------------------------------

    def revenue_summary(self, *, owner_id: Optional[str] = None) -> dict[str, Any]:
        """
        Invoice totals grouped by status, plus client and invoice counts.

        Covers every owner unless ``owner_id`` is given.
        """

        totals_query = select(Invoice.status, func.coalesce(func.sum(Invoice.amount_minor), 0)).group_by(
            Invoice.status
        )
        invoice_count_query = select(func.count()).select_from(Invoice)
        client_count_query = select(func.count()).select_from(Client)
        if owner_id:
            totals_query = totals_query.where(Invoice.owner_id == owner_id)
            invoice_count_query = invoice_count_query.where(Invoice.owner_id == owner_id)
            client_count_query = client_count_query.where(Client.owner_id == owner_id)

        by_status = {status: int(total) for status, total in self.session.execute(totals_query).all()}
        pending_minor = by_status.get(InvoiceStatus.PENDING, 0)
        paid_minor = by_status.get(InvoiceStatus.PAID, 0)
        return {
            "total_clients": int(self.session.scalar(client_count_query) or 0),
            "total_invoices": int(self.session.scalar(invoice_count_query) or 0),
            "total_revenue": from_minor_units(sum(by_status.values())),
            "pending_revenue": from_minor_units(pending_minor),
            "paid_revenue": from_minor_units(paid_minor),
        }

    def monthly_paid_revenue(self, *, owner_id: Optional[str] = None) -> list[dict[str, Any]]:
        """
        Paid invoice amounts per calendar month of ``created_at`` (UTC),
        oldest first. Buckets are named ``"<year>-<month>"`` without zero
        padding, e.g. ``"2024-5"``.
        """

        year = extract("year", Invoice.created_at)
        month = extract("month", Invoice.created_at)
        query = (
            select(year, month, func.sum(Invoice.amount_minor))
            .where(Invoice.status == InvoiceStatus.PAID)
            .group_by(year, month)
            .order_by(year, month)
        )
        if owner_id:
            query = query.where(Invoice.owner_id == owner_id)
        buckets: list[dict[str, Any]] = []
        for bucket_year, bucket_month, total in self.session.execute(query).all():
            revenue: Decimal = from_minor_units(int(total or 0))
            buckets.append({"name": f"{int(bucket_year)}-{int(bucket_month)}", "revenue": revenue})
        return buckets
