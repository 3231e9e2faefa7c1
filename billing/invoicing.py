"""
Recurring invoice generation.

One pass scans for subscriptions whose ``next_due_date`` has arrived,
turns each into a pending invoice and moves its due date forward by one
billing period. Each subscription is handled in its own transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Optional, Union

from config import BILLING_SCHEDULE_TIMEZONE
from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .models import BillingFrequency
from .repository import BillingRepository
from .schedule import advance_due_date, as_utc

_LOGGER = get_logger("billing.invoicing")

SKIP_CLIENT_MISSING = "client_missing"
SKIP_SUBSCRIPTION_DELETED = "subscription_deleted"
SKIP_ALREADY_ADVANCED = "already_advanced"


@dataclass(frozen=True)
class ClientSnapshot:
    client_id: str
    name: str
    email: str


@dataclass(frozen=True)
class DueSubscription:
    subscription_id: str
    owner_id: str
    client_id: str
    amount_minor: int
    description: str
    frequency: BillingFrequency
    next_due_date: datetime
    client: Optional[ClientSnapshot] = None


@dataclass(frozen=True)
class GeneratedInvoice:
    subscription_id: str
    invoice_id: str
    due_date: datetime
    next_due_date: datetime


@dataclass(frozen=True)
class SkippedSubscription:
    subscription_id: str
    reason: str


@dataclass(frozen=True)
class FailedSubscription:
    subscription_id: str
    error: str


@dataclass
class GenerationReport:
    started_at: datetime
    due_count: int = 0
    processed: list[GeneratedInvoice] = field(default_factory=list)
    skipped: list[SkippedSubscription] = field(default_factory=list)
    failed: list[FailedSubscription] = field(default_factory=list)
    aborted: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "due_count": self.due_count,
            "processed": [
                {
                    "subscription_id": item.subscription_id,
                    "invoice_id": item.invoice_id,
                    "due_date": item.due_date.isoformat(),
                    "next_due_date": item.next_due_date.isoformat(),
                }
                for item in self.processed
            ],
            "skipped": [{"subscription_id": s.subscription_id, "reason": s.reason} for s in self.skipped],
            "failed": [{"subscription_id": f.subscription_id, "error": f.error} for f in self.failed],
            "aborted": self.aborted,
        }


def invoice_idempotency_key(subscription_id: str, due_date: datetime) -> str:
    return f"subscription:{subscription_id}:{as_utc(due_date).isoformat()}"


def find_due_subscriptions(repo: BillingRepository, now: datetime) -> list[DueSubscription]:
    """
    Subscriptions with ``next_due_date <= now``, oldest due first.

    Overdue subscriptions missed by an earlier pass are included. Each is
    paired with its client via a lookup by id; a deleted client leaves
    ``client`` as None.
    """

    due: list[DueSubscription] = []
    for subscription in repo.list_due_subscriptions(now):
        client = repo.get_client(subscription.client_id)
        due.append(
            DueSubscription(
                subscription_id=subscription.id,
                owner_id=subscription.owner_id,
                client_id=subscription.client_id,
                amount_minor=int(subscription.amount_minor),
                description=subscription.description,
                frequency=subscription.frequency,
                next_due_date=as_utc(subscription.next_due_date),
                client=(
                    ClientSnapshot(client_id=client.id, name=client.name, email=client.email)
                    if client is not None
                    else None
                ),
            )
        )
    return due


def generate_invoice(
    repo: BillingRepository,
    due: DueSubscription,
    *,
    now: Optional[datetime] = None,
    tz: Union[str, tzinfo, None] = None,
) -> Union[GeneratedInvoice, SkippedSubscription]:
    """
    Bill one due subscription: snapshot it into a pending invoice, then
    advance its due date by one period.

    Both writes belong to the caller's transaction. The invoice is keyed on
    subscription id plus due date, so repeating this for the same due date
    reuses the existing invoice.
    """

    if due.client is None:
        return SkippedSubscription(due.subscription_id, SKIP_CLIENT_MISSING)

    subscription = repo.get_subscription(due.subscription_id)
    if subscription is None:
        return SkippedSubscription(due.subscription_id, SKIP_SUBSCRIPTION_DELETED)
    if as_utc(subscription.next_due_date) != due.next_due_date:
        return SkippedSubscription(due.subscription_id, SKIP_ALREADY_ADVANCED)

    invoice = repo.create_invoice(
        owner_id=subscription.owner_id,
        client_name=due.client.name,
        client_email=due.client.email,
        description=subscription.description,
        amount=subscription.amount,
        idempotency_key=invoice_idempotency_key(subscription.id, due.next_due_date),
        now=now,
    )
    next_due = advance_due_date(
        due.next_due_date,
        subscription.frequency,
        tz=tz if tz is not None else BILLING_SCHEDULE_TIMEZONE,
    )
    repo.update_subscription_due_date(subscription.id, next_due, now=now)
    return GeneratedInvoice(
        subscription_id=subscription.id,
        invoice_id=invoice.id,
        due_date=due.next_due_date,
        next_due_date=next_due,
    )


def generate_due_invoices(
    session_factory: SessionFactory | None = None,
    *,
    now: Optional[datetime] = None,
    tz: Union[str, tzinfo, None] = None,
    isolate_failures: bool = True,
) -> GenerationReport:
    """
    Run one generation pass.

    With ``isolate_failures`` (the default) a subscription that fails is
    rolled back, recorded in the report and the pass moves on. Without it
    the first failure ends the pass, leaving later subscriptions for the
    next run.
    """

    current = as_utc(now) if now else datetime.now(timezone.utc)
    report = GenerationReport(started_at=current)

    with session_scope(session_factory) as session:
        due_items = find_due_subscriptions(BillingRepository(session), current)
    report.due_count = len(due_items)

    if not due_items:
        log_event(_LOGGER, logging.INFO, "billing.generation.nothing_due", now=current)
        return report
    log_event(_LOGGER, logging.INFO, "billing.generation.started", now=current, due_count=len(due_items))

    for item in due_items:
        if item.client is None:
            log_event(
                _LOGGER,
                logging.WARNING,
                "billing.generation.client_missing",
                subscription_id=item.subscription_id,
                client_id=item.client_id,
            )
            report.skipped.append(SkippedSubscription(item.subscription_id, SKIP_CLIENT_MISSING))
            continue

        try:
            with session_scope(session_factory) as session:
                outcome = generate_invoice(BillingRepository(session), item, now=current, tz=tz)
        except Exception as exc:  # noqa: BLE001
            report.failed.append(FailedSubscription(item.subscription_id, f"{type(exc).__name__}: {exc}"))
            log_event(
                _LOGGER,
                logging.ERROR,
                "billing.generation.subscription_failed",
                exc_info=True,
                subscription_id=item.subscription_id,
                isolate_failures=isolate_failures,
            )
            if not isolate_failures:
                report.aborted = True
                break
            continue

        if isinstance(outcome, SkippedSubscription):
            report.skipped.append(outcome)
            log_event(
                _LOGGER,
                logging.INFO,
                "billing.generation.subscription_skipped",
                subscription_id=outcome.subscription_id,
                reason=outcome.reason,
            )
            continue

        report.processed.append(outcome)
        log_event(
            _LOGGER,
            logging.INFO,
            "billing.generation.invoice_created",
            subscription_id=outcome.subscription_id,
            invoice_id=outcome.invoice_id,
            next_due_date=outcome.next_due_date,
        )

    log_event(
        _LOGGER,
        logging.ERROR if report.aborted else logging.INFO,
        "billing.generation.completed",
        processed=len(report.processed),
        skipped=len(report.skipped),
        failed=len(report.failed),
        aborted=report.aborted,
    )
    return report
