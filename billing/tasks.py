"""Scheduled billing jobs."""

from __future__ import annotations

import logging
import os
import socket
from datetime import datetime, timezone
from typing import Final, Optional

from config import BILLING_JOB_LOCK_TTL_SECONDS
from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .invoicing import GenerationReport, generate_due_invoices
from .repository import BillingRepository
from .scheduler import BillingScheduler, SystemClock

_LOGGER = get_logger("billing.tasks")

GENERATION_JOB_NAME: Final[str] = "billing.generate_invoices"


def _default_lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def run_invoice_generation(
    now: Optional[datetime] = None,
    *,
    session_factory: SessionFactory | None = None,
    lock_owner: Optional[str] = None,
    lock_ttl_seconds: int = BILLING_JOB_LOCK_TTL_SECONDS,
    isolate_failures: bool = True,
) -> Optional[GenerationReport]:
    """
    Run one invoice generation pass under the shared job lock.

    Returns None when another instance holds the lock.
    """

    current = now or datetime.now(timezone.utc)
    owner = lock_owner or _default_lock_owner()

    with session_scope(session_factory) as session:
        acquired = BillingRepository(session).try_acquire_job_lock(
            GENERATION_JOB_NAME,
            owner=owner,
            ttl_seconds=lock_ttl_seconds,
            now=current,
        )
    if not acquired:
        log_event(
            _LOGGER,
            logging.WARNING,
            "billing.generate_invoices.lock_busy",
            job=GENERATION_JOB_NAME,
            owner=owner,
        )
        return None

    try:
        report = generate_due_invoices(session_factory, now=current, isolate_failures=isolate_failures)
    finally:
        with session_scope(session_factory) as session:
            BillingRepository(session).release_job_lock(GENERATION_JOB_NAME, owner=owner)

    log_event(
        _LOGGER,
        logging.INFO,
        "billing.generate_invoices.completed",
        job=GENERATION_JOB_NAME,
        processed=len(report.processed),
        skipped=len(report.skipped),
        failed=len(report.failed),
    )
    return report


def build_billing_scheduler(
    *,
    session_factory: SessionFactory | None = None,
    cron: Optional[str] = None,
    timezone_name: Optional[str] = None,
    clock: Optional[SystemClock] = None,
) -> BillingScheduler:
    def _job(now: datetime) -> Optional[GenerationReport]:
        return run_invoice_generation(now, session_factory=session_factory)

    return BillingScheduler(
        _job,
        cron=cron,
        timezone_name=timezone_name,
        clock=clock,
        job_name=GENERATION_JOB_NAME,
    )
