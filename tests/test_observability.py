from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal

from observability import JsonLogFormatter, log_event


def _format(record: logging.LogRecord) -> dict:
    return json.loads(JsonLogFormatter().format(record))


def test_log_event_fields_are_serialized_as_json(caplog) -> None:
    logger = logging.getLogger("billing.test")
    with caplog.at_level(logging.INFO, logger="billing.test"):
        log_event(
            logger,
            logging.INFO,
            "billing.generation.invoice_created",
            subscription_id="sub-1",
            amount=Decimal("499.50"),
            next_due_date=datetime(2024, 6, 1, tzinfo=timezone.utc),
        )

    payload = _format(caplog.records[0])
    assert payload["event"] == "billing.generation.invoice_created"
    assert payload["level"] == "info"
    assert payload["logger"] == "billing.test"
    assert payload["subscription_id"] == "sub-1"
    assert payload["amount"] == "499.50"
    assert payload["next_due_date"] == "2024-06-01T00:00:00+00:00"


def test_exception_is_included(caplog) -> None:
    logger = logging.getLogger("billing.test")
    with caplog.at_level(logging.ERROR, logger="billing.test"):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            log_event(logger, logging.ERROR, "billing.scheduler.run_failed", exc_info=True, job="billing.generate_invoices")

    payload = _format(caplog.records[0])
    assert payload["job"] == "billing.generate_invoices"
    assert "RuntimeError: boom" in payload["exception"]
