#!/usr/bin/env python3
"""Run the recurring invoice scheduler, or a single generation pass."""

from __future__ import annotations

import argparse
import json
import sys
import threading
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from billing.tasks import build_billing_scheduler, run_invoice_generation
from config import BILLING_SCHEDULE_CRON, BILLING_SCHEDULE_TIMEZONE, LOG_LEVEL
from observability import configure_json_logging


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--once", action="store_true", help="run one generation pass and exit")
    parser.add_argument("--cron", default=BILLING_SCHEDULE_CRON, help="crontab expression (default: %(default)s)")
    parser.add_argument(
        "--timezone",
        default=BILLING_SCHEDULE_TIMEZONE,
        help="timezone for the cron expression (default: %(default)s)",
    )
    parser.add_argument("--log-level", default=LOG_LEVEL)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_json_logging(level=args.log_level)

    if args.once:
        report = run_invoice_generation()
        if report is None:
            print(json.dumps({"status": "lock_busy"}))
            return 1
        print(json.dumps(report.as_dict(), ensure_ascii=False))
        return 2 if report.failed else 0

    scheduler = build_billing_scheduler(cron=args.cron, timezone_name=args.timezone)
    stop = threading.Event()
    try:
        scheduler.run_forever(stop)
    except KeyboardInterrupt:
        stop.set()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
