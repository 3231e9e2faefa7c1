#!/usr/bin/env python3
"""Prepare the production billing database: wait, migrate, verify."""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from billing.db import is_postgres_url, run_migrations, verify_billing_schema
from billing.models import Base as BillingBase
from config import DATABASE_URL


def _env_int(name: str, default: int) -> int:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return int(raw)
    except ValueError:
        return default


def _wait_until_reachable(engine: Engine) -> None:
    max_attempts = _env_int("INIT_DB_MAX_ATTEMPTS", 30)
    sleep_seconds = max(1, _env_int("INIT_DB_SLEEP_SECONDS", 2))
    for attempt in range(1, max_attempts + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as exc:  # noqa: BLE001
            print(f"[init-prod-db] waiting for postgres ({attempt}/{max_attempts}): {exc}")
            time.sleep(sleep_seconds)
            continue
        print(f"[init-prod-db] postgres reachable after {attempt} attempt(s)")
        return
    raise RuntimeError("postgres is not reachable after retries")


def main() -> int:
    database_url = str(DATABASE_URL or "").strip()
    if not is_postgres_url(database_url):
        raise RuntimeError("DATABASE_URL must be PostgreSQL in production")

    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    try:
        _wait_until_reachable(engine)
        try:
            run_migrations(database_url)
            print("[init-prod-db] alembic upgrade head completed")
        except Exception as exc:  # noqa: BLE001
            print(f"[init-prod-db] alembic failed, creating billing tables directly: {exc}")
            BillingBase.metadata.create_all(bind=engine)
        verify_billing_schema(engine)
    finally:
        engine.dispose()

    print("[init-prod-db] billing schema ready")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
