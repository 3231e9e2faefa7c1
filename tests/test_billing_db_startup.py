from __future__ import annotations

from pathlib import Path

import pytest

from billing.db import build_session_factory, is_postgres_url, missing_billing_tables, verify_billing_schema
from billing.db import init_billing_db as billing_init_billing_db


def test_init_billing_db_requires_postgres_in_production(monkeypatch) -> None:
    import billing.db as billing_db

    monkeypatch.setattr(billing_db, "APP_ENV", "production")
    monkeypatch.setattr(billing_db, "DATABASE_URL", "sqlite:///tmp/test.db")
    with pytest.raises(RuntimeError, match="PostgreSQL"):
        billing_db.init_billing_db()


def test_init_billing_db_allows_engine_override_for_tests(tmp_path: Path) -> None:
    db_path = tmp_path / "billing_startup_test.db"
    engine, _session_factory = build_session_factory(f"sqlite+pysqlite:///{db_path}")
    assert "billing_invoices" in missing_billing_tables(engine)

    billing_init_billing_db(engine)

    assert missing_billing_tables(engine) == []
    engine.dispose()


def test_build_session_factory_creates_sqlite_parent_dir(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "dir" / "billing.db"
    engine, _session_factory = build_session_factory(f"sqlite:///{db_path}")
    assert db_path.parent.is_dir()
    engine.dispose()


def test_verify_billing_schema_lists_missing_tables(tmp_path: Path) -> None:
    engine, _session_factory = build_session_factory(f"sqlite+pysqlite:///{tmp_path / 'empty.db'}")
    with pytest.raises(RuntimeError, match="billing_subscriptions"):
        verify_billing_schema(engine)
    billing_init_billing_db(engine)
    verify_billing_schema(engine)
    engine.dispose()


def test_postgres_url_detection() -> None:
    assert is_postgres_url("postgresql://billing:secret@db:5432/billing")
    assert is_postgres_url("postgresql+psycopg://billing@db/billing")
    assert not is_postgres_url("sqlite:///billing.db")
    assert not is_postgres_url("")
