from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import Session, sessionmaker

from alembic import command
from config import APP_ENV, DATABASE_ECHO, DATABASE_URL, ROOT_DIR

from .models import Base

SessionFactory = Callable[[], Session]

ALEMBIC_INI = Path(ROOT_DIR).resolve() / "alembic.ini"


def _sqlite_file(database_url: str) -> Optional[Path]:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return None
    database = url.database or ""
    if not database or database == ":memory:" or database.startswith("file:"):
        return None
    path = Path(database).expanduser()
    return path if path.is_absolute() else (Path.cwd() / path).resolve()


def build_engine(database_url: str) -> Engine:
    kwargs: dict[str, Any] = {"future": True, "echo": DATABASE_ECHO, "pool_pre_ping": True}
    sqlite_path = _sqlite_file(database_url)
    if sqlite_path is not None:
        sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    if database_url.startswith("sqlite"):
        # The scheduler thread and callers share one engine.
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(database_url, **kwargs)


def build_session_factory(database_url: str) -> tuple[Engine, SessionFactory]:
    engine = build_engine(database_url)
    # Generation reports and callers read rows after commit.
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    return engine, session_factory


ENGINE, SessionLocal = build_session_factory(DATABASE_URL)


def is_production_env(app_env: Optional[str] = None) -> bool:
    return str(app_env if app_env is not None else APP_ENV or "").strip().lower() in {"prod", "production"}


def is_postgres_url(database_url: str) -> bool:
    try:
        return make_url(str(database_url or "").strip()).get_backend_name() == "postgresql"
    except ArgumentError:
        return False


def run_migrations(database_url: Optional[str] = None, revision: str = "head") -> None:
    if not ALEMBIC_INI.exists():
        raise RuntimeError(f"missing alembic.ini: {ALEMBIC_INI}")
    alembic_cfg = AlembicConfig(str(ALEMBIC_INI))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url or DATABASE_URL)
    command.upgrade(alembic_cfg, revision)


def missing_billing_tables(engine: Engine) -> list[str]:
    """Return the billing tables the connected database does not have yet."""

    existing = set(inspect(engine).get_table_names())
    return sorted(name for name in Base.metadata.tables if name not in existing)


def verify_billing_schema(engine: Engine) -> None:
    missing = missing_billing_tables(engine)
    if missing:
        raise RuntimeError(f"billing schema incomplete: {', '.join(missing)}")


def init_billing_db(engine: Engine | None = None) -> None:
    """
    Bring the billing schema up to date.

    The configured database is migrated with Alembic (PostgreSQL only in
    production). An explicit ``engine`` is initialized with ``create_all``
    instead, for tests and throwaway databases.
    """

    if engine is not None:
        Base.metadata.create_all(bind=engine)
        return
    if is_production_env() and not is_postgres_url(DATABASE_URL):
        raise RuntimeError("DATABASE_URL must be PostgreSQL in production")
    run_migrations(DATABASE_URL)
    verify_billing_schema(ENGINE)


@contextmanager
def session_scope(session_factory: SessionFactory | None = None) -> Iterator[Session]:
    factory = session_factory or SessionLocal
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
