from __future__ import annotations

from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from metaobjects.config import get_settings

Base = declarative_base()

settings = get_settings()


def enable_sqlite_transactional_ddl(engine: Engine) -> None:
    """Make pysqlite run DDL inside the surrounding transaction.

    The stdlib driver only opens a transaction in front of DML statements, so a
    CREATE/ALTER/DROP issued first would autocommit. Taking over BEGIN ourselves
    keeps metadata writes and provisioning in the same unit of work.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection):  # pragma: no cover - driver hook
        connection.exec_driver_sql("BEGIN")


def _create_engine_with_fallback(url: str, *, statement_timeout_ms: int | None = None) -> Engine:
    timeout_ms = settings.statement_timeout_ms if statement_timeout_ms is None else statement_timeout_ms
    engine_kwargs: dict[str, object] = {"future": True}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": max(timeout_ms, 0) / 1000,
        }
        if url in ("sqlite://", "sqlite:///:memory:"):
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_pre_ping"] = True
        if timeout_ms:
            engine_kwargs["connect_args"] = {"options": f"-c statement_timeout={timeout_ms}"}

    try:
        engine = create_engine(url, **engine_kwargs)
    except ModuleNotFoundError as exc:
        if "psycopg2" in str(exc) and "psycopg2" in url:
            fallback_url = url.replace("psycopg2", "psycopg")
            try:
                __import__("psycopg")
            except ModuleNotFoundError:
                raise
            engine = create_engine(fallback_url, **engine_kwargs)
        else:
            raise

    if engine.dialect.name == "sqlite":
        enable_sqlite_transactional_ddl(engine)
    return engine


def create_database_engine(url: str | None = None, **kwargs) -> Engine:
    return _create_engine_with_fallback(url or settings.database_url, **kwargs)


engine = create_database_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_metadata_tables(bind: Engine | None = None) -> None:
    """Create the metadata tables. Instance tables are owned by the provisioner."""
    from metaobjects import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
