"""Database configuration and base setup for the phase orchestrator."""

from pathlib import Path
from typing import Optional

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _ensure_sync_driver(url: URL) -> URL:
    """Force a synchronous driver for the ORM engine."""

    if url.drivername.startswith("postgresql+"):
        # Normalize any async driver variants to psycopg (sync)
        if any(token in url.drivername for token in ("async", "aiopg")):
            url = url.set(drivername="postgresql+psycopg")
    elif url.drivername.startswith("sqlite+"):
        if "aiosqlite" in url.drivername:
            url = url.set(drivername="sqlite")

    return url


def get_database_url(raw_url: str) -> str:
    """Return a database URL with a guaranteed synchronous driver."""

    url = make_url(raw_url)
    # render_as_string keeps the password; str(url) would mask it
    return _ensure_sync_driver(url).render_as_string(hide_password=False)


def _is_memory_sqlite(url: URL) -> bool:
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def create_db_engine(raw_url: str) -> Engine:
    """Create an engine configured for the given backend."""
    database_url = get_database_url(raw_url)
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        if _is_memory_sqlite(url):
            # One shared connection, otherwise every session sees an empty db
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            if url.database:
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30},
            )

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # Take over BEGIN from pysqlite so writers queue on the busy
            # timeout instead of failing a lock upgrade mid-transaction.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def get_session_factory(engine: Engine) -> sessionmaker:
    """Get a sessionmaker bound to ``engine``."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_database(engine: Engine) -> None:
    """Create all tables."""
    # Import models so they're registered with Base
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def drop_database(engine: Engine) -> None:
    """Drop all tables. Use with caution!"""
    from . import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """
    Create and cache the process-wide engine.

    Lazy so the URL is read from settings at runtime, not import time.
    """
    global _engine
    if _engine is not None:
        return _engine

    from ..config import get_settings

    _engine = create_db_engine(get_settings().resolved_database_url())
    return _engine
