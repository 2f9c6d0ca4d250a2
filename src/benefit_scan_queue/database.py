"""Engine and session factory setup for the scan queue tables."""

from collections.abc import Mapping
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _engine_options_for_url(url: str) -> dict[str, Any]:
    parsed = make_url(url)
    if parsed.get_backend_name() == "postgresql":
        return {
            "pool_pre_ping": True,
            "pool_size": 5,
            "max_overflow": 10,
        }
    if parsed.get_backend_name() == "sqlite":
        options: dict[str, Any] = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
            },
        }
        if parsed.database in (None, "", ":memory:"):
            # One shared connection, otherwise every checkout sees an empty database
            options["poolclass"] = StaticPool
        return options
    return {}


def _serialize_sqlite_transactions(engine: Engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    SQLite has no row-level locks, so ``BEGIN IMMEDIATE`` is what keeps two
    claimers (or two completions) from interleaving.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pyright: ignore[reportUnusedFunction]
        # Hand transaction control to SQLAlchemy instead of the sqlite3 module
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # pyright: ignore[reportUnusedFunction]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: str, *, extra_options: Mapping[str, Any] | None = None) -> Engine:
    """Create an engine configured for concurrent queue access.

    Args:
        url: SQLAlchemy database URL (PostgreSQL or SQLite)
        extra_options: Additional keyword arguments for ``create_engine``

    Returns:
        Engine ready for use by ScanQueueService
    """
    options = _engine_options_for_url(url)
    if extra_options:
        options.update(dict(extra_options))
    engine = create_engine(url, **options)
    if engine.dialect.name == "sqlite":
        _serialize_sqlite_transactions(engine)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create session factory bound to the given engine."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all scan queue tables if they don't exist."""
    Base.metadata.create_all(engine)
