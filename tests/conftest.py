"""Shared test fixtures for benefit_scan_queue tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy import update

from benefit_scan_queue import (
    ScanQueueService,
    create_db_engine,
    create_session_factory,
    init_db,
)
from benefit_scan_queue.models import QueueEntry
from helpers import FixedClock, RecordingBroadcaster, register_workers

if TYPE_CHECKING:
    from collections.abc import Callable, Generator
    from pathlib import Path

    from sqlalchemy.engine import Engine
    from sqlalchemy.orm import Session, sessionmaker


# ============================================================================
# Database fixtures
# ============================================================================


@pytest.fixture
def in_memory_engine() -> Generator[Engine, None, None]:
    """Create SQLite in-memory engine with all tables created.

    Yields:
        Engine: SQLAlchemy engine with in-memory SQLite database
    """
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """File-backed SQLite engine, needed when several threads hit the queue."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'scan_queue.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(in_memory_engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(in_memory_engine)


@pytest.fixture
def clock() -> FixedClock:
    """Clock pinned to mid-February 2025."""
    return FixedClock(datetime(2025, 2, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def scan_queue(
    session_factory: sessionmaker[Session], broadcaster: RecordingBroadcaster, clock: FixedClock
) -> ScanQueueService:
    """Create ScanQueueService over the in-memory database."""
    return ScanQueueService(session_factory, broadcaster=broadcaster, clock=clock)


@pytest.fixture
def file_scan_queue(
    file_engine: Engine, broadcaster: RecordingBroadcaster, clock: FixedClock
) -> ScanQueueService:
    """Create ScanQueueService over a file database shared by threads."""
    return ScanQueueService(create_session_factory(file_engine), broadcaster=broadcaster, clock=clock)


@pytest.fixture
def workers(scan_queue: ScanQueueService) -> list[str]:
    """Ten registered workers, W-001 .. W-010."""
    return register_workers(scan_queue, 10)


@pytest.fixture
def force_entry_status(session_factory: sessionmaker[Session]) -> Callable[..., None]:
    """Overwrite queue entry columns directly, bypassing the protocols."""

    def _force(queue_id: int, **values: Any) -> None:
        with session_factory() as session:
            _ = session.execute(
                update(QueueEntry)
                .where(QueueEntry.id == queue_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()

    return _force
