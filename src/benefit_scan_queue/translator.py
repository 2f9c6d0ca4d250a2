"""Conversion helpers from SQLAlchemy rows to pydantic records."""

from .models import PeriodStatus, QueueEntry
from .schemas import (
    PeriodState,
    PeriodStatusRecord,
    QueueEntryRecord,
    ScanStatus,
    TriggerSource,
)


def db_entry_to_record(entry: QueueEntry) -> QueueEntryRecord:
    """Convert SQLAlchemy QueueEntry to pydantic QueueEntryRecord.

    Must be called while the row is still attached to its session, before
    commit, so that no attribute triggers a refresh.
    """
    return QueueEntryRecord(
        id=entry.id,
        status_id=entry.status_id,
        worker_id=entry.worker_id,
        month=entry.month,
        year=entry.year,
        status=ScanStatus(entry.status),
        attempts=entry.attempts,
        trigger_source=TriggerSource(entry.trigger_source),
        created_at=entry.created_at,
        scheduled_for=entry.scheduled_for,
        picked_at=entry.picked_at,
        completed_at=entry.completed_at,
        result_summary=entry.result_summary,
        last_error=entry.last_error,
    )


def db_period_to_record(period: PeriodStatus) -> PeriodStatusRecord:
    """Convert SQLAlchemy PeriodStatus to pydantic PeriodStatusRecord."""
    return PeriodStatusRecord(
        id=period.id,
        month=period.month,
        year=period.year,
        status=PeriodState(period.status),
        total_queued=period.total_queued,
        processed_success=period.processed_success,
        processed_failed=period.processed_failed,
        created_at=period.created_at,
        started_at=period.started_at,
        completed_at=period.completed_at,
    )
