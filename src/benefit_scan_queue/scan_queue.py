"""SQLAlchemy-backed monthly benefit scan queue.

This module provides the service object shared by every caller of the
queue: the monthly cron trigger, worker-data write hooks, executor loops and
reporting dashboards.

The service handles:
- Batch and targeted enqueue with per-period aggregate counters
- Atomic job claiming (FOR UPDATE SKIP LOCKED on PostgreSQL)
- Completion bookkeeping that closes a period exactly once
- Invalidation of current and future scans when worker data changes
- MQTT broadcasting of queue activity
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import Update, and_, case, func, or_, select, update
from sqlalchemy.orm import Session, aliased, sessionmaker

from .config import Config
from .models import PeriodStatus, QueueEntry, Worker
from .mqtt import Broadcaster, get_broadcaster
from .schemas import (
    OUTSTANDING_STATUSES,
    EnqueueMonthRequest,
    EnqueueMonthResult,
    EnqueueWorkerRequest,
    PeriodState,
    PeriodStatusRecord,
    PeriodSummary,
    QueueEntryRecord,
    ScanStatus,
    TriggerSource,
)
from .translator import db_entry_to_record, db_period_to_record

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

UPDATABLE_PERIOD_FIELDS = frozenset(
    {
        "status",
        "total_queued",
        "processed_success",
        "processed_failed",
        "started_at",
        "completed_at",
    }
)


def local_now() -> datetime:
    """Current wall-clock time in the server's local timezone."""
    return datetime.now().astimezone()


def _reset_values(trigger_source: str) -> dict[str, Any]:
    return {
        "status": ScanStatus.pending.value,
        "trigger_source": trigger_source,
        "attempts": 0,
        "last_error": None,
        "picked_at": None,
        "completed_at": None,
    }


def claim_statement(now_ms: int) -> Update:
    """Build the single-statement claim of the next pending entry.

    ``UPDATE ... WHERE id = (SELECT id ... ORDER BY scheduled_for NULLS LAST,
    id LIMIT 1 FOR UPDATE SKIP LOCKED) AND status = 'pending' RETURNING *``.
    SQLite does not render the locking clause; there the engine's
    BEGIN IMMEDIATE transactions keep claimers apart.
    """
    # Aliased so the subquery is not correlated with the outer UPDATE
    candidate = aliased(QueueEntry)
    next_pending_id = (
        select(candidate.id)
        .where(candidate.status == ScanStatus.pending.value)
        .order_by(candidate.scheduled_for.asc().nulls_last(), candidate.id.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    return (
        update(QueueEntry)
        .where(
            QueueEntry.id == next_pending_id,
            QueueEntry.status == ScanStatus.pending.value,
        )
        .values(
            status=ScanStatus.processing.value,
            picked_at=now_ms,
            attempts=QueueEntry.attempts + 1,
        )
        .returning(QueueEntry)
        .execution_options(synchronize_session=False)
    )


class ScanQueueService:
    """Persistent scheduler for per-worker monthly eligibility scans.

    Every mutating method runs in its own transaction. Storage errors
    (constraint violations, lost connections) propagate to the caller
    unchanged; retry policy belongs to whoever drives the queue.

    Example:
        engine = create_db_engine("postgresql+psycopg://...")
        queue = ScanQueueService(create_session_factory(engine))

        queue.enqueue_month(3, 2025)
        job = queue.claim_next_job()
        if job is not None:
            queue.record_job_result(job.id, True, {"eligible": ["dental"]})
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        broadcaster: Broadcaster | None = None,
        clock: Clock = local_now,
    ):
        """Initialize the queue with a session factory and event broadcaster.

        Args:
            session_factory: SQLAlchemy session factory (sessionmaker)
            broadcaster: Event sink; defaults to the broadcaster from Config
            clock: Source of "now", used for timestamps and for deciding
                which periods invalidation may touch
        """
        self.session_factory: sessionmaker[Session] = session_factory
        self.clock: Clock = clock

        if broadcaster is None:
            broadcaster = get_broadcaster(
                broadcast_type=Config.BROADCAST_TYPE,
                broker=Config.MQTT_BROKER,
                port=Config.MQTT_PORT,
                topic=Config.MQTT_TOPIC,
            )
        self.broadcaster: Broadcaster = broadcaster

    def _now_ms(self) -> int:
        return int(self.clock().timestamp() * 1000)

    # -------------------------------------------------------------------------
    # Event broadcasting
    # -------------------------------------------------------------------------

    def _publish(self, event_type: str, entity_id: str | int, data: dict[str, Any]) -> None:
        try:
            if not self.broadcaster.publish_event(event_type, str(entity_id), data):
                logger.debug(f"Event {event_type} for {entity_id} was not published")
        except Exception as e:
            logger.warning(f"Failed to publish {event_type} event: {e}")

    def _publish_period(self, period: PeriodStatusRecord) -> None:
        try:
            if not self.broadcaster.publish_period(period):
                logger.debug(f"Snapshot of period {period.month}/{period.year} was not published")
        except Exception as e:
            logger.warning(f"Failed to publish snapshot of period {period.month}/{period.year}: {e}")

    # -------------------------------------------------------------------------
    # Worker registry
    # -------------------------------------------------------------------------

    def register_worker(self, worker_id: str, name: str | None = None) -> bool:
        """Add a worker to the population scanned by the monthly batch.

        Returns:
            True if the worker was added, False if it already existed
        """
        with self.session_factory() as session:
            if session.get(Worker, worker_id) is not None:
                return False
            session.add(Worker(id=worker_id, name=name, created_at=self._now_ms()))
            session.commit()
            return True

    def list_worker_ids(self) -> list[str]:
        with self.session_factory() as session:
            return list(session.execute(select(Worker.id).order_by(Worker.id)).scalars())

    # -------------------------------------------------------------------------
    # Period status store
    # -------------------------------------------------------------------------

    def get_month_status(self, month: int, year: int) -> PeriodStatusRecord | None:
        """Get the aggregate row for a period, if it was ever enqueued."""
        with self.session_factory() as session:
            period = self._find_period(session, month, year)
            return db_period_to_record(period) if period else None

    def get_all_month_statuses(self) -> list[PeriodStatusRecord]:
        """All period rows, newest period first."""
        with self.session_factory() as session:
            stmt = select(PeriodStatus).order_by(PeriodStatus.year.desc(), PeriodStatus.month.desc())
            return [db_period_to_record(p) for p in session.execute(stmt).scalars()]

    def create_month_status(self, month: int, year: int) -> PeriodStatusRecord:
        """Create a queued period row with zeroed counters."""
        _ = EnqueueMonthRequest(month=month, year=year)
        with self.session_factory() as session:
            period = PeriodStatus(
                month=month,
                year=year,
                status=PeriodState.queued.value,
                created_at=self._now_ms(),
            )
            session.add(period)
            session.flush()
            record = db_period_to_record(period)
            session.commit()
            return record

    def update_month_status(self, status_id: int, **fields: Any) -> PeriodStatusRecord | None:
        """Overwrite selected columns of a period row.

        Args:
            status_id: PeriodStatus primary key
            **fields: Column values; only status, counters and timestamps

        Returns:
            Updated record, or None if no such period exists

        Raises:
            ValueError: If an unknown or read-only field is given
        """
        unknown = set(fields) - UPDATABLE_PERIOD_FIELDS
        if unknown:
            raise ValueError(f"Cannot update period fields: {sorted(unknown)}")
        if "status" in fields:
            fields["status"] = PeriodState(fields["status"]).value

        with self.session_factory() as session:
            period = session.get(PeriodStatus, status_id)
            if period is None:
                return None
            for key, value in fields.items():
                setattr(period, key, value)
            session.flush()
            record = db_period_to_record(period)
            session.commit()
            return record

    def _find_period(self, session: Session, month: int, year: int) -> PeriodStatus | None:
        stmt = select(PeriodStatus).where(PeriodStatus.month == month, PeriodStatus.year == year)
        return session.execute(stmt).scalar_one_or_none()

    def _get_or_create_period(
        self, session: Session, month: int, year: int, now_ms: int
    ) -> tuple[PeriodStatus, bool]:
        period = self._find_period(session, month, year)
        if period is not None:
            return period, False

        period = PeriodStatus(
            month=month,
            year=year,
            status=PeriodState.queued.value,
            total_queued=0,
            processed_success=0,
            processed_failed=0,
            created_at=now_ms,
        )
        session.add(period)
        session.flush()
        return period, True

    def _load_period(self, session: Session, status_id: int) -> PeriodStatusRecord:
        stmt = (
            select(PeriodStatus)
            .where(PeriodStatus.id == status_id)
            .execution_options(populate_existing=True)
        )
        return db_period_to_record(session.execute(stmt).scalar_one())

    # -------------------------------------------------------------------------
    # Queue store
    # -------------------------------------------------------------------------

    def get_queue_entry(self, queue_id: int) -> QueueEntryRecord | None:
        with self.session_factory() as session:
            entry = session.get(QueueEntry, queue_id)
            return db_entry_to_record(entry) if entry else None

    def get_queued_workers(self, status_id: int) -> list[QueueEntryRecord]:
        """All queue entries of one period, grouped by status."""
        with self.session_factory() as session:
            stmt = (
                select(QueueEntry)
                .where(QueueEntry.status_id == status_id)
                .order_by(QueueEntry.status.asc(), QueueEntry.id.asc())
            )
            return [db_entry_to_record(e) for e in session.execute(stmt).scalars()]

    def get_worker_queue_entry(self, worker_id: str, month: int, year: int) -> QueueEntryRecord | None:
        with self.session_factory() as session:
            entry = self._find_entry(session, worker_id, month, year)
            return db_entry_to_record(entry) if entry else None

    def _find_entry(self, session: Session, worker_id: str, month: int, year: int) -> QueueEntry | None:
        stmt = select(QueueEntry).where(
            QueueEntry.worker_id == worker_id,
            QueueEntry.month == month,
            QueueEntry.year == year,
        )
        return session.execute(stmt).scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Enqueue protocol
    # -------------------------------------------------------------------------

    def enqueue_month(self, month: int, year: int) -> EnqueueMonthResult:
        """Queue a scan for every worker in the given period.

        Rows that already succeeded are left alone; any other existing row is
        re-armed as a fresh monthly_batch job. New rows are inserted pending.
        ``total_queued`` grows by the number of rows queued or re-armed.

        Args:
            month: Calendar month (1-12)
            year: Calendar year

        Returns:
            EnqueueMonthResult with the period id and number of rows queued

        Raises:
            pydantic.ValidationError: If month or year is out of range
        """
        _ = EnqueueMonthRequest(month=month, year=year)
        now_ms = self._now_ms()
        trigger = TriggerSource.monthly_batch.value

        with self.session_factory() as session:
            period, created = self._get_or_create_period(session, month, year, now_ms)

            worker_ids = session.execute(select(Worker.id).order_by(Worker.id)).scalars().all()
            existing_stmt = select(QueueEntry).where(QueueEntry.month == month, QueueEntry.year == year)
            existing = {e.worker_id: e for e in session.execute(existing_stmt).scalars()}

            queued_count = 0
            for worker_id in worker_ids:
                entry = existing.get(worker_id)
                if entry is None:
                    session.add(
                        QueueEntry(
                            status_id=period.id,
                            worker_id=worker_id,
                            month=month,
                            year=year,
                            status=ScanStatus.pending.value,
                            attempts=0,
                            trigger_source=trigger,
                            created_at=now_ms,
                        )
                    )
                    queued_count += 1
                elif entry.status != ScanStatus.success.value:
                    for key, value in _reset_values(trigger).items():
                        setattr(entry, key, value)
                    queued_count += 1

            # Nothing re-armed on an existing period: leave its state as is
            if queued_count or created:
                period.total_queued = PeriodStatus.total_queued + queued_count
                period.status = PeriodState.queued.value
            session.flush()

            status_id = period.id
            period_record = self._load_period(session, status_id)
            session.commit()

        logger.info(f"Queued {queued_count} workers for benefit scan {month}/{year} (period {status_id})")
        self._publish("period_enqueued", status_id, {"month": month, "year": year, "queued_count": queued_count})
        self._publish_period(period_record)
        return EnqueueMonthResult(status_id=status_id, queued_count=queued_count)

    def enqueue_worker(
        self,
        worker_id: str,
        month: int,
        year: int,
        trigger_source: TriggerSource | str = TriggerSource.manual,
        *,
        scheduled_for: int | None = None,
    ) -> QueueEntryRecord:
        """Queue (or re-arm) a single worker's scan for one period.

        An existing row is reset to pending whatever its state, so a targeted
        re-scan also repeats a successful one. ``total_queued`` only grows
        when a new row is inserted.

        Args:
            worker_id: Worker to scan; must exist in the workers table
            month: Calendar month (1-12)
            year: Calendar year
            trigger_source: Why the scan is requested
            scheduled_for: Optional ordering hint (epoch ms); scheduled rows
                are claimed before unscheduled ones

        Returns:
            The pending queue entry
        """
        request = EnqueueWorkerRequest(
            worker_id=worker_id, month=month, year=year, trigger_source=trigger_source
        )
        trigger = request.trigger_source.value
        now_ms = self._now_ms()

        with self.session_factory() as session:
            period, _ = self._get_or_create_period(session, month, year, now_ms)
            entry = self._find_entry(session, worker_id, month, year)

            if entry is not None:
                if entry.status == ScanStatus.processing.value:
                    logger.warning(
                        f"Re-arming in-flight scan {entry.id} for worker {worker_id}; "
                        "the running executor's result will be dropped"
                    )
                for key, value in _reset_values(trigger).items():
                    setattr(entry, key, value)
                entry.scheduled_for = scheduled_for
            else:
                entry = QueueEntry(
                    status_id=period.id,
                    worker_id=worker_id,
                    month=month,
                    year=year,
                    status=ScanStatus.pending.value,
                    attempts=0,
                    trigger_source=trigger,
                    scheduled_for=scheduled_for,
                    created_at=now_ms,
                    picked_at=None,
                    completed_at=None,
                    result_summary=None,
                    last_error=None,
                )
                session.add(entry)
                period.total_queued = PeriodStatus.total_queued + 1

            session.flush()
            record = db_entry_to_record(entry)
            session.commit()

        logger.info(f"Queued worker {worker_id} for benefit scan {month}/{year} ({trigger})")
        self._publish(
            "worker_enqueued",
            record.id,
            {"worker_id": worker_id, "month": month, "year": year, "trigger_source": trigger},
        )
        return record

    # -------------------------------------------------------------------------
    # Claim protocol
    # -------------------------------------------------------------------------

    def claim_next_job(self) -> QueueEntryRecord | None:
        """Atomically claim the next pending scan.

        Picks the first pending row by (scheduled_for nulls last, id) and
        marks it processing in a single UPDATE. On PostgreSQL the row is
        selected with FOR UPDATE SKIP LOCKED so concurrent claimers never
        wait on, or receive, the same row. On SQLite the engine's
        BEGIN IMMEDIATE transactions serialize claimers instead.

        The owning period flips from queued to running in the same
        transaction; ``started_at`` is only written the first time.

        Returns:
            The claimed entry (status processing), or None if the queue is
            empty. An empty queue is not an error.
        """
        now_ms = self._now_ms()

        with self.session_factory() as session:
            entry = session.execute(claim_statement(now_ms)).scalar_one_or_none()

            if entry is None:
                session.rollback()
                logger.debug("No pending benefit scans to claim")
                return None

            record = db_entry_to_record(entry)

            start_stmt = (
                update(PeriodStatus)
                .where(
                    PeriodStatus.id == record.status_id,
                    PeriodStatus.status == PeriodState.queued.value,
                )
                .values(
                    status=PeriodState.running.value,
                    started_at=func.coalesce(PeriodStatus.started_at, now_ms),
                )
                .returning(PeriodStatus.id)
                .execution_options(synchronize_session=False)
            )
            started = session.execute(start_stmt).scalar_one_or_none() is not None
            period_record = self._load_period(session, record.status_id) if started else None
            session.commit()

        logger.debug(f"Claimed benefit scan {record.id} for worker {record.worker_id} (attempt {record.attempts})")
        self._publish(
            "job_claimed",
            record.id,
            {"worker_id": record.worker_id, "month": record.month, "year": record.year, "attempts": record.attempts},
        )
        if period_record is not None:
            logger.info(f"Benefit scan period {record.month}/{record.year} is running")
            self._publish_period(period_record)
        return record

    # -------------------------------------------------------------------------
    # Completion protocol
    # -------------------------------------------------------------------------

    def record_job_result(
        self,
        queue_id: int,
        success: bool,
        result_summary: Any = None,
        error: str | None = None,
    ) -> None:
        """Record the outcome of a claimed scan and roll it into its period.

        The entry's counter is incremented on the period row before the
        outstanding rows are counted, all in one transaction. The row lock
        taken by that increment orders concurrent completions of the same
        period, so only the last one sees zero outstanding rows and closes
        the period.

        Only entries still in processing are updated. A result for an entry
        that was re-armed (or never claimed) is logged and dropped.

        Args:
            queue_id: QueueEntry primary key
            success: Whether the evaluation succeeded
            result_summary: Evaluator output, stored as JSON
            error: Failure message, stored as ``last_error``
        """
        now_ms = self._now_ms()
        status = ScanStatus.success if success else ScanStatus.failed

        with self.session_factory() as session:
            finish_stmt = (
                update(QueueEntry)
                .where(
                    QueueEntry.id == queue_id,
                    QueueEntry.status == ScanStatus.processing.value,
                )
                .values(
                    status=status.value,
                    completed_at=now_ms,
                    result_summary=result_summary,
                    last_error=error or None,
                )
                .returning(QueueEntry.status_id, QueueEntry.worker_id, QueueEntry.month, QueueEntry.year)
                .execution_options(synchronize_session=False)
            )
            finished = session.execute(finish_stmt).one_or_none()

            if finished is None:
                session.rollback()
                logger.warning(f"Ignoring result for benefit scan {queue_id}: not found or not processing")
                return

            status_id = finished.status_id
            counter = PeriodStatus.processed_success if success else PeriodStatus.processed_failed
            _ = session.execute(
                update(PeriodStatus)
                .where(PeriodStatus.id == status_id)
                .values({counter: counter + 1})
                .execution_options(synchronize_session=False)
            )

            remaining = session.execute(
                select(func.count())
                .select_from(QueueEntry)
                .where(
                    QueueEntry.status_id == status_id,
                    QueueEntry.status.in_(OUTSTANDING_STATUSES),
                )
            ).scalar_one()

            period_completed = remaining == 0
            if period_completed:
                _ = session.execute(
                    update(PeriodStatus)
                    .where(PeriodStatus.id == status_id)
                    .values(status=PeriodState.completed.value, completed_at=now_ms)
                    .execution_options(synchronize_session=False)
                )
            period_record = self._load_period(session, status_id)
            session.commit()

        logger.info(
            f"Benefit scan {queue_id} for worker {finished.worker_id} "
            f"{finished.month}/{finished.year} finished: {status.value}"
        )
        event_data: dict[str, Any] = {"worker_id": finished.worker_id, "status": status.value}
        if error:
            event_data["error"] = error
        self._publish("job_completed", queue_id, event_data)
        if period_completed:
            logger.info(f"Benefit scan period {finished.month}/{finished.year} completed")
            self._publish("period_completed", status_id, {"month": finished.month, "year": finished.year})
        self._publish_period(period_record)

    # -------------------------------------------------------------------------
    # Invalidation cascade
    # -------------------------------------------------------------------------

    def invalidate_worker_scans(self, worker_id: str) -> int:
        """Reset a worker's current and future scans after their data changed.

        Periods before the current month are never touched. Of the remaining
        rows only success and pending ones are reset; processing rows keep
        running and failed rows wait for an explicit re-scan. Completed
        periods that lost a row become stale; queued and running periods are
        left as they are.

        Args:
            worker_id: Worker whose hours or employment history changed

        Returns:
            Number of queue entries reset (0 if the worker has none)
        """
        now = self.clock()
        current_month, current_year = now.month, now.year

        with self.session_factory() as session:
            reset_stmt = (
                update(QueueEntry)
                .where(
                    QueueEntry.worker_id == worker_id,
                    or_(
                        QueueEntry.year > current_year,
                        and_(QueueEntry.year == current_year, QueueEntry.month >= current_month),
                    ),
                    QueueEntry.status.in_((ScanStatus.success.value, ScanStatus.pending.value)),
                )
                .values(**_reset_values(TriggerSource.worker_update.value), result_summary=None)
                .returning(QueueEntry.id, QueueEntry.status_id)
                .execution_options(synchronize_session=False)
            )
            reset_rows = session.execute(reset_stmt).all()

            stale_periods: list[PeriodStatusRecord] = []
            status_ids = sorted({row.status_id for row in reset_rows})
            if status_ids:
                stale_ids = session.execute(
                    update(PeriodStatus)
                    .where(
                        PeriodStatus.id.in_(status_ids),
                        PeriodStatus.status == PeriodState.completed.value,
                    )
                    .values(status=PeriodState.stale.value)
                    .returning(PeriodStatus.id)
                    .execution_options(synchronize_session=False)
                ).scalars().all()
                stale_periods = [self._load_period(session, sid) for sid in stale_ids]
            session.commit()

        count = len(reset_rows)
        if count:
            logger.info(f"Invalidated {count} benefit scan entries for worker {worker_id}")
            self._publish(
                "worker_invalidated",
                worker_id,
                {"invalidated_count": count, "stale_periods": [p.id for p in stale_periods]},
            )
        for period in stale_periods:
            self._publish_period(period)
        return count

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_pending_summary(self) -> list[PeriodSummary]:
        """Per-period entry counts by status, newest period first."""

        def status_count(status: ScanStatus):
            return func.sum(case((QueueEntry.status == status.value, 1), else_=0)).label(status.value)

        stmt = (
            select(
                QueueEntry.month,
                QueueEntry.year,
                status_count(ScanStatus.pending),
                status_count(ScanStatus.processing),
                status_count(ScanStatus.success),
                status_count(ScanStatus.failed),
            )
            .group_by(QueueEntry.month, QueueEntry.year)
            .order_by(QueueEntry.year.desc(), QueueEntry.month.desc())
        )
        with self.session_factory() as session:
            rows = session.execute(stmt).all()

        return [
            PeriodSummary(
                month=row.month,
                year=row.year,
                pending=int(row.pending or 0),
                processing=int(row.processing or 0),
                success=int(row.success or 0),
                failed=int(row.failed or 0),
            )
            for row in rows
        ]
