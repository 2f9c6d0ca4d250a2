"""
Pydantic records and request models for the benefit scan queue.
Shared between enqueue triggers, executors and reporting callers.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, JsonValue


class ScanStatus(str, Enum):
    """Lifecycle state of a single queue entry."""

    pending = "pending"
    processing = "processing"
    success = "success"
    failed = "failed"


class PeriodState(str, Enum):
    """Lifecycle state of a (month, year) batch."""

    queued = "queued"
    running = "running"
    completed = "completed"
    stale = "stale"


class TriggerSource(str, Enum):
    """Why a queue entry was (re)created."""

    monthly_batch = "monthly_batch"
    worker_update = "worker_update"
    manual = "manual"


OUTSTANDING_STATUSES = (ScanStatus.pending.value, ScanStatus.processing.value)


# ============================================================================
# Records
# ============================================================================


class QueueEntryRecord(BaseModel):
    """Snapshot of one queue entry. Timestamps are epoch milliseconds."""

    model_config = ConfigDict(frozen=True)

    id: int
    status_id: int
    worker_id: str
    month: int
    year: int
    status: ScanStatus
    attempts: int
    trigger_source: TriggerSource
    created_at: int
    scheduled_for: int | None = None
    picked_at: int | None = None
    completed_at: int | None = None
    result_summary: JsonValue = None
    last_error: str | None = None


class PeriodStatusRecord(BaseModel):
    """Snapshot of one period aggregate row."""

    model_config = ConfigDict(frozen=True)

    id: int
    month: int
    year: int
    status: PeriodState
    total_queued: int
    processed_success: int
    processed_failed: int
    created_at: int
    started_at: int | None = None
    completed_at: int | None = None


class EnqueueMonthResult(BaseModel):
    status_id: int
    queued_count: int


class PeriodSummary(BaseModel):
    month: int
    year: int
    pending: int = 0
    processing: int = 0
    success: int = 0
    failed: int = 0


class BatchResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0


class ScanOutcome(BaseModel):
    """Explicit evaluator result.

    Evaluators may return a plain JSON summary (treated as success) or a
    ScanOutcome to report a failure without raising.
    """

    success: bool = True
    summary: JsonValue = None
    error: str | None = None


# ============================================================================
# Requests
# ============================================================================


class EnqueueMonthRequest(BaseModel):
    month: int = Field(..., ge=1, le=12, description="Calendar month (1-12)")
    year: int = Field(..., ge=2000, le=2100, description="Calendar year")


class EnqueueWorkerRequest(EnqueueMonthRequest):
    worker_id: str = Field(..., min_length=1, description="Worker to re-scan")
    trigger_source: TriggerSource = TriggerSource.manual


class ProcessBatchRequest(BaseModel):
    batch_size: int = Field(10, ge=1, le=100, description="Maximum jobs to process")
