"""Monthly benefit scan queue for the trust administration platform."""

# Public API - Pydantic records and enums
from .schemas import (
    BatchResult,
    EnqueueMonthResult,
    PeriodState,
    PeriodStatusRecord,
    PeriodSummary,
    QueueEntryRecord,
    ScanOutcome,
    ScanStatus,
    TriggerSource,
)

# Public API - Service implementations
from .config import Config
from .database import create_db_engine, create_session_factory, init_db
from .executor import CallableEvaluator, ScanEvaluator, ScanExecutor
from .scan_queue import ScanQueueService

__all__ = [
    # Configuration
    "Config",
    # Database
    "create_db_engine",
    "create_session_factory",
    "init_db",
    # Services
    "ScanQueueService",
    "ScanExecutor",
    "ScanEvaluator",
    "CallableEvaluator",
    # Pydantic Models
    "BatchResult",
    "EnqueueMonthResult",
    "PeriodStatusRecord",
    "PeriodSummary",
    "QueueEntryRecord",
    "ScanOutcome",
    # Enums
    "PeriodState",
    "ScanStatus",
    "TriggerSource",
]
