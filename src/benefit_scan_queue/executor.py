"""Executor loop that drains the scan queue through a pluggable evaluator."""

import asyncio
import inspect
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, override

from pydantic import BaseModel

from .config import Config
from .scan_queue import ScanQueueService
from .schemas import BatchResult, ProcessBatchRequest, QueueEntryRecord, ScanOutcome

logger = logging.getLogger(__name__)


class ScanEvaluator(ABC):
    """Base class for benefit eligibility evaluators.

    The queue never looks inside the evaluation; it only records whether it
    succeeded, the summary it produced and the error text on failure.
    """

    @abstractmethod
    def evaluate(self, worker_id: str, month: int, year: int) -> Any:
        """
        Evaluate one worker for one month.

        Args:
            worker_id: Worker to evaluate
            month: Calendar month (1-12)
            year: Calendar year

        Returns:
            A JSON-serializable summary (success), or a ScanOutcome. May be
            a coroutine for async evaluators. Raising marks the scan failed.
        """
        pass


class CallableEvaluator(ScanEvaluator):
    """Adapts a plain ``(worker_id, month, year) -> summary`` function."""

    def __init__(self, func: Callable[[str, int, int], Any]):
        self.func = func

    @override
    def evaluate(self, worker_id: str, month: int, year: int) -> Any:
        return self.func(worker_id, month, year)


def as_evaluator(evaluator: ScanEvaluator | Callable[[str, int, int], Any]) -> ScanEvaluator:
    if isinstance(evaluator, ScanEvaluator):
        return evaluator
    if callable(evaluator):
        return CallableEvaluator(evaluator)
    raise TypeError(f"Not a scan evaluator: {evaluator!r}")


def _run_coroutine(awaitable):
    """Execute an async evaluator in sync context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(awaitable)
    finally:
        loop.close()


def _to_outcome(result: Any) -> ScanOutcome:
    if isinstance(result, ScanOutcome):
        return result
    if isinstance(result, BaseModel):
        return ScanOutcome(success=True, summary=result.model_dump(mode="json"))
    return ScanOutcome(success=True, summary=result)


class ScanExecutor:
    """Claims scans, runs the evaluator and records each outcome.

    Several executors (threads or processes) may share one queue; the claim
    protocol guarantees each job goes to exactly one of them.

    Example:
        executor = ScanExecutor(queue, my_evaluator)
        result = executor.process_batch(25)
        print(result.processed, result.succeeded, result.failed)
    """

    def __init__(
        self,
        queue: ScanQueueService,
        evaluator: ScanEvaluator | Callable[[str, int, int], Any],
        *,
        worker_id: str | None = None,
        poll_interval: float | None = None,
        max_poll_interval: float | None = None,
    ):
        """Initialize executor.

        Args:
            queue: Scan queue service to claim from
            evaluator: ScanEvaluator instance or plain function
            worker_id: Executor name used in logs
            poll_interval: Initial sleep (seconds) when the queue is empty
            max_poll_interval: Upper bound for the back-off sleep
        """
        self.queue = queue
        self.evaluator = as_evaluator(evaluator)
        self.worker_id = worker_id or Config.WORKER_ID
        self.poll_interval = poll_interval if poll_interval is not None else Config.WORKER_POLL_INTERVAL
        self.max_poll_interval = (
            max_poll_interval if max_poll_interval is not None else Config.WORKER_MAX_POLL_INTERVAL
        )

    def evaluate(self, job: QueueEntryRecord) -> ScanOutcome:
        """Run the evaluator for a claimed job, capturing failures as data."""
        try:
            result = self.evaluator.evaluate(job.worker_id, job.month, job.year)
            if inspect.isawaitable(result):
                result = _run_coroutine(result)
            outcome = _to_outcome(result)
        except Exception as e:
            logger.exception(f"[{self.worker_id}] Benefit scan {job.id} for worker {job.worker_id} raised")
            return ScanOutcome(success=False, summary=None, error=str(e) or type(e).__name__)

        if not outcome.success and not outcome.error:
            outcome = outcome.model_copy(update={"error": "evaluator reported failure"})
        return outcome

    def run_job(self, job: QueueEntryRecord) -> ScanOutcome:
        """Evaluate a claimed job and record its result."""
        logger.info(f"[{self.worker_id}] Scanning worker {job.worker_id} for {job.month}/{job.year}")
        outcome = self.evaluate(job)
        self.queue.record_job_result(job.id, outcome.success, outcome.summary, outcome.error)
        return outcome

    def run_once(self) -> ScanOutcome | None:
        """Claim and run a single job. Returns None when the queue is empty."""
        job = self.queue.claim_next_job()
        if job is None:
            return None
        return self.run_job(job)

    def process_batch(self, batch_size: int = 10) -> BatchResult:
        """Process up to ``batch_size`` jobs, stopping early on an empty queue.

        Raises:
            pydantic.ValidationError: If batch_size is outside 1-100
        """
        request = ProcessBatchRequest(batch_size=batch_size)
        result = BatchResult()

        for _ in range(request.batch_size):
            outcome = self.run_once()
            if outcome is None:
                break
            result.processed += 1
            if outcome.success:
                result.succeeded += 1
            else:
                result.failed += 1

        logger.info(
            f"[{self.worker_id}] Processed {result.processed} benefit scans "
            f"({result.succeeded} succeeded, {result.failed} failed)"
        )
        return result

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Poll the queue until ``stop_event`` is set.

        Sleeps with exponential back-off while the queue is empty. Storage
        errors are logged and retried after the same back-off; a job that
        was claimed but never recorded stays in processing (there is no
        lease expiry).
        """
        stop_event = stop_event or threading.Event()
        delay = self.poll_interval
        logger.info(f"[{self.worker_id}] Executor started")

        while not stop_event.is_set():
            try:
                outcome = self.run_once()
            except Exception as e:
                logger.error(f"[{self.worker_id}] Queue error, retrying in {delay:.1f}s: {e}")
            else:
                if outcome is not None:
                    delay = self.poll_interval
                    continue

            _ = stop_event.wait(delay)
            delay = min(delay * 2, self.max_poll_interval)

        logger.info(f"[{self.worker_id}] Executor stopped")
