"""
Command-line entry point for operating the benefit scan queue.

Usage:
    scan-queue init-db
    scan-queue enqueue-month --month 3 --year 2025
    scan-queue enqueue-worker W-1001 --trigger-source manual
    scan-queue invalidate W-1001
    scan-queue status --month 3 --year 2025
    scan-queue summary
    scan-queue process-batch --evaluator my_pkg.scans:evaluate --batch-size 25
    scan-queue work --evaluator my_pkg.scans:evaluate
"""

import argparse
import importlib
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any

from pydantic import BaseModel
from sqlalchemy.engine import make_url

from .config import Config
from .database import create_db_engine, create_session_factory, init_db
from .executor import ScanEvaluator, ScanExecutor
from .mqtt import get_broadcaster, shutdown_broadcaster
from .scan_queue import ScanQueueService, local_now
from .schemas import TriggerSource

logger = logging.getLogger("scan-queue")


def load_evaluator(spec: str) -> Any:
    """Import an evaluator from a ``module:attribute`` string.

    Classes are instantiated with no arguments; functions and instances are
    returned as-is.
    """
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Evaluator must look like 'module:attribute', got {spec!r}")
    target = getattr(importlib.import_module(module_name), attr)
    if isinstance(target, type) and issubclass(target, ScanEvaluator):
        return target()
    return target


def _dump(value: Any) -> str:
    if isinstance(value, BaseModel):
        return value.model_dump_json(indent=2)
    if isinstance(value, list):
        return json.dumps(
            [v.model_dump(mode="json") if isinstance(v, BaseModel) else v for v in value],
            indent=2,
        )
    return json.dumps(value, indent=2)


def build_parser() -> argparse.ArgumentParser:
    now = local_now()
    parser = argparse.ArgumentParser(prog="scan-queue", description="Monthly benefit scan queue")
    parser.add_argument("--database-url", default=Config.DATABASE_URL, help="SQLAlchemy database URL")
    sub = parser.add_subparsers(dest="command", required=True)

    _ = sub.add_parser("init-db", help="Create queue tables")

    add_worker = sub.add_parser("add-worker", help="Register a worker for monthly scans")
    add_worker.add_argument("worker_id")
    add_worker.add_argument("--name")

    def add_period_args(p: argparse.ArgumentParser, default_current: bool = True) -> None:
        p.add_argument("--month", type=int, default=now.month if default_current else None)
        p.add_argument("--year", type=int, default=now.year if default_current else None)

    enqueue_month = sub.add_parser("enqueue-month", help="Queue every worker for a month")
    add_period_args(enqueue_month)

    enqueue_worker = sub.add_parser("enqueue-worker", help="Queue one worker for a month")
    enqueue_worker.add_argument("worker_id")
    add_period_args(enqueue_worker)
    enqueue_worker.add_argument(
        "--trigger-source",
        choices=[t.value for t in TriggerSource],
        default=TriggerSource.manual.value,
    )

    invalidate = sub.add_parser("invalidate", help="Reset a worker's current and future scans")
    invalidate.add_argument("worker_id")

    status = sub.add_parser("status", help="Show period statuses")
    add_period_args(status, default_current=False)

    _ = sub.add_parser("summary", help="Per-period entry counts by status")

    process_batch = sub.add_parser("process-batch", help="Run a bounded batch of scans")
    process_batch.add_argument("--evaluator", required=True, help="module:attribute")
    process_batch.add_argument("--batch-size", type=int, default=Config.PROCESS_BATCH_SIZE)

    work = sub.add_parser("work", help="Run the executor loop until interrupted")
    work.add_argument("--evaluator", required=True, help="module:attribute")
    work.add_argument("--worker-id", default=Config.WORKER_ID)

    return parser


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


def run(args: argparse.Namespace, queue: ScanQueueService) -> Any:
    """Dispatch one parsed command against the queue."""
    if args.command == "add-worker":
        return {"worker_id": args.worker_id, "added": queue.register_worker(args.worker_id, args.name)}

    if args.command == "enqueue-month":
        return queue.enqueue_month(args.month, args.year)

    if args.command == "enqueue-worker":
        return queue.enqueue_worker(args.worker_id, args.month, args.year, args.trigger_source)

    if args.command == "invalidate":
        return {"worker_id": args.worker_id, "invalidated_count": queue.invalidate_worker_scans(args.worker_id)}

    if args.command == "status":
        if args.month is None and args.year is None:
            return queue.get_all_month_statuses()
        if args.month is None or args.year is None:
            raise ValueError("--month and --year must be given together")
        period = queue.get_month_status(args.month, args.year)
        if period is None:
            raise LookupError(f"No benefit scan period for {args.month}/{args.year}")
        return {
            "status": period.model_dump(mode="json"),
            "queue_entries": [e.model_dump(mode="json") for e in queue.get_queued_workers(period.id)],
        }

    if args.command == "summary":
        return queue.get_pending_summary()

    if args.command == "process-batch":
        executor = ScanExecutor(queue, load_evaluator(args.evaluator))
        return executor.process_batch(args.batch_size)

    if args.command == "work":
        executor = ScanExecutor(queue, load_evaluator(args.evaluator), worker_id=args.worker_id)
        stop_event = threading.Event()
        _ = signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
        try:
            executor.run(stop_event)
        except KeyboardInterrupt:
            stop_event.set()
        return {"worker_id": args.worker_id, "stopped": True}

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=Config.LOG_LEVEL)
    args = build_parser().parse_args(argv)

    _ensure_sqlite_dir(args.database_url)
    engine = create_db_engine(args.database_url)
    try:
        if args.command == "init-db":
            init_db(engine)
            print(_dump({"initialized": True}))
            return 0

        broadcaster = get_broadcaster(
            broadcast_type=Config.BROADCAST_TYPE,
            broker=Config.MQTT_BROKER,
            port=Config.MQTT_PORT,
            topic=Config.MQTT_TOPIC,
        )
        queue = ScanQueueService(create_session_factory(engine), broadcaster=broadcaster)
        try:
            print(_dump(run(args, queue)))
        except (LookupError, ValueError) as e:
            logger.error(str(e))
            return 1
        return 0
    finally:
        shutdown_broadcaster()
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
