"""Test doubles and helpers shared by the scan queue tests."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from benefit_scan_queue import PeriodStatusRecord, ScanQueueService
from benefit_scan_queue.mqtt import period_topic


class FixedClock:
    """Clock returning a settable instant; advance() moves it forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@dataclass
class RecordingBroadcaster:
    """Broadcaster that keeps every published event in memory.

    Period snapshots land in ``retained`` keyed by the topic an
    MQTTBroadcaster on ``topic`` would retain them under.
    """

    topic: str = "trust/wmb-scan/events"
    events: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)
    retained: dict[str, str] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def connect(self) -> bool:
        return True

    def disconnect(self) -> None:
        pass

    def publish_event(self, event_type: str, entity_id: str, data: dict) -> bool:
        with self.lock:
            self.events.append((event_type, entity_id, data))
        return True

    def publish_period(self, period: PeriodStatusRecord) -> bool:
        with self.lock:
            self.retained[period_topic(self.topic, period.month, period.year)] = period.model_dump_json()
        return True

    def of_type(self, event_type: str) -> list[tuple[str, str, dict[str, Any]]]:
        with self.lock:
            return [e for e in self.events if e[0] == event_type]


def register_workers(queue: ScanQueueService, count: int) -> list[str]:
    worker_ids = [f"W-{i:03d}" for i in range(1, count + 1)]
    for worker_id in worker_ids:
        _ = queue.register_worker(worker_id, name=f"Worker {worker_id}")
    return worker_ids


def complete_all(queue: ScanQueueService, success: bool = True) -> int:
    """Claim and finish every pending job; returns how many were finished."""
    finished = 0
    while (job := queue.claim_next_job()) is not None:
        queue.record_job_result(job.id, success, {"worker": job.worker_id}, None if success else "boom")
        finished += 1
    return finished
