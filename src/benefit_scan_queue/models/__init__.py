"""Shared database models."""

from .base import Base
from .period import PeriodStatus
from .queue import QueueEntry
from .worker import Worker

__all__ = ["Base", "PeriodStatus", "QueueEntry", "Worker"]
