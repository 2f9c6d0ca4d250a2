"""Per-month aggregate status of a benefit scan batch."""

from typing import TYPE_CHECKING, override

from sqlalchemy import BigInteger, CheckConstraint, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .queue import QueueEntry


class PeriodStatus(Base):
    """One row per (month, year) aggregating that period's scan jobs.

    Status lifecycle:
    - queued: created by the first enqueue, or re-armed by a batch enqueue
    - running: first job of the period was claimed
    - completed: no pending or processing rows remain
    - stale: a completed period had one of its rows invalidated

    Timestamps are in milliseconds. ``started_at`` is written once.
    """

    __tablename__ = "trust_wmb_scan_status"  # pyright: ignore[reportUnannotatedClassAttribute]
    __table_args__ = (  # pyright: ignore[reportUnannotatedClassAttribute]
        UniqueConstraint("month", "year", name="uq_trust_wmb_scan_status_month_year"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_trust_wmb_scan_status_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String, nullable=False, default="queued", index=True)

    total_queued: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_success: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    started_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    entries: Mapped[list["QueueEntry"]] = relationship(back_populates="period")

    @override
    def __repr__(self) -> str:
        return f"<PeriodStatus(month={self.month}, year={self.year}, status={self.status})>"
