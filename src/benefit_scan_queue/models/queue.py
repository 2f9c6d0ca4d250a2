"""Queue entry model: one eligibility scan for one worker in one month."""

from typing import TYPE_CHECKING, TypeAlias, override

from sqlalchemy import BigInteger, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from .base import Base

if TYPE_CHECKING:
    from .period import PeriodStatus

JSONPrimitive: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONPrimitive | list["JSONValue"] | dict[str, "JSONValue"]


class QueueEntry(Base):
    """Scan job for (worker_id, month, year).

    This model is shared between:
    - enqueue triggers (monthly batch, manual re-scan, worker-data hooks)
    - executors that claim and complete jobs

    The (worker_id, month, year) triple is unique. ``status_id`` points at the
    owning PeriodStatus row and is fixed when the entry is created.
    """

    __tablename__ = "trust_wmb_scan_queue"  # pyright: ignore[reportUnannotatedClassAttribute]
    __table_args__ = (  # pyright: ignore[reportUnannotatedClassAttribute]
        UniqueConstraint("worker_id", "month", "year", name="uq_trust_wmb_scan_queue_worker_period"),
        Index("idx_trust_wmb_scan_queue_claim", "status", "scheduled_for", "id"),
        Index("idx_trust_wmb_scan_queue_status_id", "status_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trust_wmb_scan_status.id", ondelete="CASCADE"), nullable=False
    )
    worker_id: Mapped[str] = mapped_column(
        String, ForeignKey("workers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trigger_source: Mapped[str] = mapped_column(String, nullable=False, default="monthly_batch")

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    scheduled_for: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    picked_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Opaque payload produced by the scan evaluator
    result_summary: Mapped[JSONValue] = mapped_column(JSON, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    period: Mapped["PeriodStatus"] = relationship(back_populates="entries")

    @override
    def __repr__(self) -> str:
        return (
            f"<QueueEntry(worker_id={self.worker_id}, month={self.month}, "
            f"year={self.year}, status={self.status})>"
        )
