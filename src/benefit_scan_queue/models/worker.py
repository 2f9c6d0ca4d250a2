"""Worker registry rows enumerated by the monthly batch."""

from typing import override

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Worker(Base):
    """Minimal worker record.

    The platform's worker registry owns everything else about a worker; the
    scan queue only needs the id to fan out and to reference from queue rows.
    """

    __tablename__ = "workers"  # pyright: ignore[reportUnannotatedClassAttribute]

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    @override
    def __repr__(self) -> str:
        return f"<Worker(id={self.id}, name={self.name})>"
