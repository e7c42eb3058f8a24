import time
import uuid
from datetime import datetime
from threading import Lock

from sqlalchemy import BigInteger, DateTime, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class _InsertionSequence:
    """Strictly increasing per process, microsecond wall clock across processes."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = Lock()

    def __call__(self) -> int:
        with self._lock:
            self._last = max(time.time_ns() // 1000, self._last + 1)
            return self._last


next_insertion_sequence = _InsertionSequence()


class ClassSubject(Base):
    __tablename__ = "class_subjects"
    __table_args__ = (
        UniqueConstraint("class_id", "subject_id", name="uq_class_subjects_class_subject"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    class_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    subject_id: Mapped[str] = mapped_column(String(36), nullable=False)
    teacher_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    hours_per_week: Mapped[float] = mapped_column(Numeric(5, 2, asdecimal=False), nullable=False, default=0)
    # Insertion order; equal-demand allocations are scheduled in this order.
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, default=lambda: next_insertion_sequence())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
