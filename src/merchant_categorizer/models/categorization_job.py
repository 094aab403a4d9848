"""Durable record of deferred categorization work."""
from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from merchant_categorizer.models.base import BaseModel

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_STATUSES = (JOB_PENDING, JOB_PROCESSING, JOB_COMPLETED, JOB_FAILED)


class CategorizationJob(BaseModel):
    """One categorization job per expense.

    ``attempts`` only grows. ``next_retry`` is only set while the job is
    failed; a failed job becomes processable again once it has elapsed.
    """

    __tablename__ = "categorization_jobs"

    expense_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    merchant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JOB_PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_categorization_jobs_status_created_at", "status", "created_at"),
        Index("ix_categorization_jobs_status_next_retry", "status", "next_retry"),
    )

    def __repr__(self) -> str:
        return (
            f"<CategorizationJob(id={self.id}, expense_id={self.expense_id}, "
            f"status={self.status}, attempts={self.attempts})>"
        )
