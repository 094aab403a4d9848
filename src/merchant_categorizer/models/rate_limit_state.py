"""Per-provider fixed-window request counters and worker leases."""
from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from merchant_categorizer.models.base import BaseModel


class RateLimitState(BaseModel):
    """Request count for one provider inside the current window."""

    __tablename__ = "rate_limit_state"

    provider: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_reset: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_request: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<RateLimitState(provider={self.provider}, request_count={self.request_count})>"


class WorkerLease(BaseModel):
    """Named lease guaranteeing a single active background worker."""

    __tablename__ = "worker_leases"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<WorkerLease(name={self.name}, holder={self.holder}, expires_at={self.expires_at})>"
