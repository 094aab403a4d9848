"""Merchant -> category mappings.

``MerchantMapping`` is the global, crowd-sourced cache shared by every user.
``PersonalMapping`` is a user-scoped override that always wins for that user.
"""
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from merchant_categorizer.models.base import BaseModel

CONFIDENCE_AI = "ai"
CONFIDENCE_USER = "user"
CONFIDENCE_CONSENSUS = "consensus"
CONFIDENCE_LEVELS = (CONFIDENCE_AI, CONFIDENCE_USER, CONFIDENCE_CONSENSUS)


class MerchantMapping(BaseModel):
    """Global merchant mapping with vote bookkeeping."""

    __tablename__ = "merchant_mappings"

    merchant_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    confidence: Mapped[str] = mapped_column(String(20), nullable=False)
    vote_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # category -> number of votes, only populated by consensus rebuilds
    category_votes: Mapped[dict[str, int] | None] = mapped_column(JSON, nullable=True)
    ai_suggestion: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<MerchantMapping(merchant_key={self.merchant_key}, category={self.category}, "
            f"confidence={self.confidence}, vote_count={self.vote_count})>"
        )


class PersonalMapping(BaseModel):
    """Override category for a merchant for a specific user."""

    __tablename__ = "personal_mappings"

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    merchant_key: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "merchant_key", name="uq_personal_user_merchant_key"),
        Index("ix_personal_user_merchant_key", "user_id", "merchant_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<PersonalMapping(id={self.id}, user_id={self.user_id}, "
            f"merchant_key={self.merchant_key}, category={self.category})>"
        )
