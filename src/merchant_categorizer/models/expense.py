"""Expense records supplied by the surrounding tracker.

Only ``category`` is written by the categorization pipeline; everything else
is owned by the importer.
"""
from datetime import date
from decimal import Decimal

from sqlalchemy import Date, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from merchant_categorizer.models.base import BaseModel


class Expense(BaseModel):
    """A single imported expense."""

    __tablename__ = "expenses"

    expense_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    merchant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    expense_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    __table_args__ = (
        Index("ix_expenses_merchant_name", "merchant_name"),
    )

    def __repr__(self) -> str:
        return f"<Expense(expense_id={self.expense_id}, name={self.name}, category={self.category})>"
