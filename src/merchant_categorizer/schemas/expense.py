"""Pydantic schemas for expense import."""

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class ExpenseIn(BaseModel):
    """One imported expense."""

    expense_id: str = Field(min_length=1, max_length=255, description="Deduplication key")
    name: str = Field(min_length=1, max_length=500, description="Raw transaction description")
    amount: Decimal = Field(default=Decimal("0"), description="Expense amount")
    expense_date: date | None = Field(None, description="Transaction date")
    user_id: str | None = Field(None, max_length=255, description="Owner of the expense")
    merchant_name: str | None = Field(
        None, max_length=255, description="Merchant key; derived from name when omitted"
    )


class ExpenseImportRequest(BaseModel):
    expenses: list[ExpenseIn] = Field(min_length=1)
    enqueue: bool = Field(
        False, description="Categorize new expenses from the cache and queue the rest"
    )


class ExpenseResponse(BaseModel):
    expense_id: str
    user_id: str | None = None
    name: str
    merchant_name: str | None = None
    amount: Decimal
    expense_date: date | None = None
    category: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ExpenseImportResult(BaseModel):
    added_count: int = Field(description="Expenses inserted")
    duplicate_count: int = Field(description="Expenses skipped because the id already exists")
    queued_count: int = Field(0, description="Categorization jobs created")
    categorized_count: int = Field(
        0, description="Expenses categorized on import from mappings or heuristics"
    )
    new_expense_ids: list[str]
