"""Pydantic schemas for categorization API requests and responses."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from merchant_categorizer.schemas.expense import ExpenseResponse


class ResolveRequest(BaseModel):
    merchant_key: str | None = Field(
        None, max_length=255, description="Normalized merchant key; derived from description when omitted"
    )
    description: str = Field(min_length=1, max_length=500, description="Raw transaction description")
    user_id: str | None = Field(None, max_length=255)
    enable_retry: bool = Field(False, description="Retry rate-limited AI calls with backoff")
    max_retries: int = Field(3, ge=1, le=10, description="Total AI attempts when retrying")


class ResolveResponse(BaseModel):
    merchant_key: str
    category: str
    source: str = Field(description="personal, global, heuristic, ai or ai-retry")
    attempts: int = 0

    model_config = ConfigDict(from_attributes=True)


class CategoryOverrideRequest(BaseModel):
    category: str = Field(min_length=1, max_length=100)
    merchant_key: str | None = Field(
        None, max_length=255, description="Merchant key; taken from the expense when omitted"
    )
    user_id: str | None = Field(None, max_length=255)
    apply_to_all_from_merchant: bool = Field(
        False, description="Pin this category for every expense from the merchant"
    )


class BatchCategorizeRequest(BaseModel):
    user_id: str | None = Field(None, max_length=255)
    enable_retry: bool = True
    max_retries: int = Field(3, ge=1, le=10)


class BatchCategorizeResponse(BaseModel):
    total_expenses: int
    already_categorized: int
    newly_categorized: int
    errors: int
    rate_limit_reset_time: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class MerchantMappingResponse(BaseModel):
    merchant_key: str
    category: str
    confidence: str
    vote_count: int
    category_votes: dict[str, int] | None = None
    ai_suggestion: str | None = None
    last_updated: datetime

    model_config = ConfigDict(from_attributes=True)


class RebuildMappingsResponse(BaseModel):
    mappings_written: int


class JobCreateRequest(BaseModel):
    expense_id: str = Field(min_length=1, max_length=255)
    merchant_name: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1, max_length=500)
    user_id: str | None = Field(None, max_length=255)


class JobResponse(BaseModel):
    id: UUID
    expense_id: str
    merchant_name: str
    description: str
    user_id: str | None = None
    status: str
    attempts: int
    last_attempt: datetime | None = None
    next_retry: datetime | None = None
    error: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class JobStatsResponse(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int
    retryable: int

    model_config = ConfigDict(from_attributes=True)


class WorkerRunResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    duration_ms: int
    reclaimed: int = 0
    skipped: bool = False

    model_config = ConfigDict(from_attributes=True)


class RateLimitStatusResponse(BaseModel):
    provider: str
    request_count: int
    limit: int
    available: int
    window_seconds: int
    resets_at: datetime | None = None
    last_request: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class MerchantGroupResponse(BaseModel):
    merchant_key: str
    expense_count: int
    total_amount: Decimal
    expenses: list[ExpenseResponse]

    model_config = ConfigDict(from_attributes=True)


class DashboardResponse(BaseModel):
    expenses: dict[str, int]
    job_queue: dict[str, int]
    rate_limit: dict[str, Any]
    recent_activity: list[dict[str, Any]]
    needs_attention: bool
