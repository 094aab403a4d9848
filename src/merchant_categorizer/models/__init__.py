"""Database models."""
from merchant_categorizer.models.base import Base
from merchant_categorizer.models.categorization_job import CategorizationJob
from merchant_categorizer.models.expense import Expense
from merchant_categorizer.models.merchant_mapping import MerchantMapping, PersonalMapping
from merchant_categorizer.models.rate_limit_state import RateLimitState, WorkerLease

__all__ = [
    "Base",
    "CategorizationJob",
    "Expense",
    "MerchantMapping",
    "PersonalMapping",
    "RateLimitState",
    "WorkerLease",
]
