"""Custom exception classes for the categorization pipeline.

This module defines a hierarchy of exceptions used throughout the
categorization pipeline. Each exception maps to a specific error code
defined in errors.py.
"""

from datetime import datetime
from typing import Any


class CategorizationError(Exception):
    """Base exception for all categorization errors.

    All custom exceptions inherit from this base class and include
    an error_code that maps to the error catalog.

    Attributes:
        error_code: Code from the error catalog (e.g., "RATE_001")
        details: Additional context about the error (for logging)
        http_status: HTTP status code to return (default: 500)
    """

    def __init__(
        self,
        error_code: str,
        details: dict[str, Any] | None = None,
        http_status: int = 500,
    ):
        """Initialize the exception.

        Args:
            error_code: Error code from errors.py
            details: Additional error context (not shown to users)
            http_status: HTTP status code (default: 500)
        """
        self.error_code = error_code
        self.details = details or {}
        self.http_status = http_status
        super().__init__(error_code)


class RateLimitedError(CategorizationError):
    """Raised when the classification provider refuses more requests.

    Either the provider answered HTTP 429 or the local rate limiter has no
    budget left in the current window. This is the only provider failure
    that is propagated to callers; they decide whether to queue, retry
    later or surface a "resume later" message.

    Attributes:
        retry_after: Best estimate of when requests are accepted again
    """

    def __init__(
        self,
        retry_after: datetime | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.retry_after = retry_after
        super().__init__("RATE_001", details=details, http_status=429)

    def __str__(self) -> str:
        if self.retry_after:
            return f"Rate limited until {self.retry_after.isoformat()}"
        return "Rate limited by provider"


class TransientProviderError(CategorizationError):
    """Raised for any non-429 provider failure.

    Common causes:
    - Network errors and timeouts
    - Non-2xx responses other than 429
    - Malformed response bodies
    - Missing API key
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        super().__init__("AI_001", details=details, http_status=502)

    def __str__(self) -> str:
        return self.message


class ClassificationInvalidError(CategorizationError):
    """Raised when the provider answer matches no known category.

    Recovered locally by defaulting to "Other"; never surfaced to callers.
    """

    def __init__(self, answer: str):
        self.answer = answer
        super().__init__("AI_002", details={"answer": answer}, http_status=502)

    def __str__(self) -> str:
        return f"Unrecognised category answer: {self.answer!r}"


class ExpenseNotFoundError(CategorizationError):
    """Raised when a referenced expense does not exist."""

    def __init__(self, expense_id: str):
        self.expense_id = expense_id
        super().__init__("API_001", details={"expense_id": expense_id}, http_status=404)

    def __str__(self) -> str:
        return f"Expense not found: {self.expense_id}"


class JobNotFoundError(CategorizationError):
    """Raised when a referenced categorization job does not exist."""

    def __init__(self, job_id: Any):
        self.job_id = job_id
        super().__init__("API_002", details={"job_id": str(job_id)}, http_status=404)

    def __str__(self) -> str:
        return f"Categorization job not found: {self.job_id}"


class InvalidCategoryError(CategorizationError):
    """Raised when a user supplies a category outside the vocabulary."""

    def __init__(self, category: str):
        self.category = category
        super().__init__("API_003", details={"category": category}, http_status=400)

    def __str__(self) -> str:
        return f"Unknown category: {self.category}"
