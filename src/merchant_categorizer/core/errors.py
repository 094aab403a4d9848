"""Error codes and user-friendly messages.

This module defines the error catalog for the categorization pipeline.
Each error has:
- error_code: Unique identifier
- message: Technical description (for logs)
- user_message: User-friendly explanation
- suggestion: Actionable guidance for the user
- retry_allowed: Whether the error is retryable
"""

# Error catalog for the categorization pipeline
ERROR_CATALOG: dict[str, dict] = {
    "RATE_001": {
        "code": "RATE_001",
        "message": "Classification provider rate limit reached",
        "user_message": "We've hit the categorization limit for now.",
        "suggestion": "Categorization resumes automatically. You can also try again after the reset time.",
        "retry_allowed": True,
    },
    "AI_001": {
        "code": "AI_001",
        "message": "Classification provider request failed",
        "user_message": "We couldn't reach the categorization service.",
        "suggestion": "Please try again in a few moments.",
        "retry_allowed": True,
    },
    "AI_002": {
        "code": "AI_002",
        "message": "Classification provider returned an unknown category",
        "user_message": "We couldn't determine a category for this merchant.",
        "suggestion": "Choose a category manually to teach the categorizer.",
        "retry_allowed": False,
    },
    "API_001": {
        "code": "API_001",
        "message": "Expense not found",
        "user_message": "We couldn't find this expense.",
        "suggestion": "Please refresh and try again.",
        "retry_allowed": False,
    },
    "API_002": {
        "code": "API_002",
        "message": "Categorization job not found",
        "user_message": "We couldn't find this categorization job.",
        "suggestion": "Please check the job ID and try again.",
        "retry_allowed": False,
    },
    "API_003": {
        "code": "API_003",
        "message": "Invalid category",
        "user_message": "That category isn't supported.",
        "suggestion": "Please choose a category from the allowed list.",
        "retry_allowed": False,
    },
    "DB_001": {
        "code": "DB_001",
        "message": "Database operation failed",
        "user_message": "A database error occurred.",
        "suggestion": "Please try again in a few moments.",
        "retry_allowed": True,
    },
    "DB_002": {
        "code": "DB_002",
        "message": "Resource already exists",
        "user_message": "This record already exists.",
        "suggestion": "Please check if the record was already created.",
        "retry_allowed": False,
    },
    "VAL_001": {
        "code": "VAL_001",
        "message": "Request data failed validation",
        "user_message": "Invalid input data",
        "suggestion": "Please check your input and try again",
        "retry_allowed": True,
    },
    "SYS_001": {
        "code": "SYS_001",
        "message": "Internal server error",
        "user_message": "An unexpected error occurred.",
        "suggestion": "Please try again later or contact support.",
        "retry_allowed": True,
    },
}


def get_error(error_code: str) -> dict:
    """Get error definition by code.

    Args:
        error_code: Error code from the catalog

    Returns:
        Dict with error details (a generic definition for unknown codes)
    """
    if error_code not in ERROR_CATALOG:
        return {
            "code": "UNKNOWN",
            "message": f"Unknown error code: {error_code}",
            "user_message": "An unexpected error occurred.",
            "suggestion": "Please try again. Contact support if the problem persists.",
            "retry_allowed": True,
        }
    return ERROR_CATALOG[error_code]
