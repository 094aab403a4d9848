"""Unit tests for error handling middleware, PII filtering and log formatting."""

import json
import logging
from datetime import timedelta
from unittest.mock import Mock

import pytest
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import IntegrityError

from merchant_categorizer.api.middleware.error_handler import (
    handle_categorization_error,
    handle_generic_error,
    handle_integrity_error,
    handle_validation_error,
)
from merchant_categorizer.api.middleware.logging import JSONLogFormatter, filter_pii
from merchant_categorizer.core.clock import utcnow
from merchant_categorizer.core.errors import ERROR_CATALOG, get_error
from merchant_categorizer.core.exceptions import (
    ExpenseNotFoundError,
    InvalidCategoryError,
    RateLimitedError,
    TransientProviderError,
)


def make_request(path: str = "/test", method: str = "GET") -> Mock:
    request = Mock(spec=Request)
    request.url.path = path
    request.method = method
    return request


class TestCategorizationErrorHandler:
    """Test pipeline exception handling."""

    @pytest.mark.asyncio
    async def test_not_found(self):
        request = make_request("/api/v1/categorization/expenses/exp-1/category", "PUT")

        response = await handle_categorization_error(request, ExpenseNotFoundError("exp-1"))

        assert response.status_code == 404
        content = json.loads(response.body.decode())
        assert content["error_code"] == "API_001"
        assert content["message"] == "Expense not found: exp-1"

    @pytest.mark.asyncio
    async def test_invalid_category(self):
        response = await handle_categorization_error(make_request(), InvalidCategoryError("Snacks"))

        assert response.status_code == 400
        content = json.loads(response.body.decode())
        assert content["error_code"] == "API_003"
        assert "Snacks" in content["message"]

    @pytest.mark.asyncio
    async def test_rate_limited_sets_retry_after(self):
        retry_after = utcnow() + timedelta(seconds=42)

        response = await handle_categorization_error(
            make_request("/api/v1/categorization/resolve", "POST"),
            RateLimitedError(retry_after=retry_after),
        )

        assert response.status_code == 429
        assert 40 <= int(response.headers["Retry-After"]) <= 42
        content = json.loads(response.body.decode())
        assert content["error_code"] == "RATE_001"
        assert content["retry_after"] == retry_after.isoformat()
        assert content["retry_allowed"] is True

    @pytest.mark.asyncio
    async def test_rate_limited_without_reset_time(self):
        response = await handle_categorization_error(make_request(), RateLimitedError())

        assert response.status_code == 429
        assert "Retry-After" not in response.headers
        assert json.loads(response.body.decode())["retry_after"] is None

    @pytest.mark.asyncio
    async def test_provider_error_is_bad_gateway(self):
        response = await handle_categorization_error(
            make_request(), TransientProviderError("Provider returned HTTP 503")
        )

        assert response.status_code == 502
        assert json.loads(response.body.decode())["error_code"] == "AI_001"


class TestValidationErrorHandler:
    """Test validation error handling."""

    @pytest.mark.asyncio
    async def test_handle_validation_error(self):
        exc = RequestValidationError(
            errors=[
                {"loc": ("body", "description"), "msg": "field required", "type": "missing"},
                {"loc": ("body", "max_retries"), "msg": "must be >= 1", "type": "value_error"},
            ]
        )

        response = await handle_validation_error(make_request("/api/v1/categorization/resolve", "POST"), exc)

        assert response.status_code == 400
        content = json.loads(response.body.decode())
        assert content["error_code"] == "VAL_001"
        assert "description" in content["message"]
        assert "max_retries" in content["message"]


class TestIntegrityErrorHandler:
    """Test database integrity error handling."""

    @pytest.mark.asyncio
    async def test_handle_duplicate_key_error(self):
        exc = IntegrityError("statement", "params", "UNIQUE constraint failed: expenses.expense_id")

        response = await handle_integrity_error(make_request("/api/v1/expenses", "POST"), exc)

        assert response.status_code == 409
        assert json.loads(response.body.decode())["error_code"] == "DB_002"

    @pytest.mark.asyncio
    async def test_handle_generic_db_error(self):
        exc = IntegrityError("statement", "params", "NOT NULL constraint failed")

        response = await handle_integrity_error(make_request(method="POST"), exc)

        assert response.status_code == 500
        assert json.loads(response.body.decode())["error_code"] == "DB_001"


class TestGenericErrorHandler:
    """Test generic exception handling."""

    @pytest.mark.asyncio
    async def test_5xx_errors_dont_expose_internals(self):
        exc = Exception("Database connection failed: host=localhost port=5432")

        response = await handle_generic_error(make_request(), exc)

        assert response.status_code == 500
        content = json.loads(response.body.decode())
        assert content["error_code"] == "SYS_001"
        assert "localhost" not in response.body.decode()


class TestErrorCatalog:
    def test_every_entry_has_required_fields(self):
        required_fields = ["code", "message", "user_message", "suggestion", "retry_allowed"]
        for code, entry in ERROR_CATALOG.items():
            assert entry["code"] == code
            for field in required_fields:
                assert field in entry, f"{code} missing {field}"

    def test_unknown_code_falls_back(self):
        assert get_error("NOPE_999")["code"] == "UNKNOWN"


class TestPIIFiltering:
    """Test PII filtering functionality."""

    def test_filter_credit_card(self):
        filtered = filter_pii("Card 4532 0151 1283 0366 at WOOLWORTHS")
        assert "4532" not in filtered
        assert "[CARD]" in filtered
        assert "WOOLWORTHS" in filtered

    def test_filter_email(self):
        filtered = filter_pii("PAYPAL *jane.doe@example.com")
        assert "jane.doe@example.com" not in filtered
        assert "[EMAIL]" in filtered

    def test_filter_bank_account(self):
        filtered = filter_pii("TRANSFER TO 062-000 12345678")
        assert "12345678" not in filtered
        assert "[ACCOUNT]" in filtered

    def test_filter_phone_number(self):
        filtered = filter_pii("Call +61-412-345-678")
        assert "412-345-678" not in filtered
        assert "[PHONE]" in filtered

    def test_filter_preserves_non_pii(self):
        text = "UBER EATS SYDNEY $23.50"
        assert filter_pii(text) == text

    def test_filter_empty(self):
        assert filter_pii("") == ""
        assert filter_pii(None) is None


class TestJSONLogFormatter:
    def test_formats_extra_fields_and_filters_message(self):
        record = logging.LogRecord(
            name="merchant_categorizer.test",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Categorized expense for jane.doe@example.com",
            args=(),
            exc_info=None,
        )
        record.merchant_key = "WOOLWORTHS"
        record.attempts = 2

        data = json.loads(JSONLogFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["logger"] == "merchant_categorizer.test"
        assert data["message"] == "Categorized expense for [EMAIL]"
        assert data["merchant_key"] == "WOOLWORTHS"
        assert data["attempts"] == 2
        assert "job_id" not in data


class TestLoggingBehavior:
    """Test logging behavior of error handlers."""

    @pytest.mark.asyncio
    async def test_server_errors_logged_as_error(self, caplog):
        with caplog.at_level(logging.ERROR):
            await handle_categorization_error(make_request(), TransientProviderError("boom"))

        errors = [record for record in caplog.records if record.levelno == logging.ERROR]
        assert errors[0].getMessage() == "Categorization error"
        assert errors[0].error_code == "AI_001"

    @pytest.mark.asyncio
    async def test_client_errors_logged_as_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            await handle_categorization_error(make_request(), ExpenseNotFoundError("exp-9"))

        assert [record.levelno for record in caplog.records] == [logging.WARNING]
