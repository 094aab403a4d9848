"""Classification provider adapter (OpenAI-compatible chat completions).

Only HTTP 429 is surfaced to callers of ``classify``; every other provider
failure degrades to the default category. ``classify_with_retry`` retries
rate-limited attempts with capped exponential backoff and lets every other
failure propagate.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from merchant_categorizer.categorization import CATEGORIES, DEFAULT_CATEGORY
from merchant_categorizer.config import Settings, settings
from merchant_categorizer.core.clock import utcnow
from merchant_categorizer.core.exceptions import (
    ClassificationInvalidError,
    RateLimitedError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = (
    "You are an expense categorization assistant. Categorize the following "
    "merchant/transaction into ONE of these categories:\n\n"
    "{categories}\n\n"
    "Merchant: {merchant}\n"
    "Transaction description: {description}\n\n"
    "Respond with ONLY the category name, nothing else. "
    "Choose the most appropriate category."
)


@dataclass
class ClassificationResult:
    """Outcome of a classification with retries.

    ``delays_ms`` lists every backoff slept between attempts.
    ``final_attempt_succeeded`` is False when retries ran out while the
    provider was still rate limiting; ``category`` is then the default.
    """

    category: str
    attempts: int
    delays_ms: list[int] = field(default_factory=list)
    final_attempt_succeeded: bool = True


def build_prompt(merchant_key: str, description: str) -> str:
    return PROMPT_TEMPLATE.format(
        categories=", ".join(CATEGORIES),
        merchant=merchant_key,
        description=description,
    )


def parse_category(answer: str) -> str:
    """Map a free-text provider answer onto the category vocabulary.

    Exact match first, then the first category (in vocabulary order) that
    appears case-insensitively in the answer.

    Raises:
        ClassificationInvalidError: If no category can be recognised
    """
    answer = answer.strip()
    if answer in CATEGORIES:
        return answer

    lowered = answer.lower()
    for category in CATEGORIES:
        if category.lower() in lowered:
            return category

    raise ClassificationInvalidError(answer)


def parse_retry_after(response: httpx.Response, now: datetime) -> datetime | None:
    """When a 429 response says requests are accepted again, if it says.

    Understands a ``Retry-After`` header in seconds and the OpenRouter body
    field ``error.metadata.headers.X-RateLimit-Reset`` in epoch milliseconds.
    """
    header = response.headers.get("Retry-After")
    if header:
        try:
            return now + timedelta(seconds=float(header))
        except ValueError:
            logger.debug("Ignoring non-numeric Retry-After header", extra={"header": header})

    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None

    metadata = (body.get("error") or {}).get("metadata") or {}
    reset = (metadata.get("headers") or {}).get("X-RateLimit-Reset")
    if reset is None:
        return None
    try:
        return datetime.fromtimestamp(int(reset) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class AIClassifier:
    """Categorize a merchant by asking a chat-completions model."""

    def __init__(
        self,
        config: Settings = settings,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the classifier.

        Args:
            config: Provider settings (endpoint, model, key, retry tuning)
            client: Shared HTTP client; a short-lived one is used per call
                when omitted
            sleep: Awaitable sleep used between retries
            clock: Source of the current UTC time
        """
        self.config = config
        self.client = client
        self.sleep = sleep
        self.clock = clock

    @property
    def provider(self) -> str:
        return self.config.ai_provider

    async def classify(self, merchant_key: str, description: str) -> str:
        """Single classification attempt.

        Returns:
            A category from the vocabulary, the default one on any
            non-rate-limit failure

        Raises:
            RateLimitedError: If the provider answered HTTP 429
        """
        try:
            return await self._classify_once(merchant_key, description)
        except TransientProviderError as e:
            logger.error(
                "Classification failed",
                extra={"merchant_key": merchant_key, "error_code": e.error_code, "error": str(e)},
            )
            return DEFAULT_CATEGORY

    async def classify_with_retry(
        self,
        merchant_key: str,
        description: str,
        max_retries: int | None = None,
    ) -> ClassificationResult:
        """Classify, retrying rate-limited attempts with exponential backoff.

        ``max_retries`` is the total number of attempts. The delay before
        retry ``n`` (0-based) is ``min(base * 2**n, cap)`` milliseconds.

        Raises:
            TransientProviderError: On the first non-rate-limit failure
        """
        max_attempts = max(1, max_retries if max_retries is not None else self.config.ai_max_retries)
        delays_ms: list[int] = []

        for attempt in range(max_attempts):
            try:
                category = await self._classify_once(merchant_key, description)
            except RateLimitedError as e:
                if attempt + 1 >= max_attempts:
                    logger.warning(
                        "Rate limited on final attempt",
                        extra={
                            "merchant_key": merchant_key,
                            "attempts": attempt + 1,
                            "retry_after": str(e.retry_after),
                        },
                    )
                    break
                delay_ms = min(
                    self.config.ai_backoff_base_ms * 2**attempt,
                    self.config.ai_backoff_cap_ms,
                )
                logger.info(
                    "Rate limited, backing off",
                    extra={"merchant_key": merchant_key, "attempt": attempt + 1, "delay_ms": delay_ms},
                )
                delays_ms.append(delay_ms)
                await self.sleep(delay_ms / 1000)
                continue

            return ClassificationResult(
                category=category,
                attempts=attempt + 1,
                delays_ms=delays_ms,
            )

        return ClassificationResult(
            category=DEFAULT_CATEGORY,
            attempts=max_attempts,
            delays_ms=delays_ms,
            final_attempt_succeeded=False,
        )

    async def _classify_once(self, merchant_key: str, description: str) -> str:
        answer = await self._complete(build_prompt(merchant_key, description))
        try:
            return parse_category(answer)
        except ClassificationInvalidError:
            logger.warning(
                "Provider returned invalid category, using default",
                extra={"merchant_key": merchant_key, "answer": answer, "category": DEFAULT_CATEGORY},
            )
            return DEFAULT_CATEGORY

    async def _complete(self, prompt: str) -> str:
        """POST one chat completion and return the trimmed answer text."""
        if not self.config.openrouter_api_key:
            raise TransientProviderError("OPENROUTER_API_KEY not set")

        headers = {
            "Authorization": f"Bearer {self.config.openrouter_api_key}",
            "Content-Type": "application/json",
            "X-Title": self.config.openrouter_app_title,
        }
        if self.config.openrouter_app_referer:
            headers["HTTP-Referer"] = self.config.openrouter_app_referer
        payload = {
            "model": self.config.openrouter_model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.config.ai_temperature,
            "max_tokens": self.config.ai_max_tokens,
        }
        url = f"{self.config.openrouter_base_url.rstrip('/')}/chat/completions"

        try:
            if self.client is not None:
                response = await self.client.post(
                    url, headers=headers, json=payload, timeout=self.config.ai_timeout_seconds
                )
            else:
                async with httpx.AsyncClient(timeout=self.config.ai_timeout_seconds) as client:
                    response = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise TransientProviderError(f"Provider request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError(
                retry_after=parse_retry_after(response, self.clock()),
                details={"provider": self.provider},
            )
        if not response.is_success:
            raise TransientProviderError(
                f"Provider returned HTTP {response.status_code}",
                details={"status_code": response.status_code, "body": response.text[:500]},
            )

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise TransientProviderError(f"Malformed provider response: {e}") from e

        return (content or "").strip()
