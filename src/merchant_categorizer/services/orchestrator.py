"""Categorization orchestrator: cheapest reliable source first.

Resolution order is personal mapping, global mapping, keyword heuristics and
finally the AI classifier. Every AI result is written back as a global
mapping so each merchant costs at most one provider call.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from merchant_categorizer.categorization import canonical_category, classify
from merchant_categorizer.core.clock import utcnow
from merchant_categorizer.core.exceptions import (
    InvalidCategoryError,
    RateLimitedError,
    TransientProviderError,
)
from merchant_categorizer.models.expense import Expense
from merchant_categorizer.models.merchant_mapping import CONFIDENCE_AI
from merchant_categorizer.repositories.expense import ExpenseRepository
from merchant_categorizer.repositories.mapping import MappingStore
from merchant_categorizer.services.ai_classifier import AIClassifier
from merchant_categorizer.services.rate_limiter import RateLimiter, limits_from_settings

logger = logging.getLogger(__name__)

SOURCE_PERSONAL = "personal"
SOURCE_GLOBAL = "global"
SOURCE_HEURISTIC = "heuristic"
SOURCE_AI = "ai"
SOURCE_AI_RETRY = "ai-retry"


@dataclass
class CategoryResolution:
    category: str
    source: str
    attempts: int = 0


@dataclass
class BatchCategorizationResult:
    """Outcome of an interactive bulk run.

    ``rate_limit_reset_time`` is set when the run stopped early because the
    provider budget ran out; the caller can resume after that time.
    """

    total_expenses: int = 0
    already_categorized: int = 0
    newly_categorized: int = 0
    errors: int = 0
    rate_limit_reset_time: datetime | None = None


async def resolve_from_cache(
    mappings: MappingStore,
    merchant_key: str,
    description: str,
    user_id: str | None = None,
) -> CategoryResolution | None:
    """Resolve without the AI: personal mapping, global mapping, heuristics.

    Returns None when all three miss; only then is a provider call (or a
    queued job) needed. Nothing is written.
    """
    if user_id:
        personal = await mappings.get_personal(user_id, merchant_key)
        if personal:
            return CategoryResolution(category=personal, source=SOURCE_PERSONAL)

    mapping = await mappings.get_global(merchant_key)
    if mapping is not None:
        return CategoryResolution(category=mapping.category, source=SOURCE_GLOBAL)

    heuristic = classify(merchant_key, description)
    if heuristic:
        return CategoryResolution(category=heuristic, source=SOURCE_HEURISTIC)
    return None


class CategorizationService:
    """Resolve categories for merchants and record user corrections."""

    def __init__(
        self,
        db: AsyncSession,
        classifier: AIClassifier,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.classifier = classifier
        self.rate_limiter = rate_limiter or RateLimiter(
            db, limits_from_settings(classifier.config), clock=clock
        )
        self.mappings = MappingStore(db, clock=clock)
        self.expenses = ExpenseRepository(db)
        self.clock = clock

    async def resolve(
        self,
        merchant_key: str,
        description: str,
        user_id: str | None = None,
        enable_retry: bool = False,
        max_retries: int = 3,
    ) -> CategoryResolution:
        """
        Find the category for a merchant.

        Args:
            merchant_key: Normalized merchant key
            description: Raw transaction description, used by heuristics and AI
            user_id: Owner of the expense; enables personal mappings
            enable_retry: Retry rate-limited AI calls with backoff
            max_retries: Total AI attempts when retrying

        Returns:
            The category and where it came from

        Raises:
            RateLimitedError: If the AI was needed but no budget is left.
                Nothing is persisted in that case.
            TransientProviderError: If a retrying AI call hit a non-rate-limit
                failure
        """
        cached = await resolve_from_cache(self.mappings, merchant_key, description, user_id)
        if cached is not None:
            if cached.source == SOURCE_HEURISTIC:
                await self.mappings.upsert_global(merchant_key, cached.category, CONFIDENCE_AI)
                logger.debug(
                    "Heuristic match",
                    extra={"merchant_key": merchant_key, "category": cached.category},
                )
            return cached

        provider = self.classifier.provider
        if not await self.rate_limiter.acquire(provider):
            status = await self.rate_limiter.status(provider)
            raise RateLimitedError(
                retry_after=status.resets_at,
                details={"provider": provider, "merchant_key": merchant_key},
            )

        if enable_retry:
            result = await self.classifier.classify_with_retry(
                merchant_key, description, max_retries=max_retries
            )
            if not result.final_attempt_succeeded:
                raise RateLimitedError(
                    details={"provider": provider, "merchant_key": merchant_key, "attempts": result.attempts}
                )
            category, attempts = result.category, result.attempts
        else:
            category, attempts = await self.classifier.classify(merchant_key, description), 1

        await self.mappings.upsert_global(
            merchant_key, category, CONFIDENCE_AI, ai_suggestion=category
        )
        logger.info(
            "AI categorized merchant",
            extra={"merchant_key": merchant_key, "category": category, "attempts": attempts},
        )
        return CategoryResolution(
            category=category,
            source=SOURCE_AI_RETRY if attempts > 1 else SOURCE_AI,
            attempts=attempts,
        )

    async def apply_user_override(
        self,
        expense_id: str,
        merchant_key: str,
        category: str,
        user_id: str | None = None,
        apply_to_all_from_merchant: bool = False,
    ) -> Expense:
        """
        Record a user's category choice for an expense.

        Sets the expense category, pins a personal mapping when asked to
        apply the choice to every expense from the merchant, and always
        votes on the global mapping.

        Raises:
            InvalidCategoryError: If the category is not in the vocabulary
            ExpenseNotFoundError: If the expense does not exist
        """
        canonical = canonical_category(category)
        if canonical is None:
            raise InvalidCategoryError(category)

        expense = await self.expenses.set_category(expense_id, canonical)
        if apply_to_all_from_merchant and user_id:
            await self.mappings.upsert_personal(user_id, merchant_key, canonical)
        await self.mappings.vote(merchant_key, canonical)
        await self.db.refresh(expense)

        logger.info(
            "User override applied",
            extra={
                "expense_id": expense_id,
                "merchant_key": merchant_key,
                "category": canonical,
                "user_id": user_id,
            },
        )
        return expense

    async def categorize_expenses(
        self,
        user_id: str | None = None,
        enable_retry: bool = True,
        max_retries: int = 3,
    ) -> BatchCategorizationResult:
        """Categorize every uncategorized expense, one resolution per merchant.

        Stops at the first rate limit and reports when to resume. Provider
        failures on one merchant are counted and the run moves on.
        """
        total = await self.expenses.count(user_id=user_id)
        groups = await self.expenses.group_uncategorized_by_merchant(user_id)
        uncategorized = sum(len(group) for group in groups.values())
        result = BatchCategorizationResult(
            total_expenses=total,
            already_categorized=total - uncategorized,
        )

        # Rollbacks expire loaded rows, so snapshot the fields up front.
        work = [
            (key, group[0].name, [expense.expense_id for expense in group])
            for key, group in groups.items()
        ]
        for merchant_key, description, expense_ids in work:
            try:
                resolution = await self.resolve(
                    merchant_key,
                    description,
                    user_id=user_id,
                    enable_retry=enable_retry,
                    max_retries=max_retries,
                )
            except RateLimitedError as e:
                result.rate_limit_reset_time = e.retry_after or (
                    await self.rate_limiter.status(self.classifier.provider)
                ).resets_at
                logger.info(
                    "Bulk categorization paused by rate limit",
                    extra={
                        "user_id": user_id,
                        "categorized": result.newly_categorized,
                        "retry_after": str(result.rate_limit_reset_time),
                    },
                )
                break
            except TransientProviderError as e:
                result.errors += len(expense_ids)
                logger.error(
                    "Failed to categorize merchant",
                    extra={"merchant_key": merchant_key, "error_code": e.error_code, "error": str(e)},
                )
                continue

            result.newly_categorized += await self.expenses.set_category_many(
                expense_ids, resolution.category
            )

        return result
