"""Scheduled maintenance: daily catch-up, cleanup, statistics and the
admin dashboard summary."""

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from merchant_categorizer.config import Settings, settings
from merchant_categorizer.core.clock import ensure_utc, utcnow
from merchant_categorizer.repositories.expense import ExpenseRepository
from merchant_categorizer.repositories.job import JobQueue
from merchant_categorizer.repositories.mapping import MappingStore
from merchant_categorizer.services.orchestrator import resolve_from_cache
from merchant_categorizer.services.rate_limiter import RateLimiter, limits_from_settings

logger = logging.getLogger(__name__)


@dataclass
class DailyCategorizationResult:
    uncategorized: int = 0
    processed: int = 0
    categorized: int = 0
    queued: int = 0
    duration_ms: int = 0


@dataclass
class MerchantGroup:
    merchant_key: str
    expense_count: int
    total_amount: Decimal
    expenses: list = field(default_factory=list)


class MaintenanceService:
    """Maintenance operations run from cron and the admin routes."""

    def __init__(
        self,
        db: AsyncSession,
        config: Settings = settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.config = config
        self.clock = clock
        self.expenses = ExpenseRepository(db)
        self.jobs = JobQueue(db, clock=clock)
        self.mappings = MappingStore(db, clock=clock)
        self.rate_limiter = RateLimiter(db, limits_from_settings(config), clock=clock)

    async def daily_categorization(self) -> DailyCategorizationResult:
        """Categorize what mappings and heuristics can and queue the rest.

        Expenses are grouped by merchant key. Each expense is resolved with
        its owner's personal mapping first, so one group can split between
        categories. Only full cache misses become worker jobs.
        """
        started = time.monotonic()
        groups = await self.expenses.group_uncategorized_by_merchant()
        result = DailyCategorizationResult(
            uncategorized=sum(len(group) for group in groups.values()),
            processed=len(groups),
        )

        # Rollbacks expire loaded rows, so snapshot the fields up front.
        work = [
            (key, [(e.expense_id, e.name, e.user_id) for e in group])
            for key, group in groups.items()
        ]
        for merchant_key, expenses in work:
            resolved: dict[str, list[str]] = {}
            misses = []
            for expense_id, name, user_id in expenses:
                cached = await resolve_from_cache(self.mappings, merchant_key, name, user_id)
                if cached is None:
                    misses.append((expense_id, name, user_id))
                else:
                    resolved.setdefault(cached.category, []).append(expense_id)

            for category, expense_ids in resolved.items():
                result.categorized += await self.expenses.set_category_many(expense_ids, category)
            for expense_id, name, user_id in misses:
                await self.jobs.create_job(expense_id, merchant_key, name, user_id=user_id)
                result.queued += 1

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Daily categorization finished",
            extra=asdict(result),
        )
        return result

    async def daily_cleanup(self) -> dict[str, int]:
        """Delete completed jobs past the retention period."""
        started = time.monotonic()
        deleted = await self.jobs.cleanup_completed(self.config.job_retention_days)
        logger.info("Daily cleanup finished", extra={"deleted_jobs": deleted})
        return {
            "deleted_jobs": deleted,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }

    async def weekly_stats(self) -> dict[str, Any]:
        """Categorization coverage, category breakdown, queue and rate-limit state."""
        started = time.monotonic()
        total = await self.expenses.count()
        uncategorized = await self.expenses.count(uncategorized_only=True)
        categorized = total - uncategorized
        breakdown = await self.expenses.get_category_breakdown()
        top = sorted(breakdown.items(), key=lambda item: item[1], reverse=True)[:5]

        return {
            "timestamp": self.clock(),
            "expenses": {
                "total": total,
                "categorized": categorized,
                "uncategorized": uncategorized,
                "categorization_rate": f"{categorized / total * 100:.2f}%" if total else "0%",
            },
            "categories": breakdown,
            "top_categories": [{"category": name, "count": count} for name, count in top],
            "job_queue": asdict(await self.jobs.stats()),
            "rate_limit": [asdict(status) for status in await self.rate_limiter.all_status()],
            "duration_ms": int((time.monotonic() - started) * 1000),
        }

    async def dashboard_stats(self) -> dict[str, Any]:
        """Summary for the admin dashboard.

        ``needs_attention`` is set while anything is uncategorized or queued.
        """
        total = await self.expenses.count()
        uncategorized = await self.expenses.count(uncategorized_only=True)
        jobs = await self.jobs.stats()
        rate = await self.rate_limiter.status(self.config.ai_provider)
        recent = await self.mappings.recent_global(limit=10)

        percentage = round((total - uncategorized) / total * 100) if total else 100
        return {
            "expenses": {
                "uncategorized": uncategorized,
                "total": total,
                "percentage": percentage,
            },
            "job_queue": {
                "pending": jobs.pending,
                "processing": jobs.processing,
                "failed": jobs.failed,
            },
            "rate_limit": {
                "available": rate.available,
                "limit": rate.limit,
                "reset_time": rate.resets_at,
            },
            "recent_activity": [
                {
                    "merchant_key": mapping.merchant_key,
                    "category": mapping.category,
                    "confidence": mapping.confidence,
                    "updated_at": ensure_utc(mapping.last_updated),
                }
                for mapping in recent
            ],
            "needs_attention": bool(uncategorized or jobs.pending or jobs.failed),
        }

    async def uncategorized_by_merchant(self) -> list[MerchantGroup]:
        """Uncategorized expenses grouped by merchant, largest group first."""
        groups = await self.expenses.group_uncategorized_by_merchant()
        result = [
            MerchantGroup(
                merchant_key=key,
                expense_count=len(group),
                total_amount=sum((expense.amount for expense in group), Decimal("0")),
                expenses=group,
            )
            for key, group in groups.items()
        ]
        result.sort(key=lambda group: group.expense_count, reverse=True)
        return result

    async def rebuild_mappings(self) -> int:
        """Recompute global mappings from every categorized expense."""
        records = await self.expenses.get_categorized_records()
        return await self.mappings.rebuild_from_history(records)
