"""Durable categorization job queue.

Jobs move pending -> processing -> completed | failed. Failed jobs are
picked up again once their backoff has elapsed; no transition ever returns
a job to pending. After the backoff table is exhausted a job keeps retrying
once a day; only a failure marked non-retryable (the expense is gone) stops
it for good.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_categorizer.core.clock import utcnow
from merchant_categorizer.core.exceptions import JobNotFoundError
from merchant_categorizer.models.categorization_job import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    CategorizationJob,
)
from merchant_categorizer.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

# Retry delay in minutes indexed by attempt number (1-based): 1m, 5m, 30m, 2h, 12h, 24h.
BACKOFF_MINUTES: tuple[int, ...] = (1, 5, 30, 120, 720, 1440)

PROCESSING_TIMEOUT_ERROR = "Processing timed out"


def backoff_delay(attempts: int) -> timedelta:
    """Delay before the next retry after ``attempts`` failed attempts.

    Clamped to the last table entry for attempts beyond the table.
    """
    index = min(max(attempts, 1) - 1, len(BACKOFF_MINUTES) - 1)
    return timedelta(minutes=BACKOFF_MINUTES[index])


@dataclass
class JobStats:
    """Job counts by status; ``retryable`` are failed jobs whose backoff elapsed."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    retryable: int = 0


class JobQueue(BaseRepository[CategorizationJob]):
    """Sole writer of CategorizationJob rows."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        super().__init__(db, CategorizationJob)
        self.clock = clock

    async def create_job(
        self,
        expense_id: str,
        merchant_name: str,
        description: str,
        user_id: str | None = None,
    ) -> CategorizationJob:
        """Queue an expense for categorization.

        Idempotent by expense id: an existing job is returned unchanged.
        """
        existing = await self.get_by_expense(expense_id)
        if existing is not None:
            return existing

        job = CategorizationJob(
            expense_id=expense_id,
            merchant_name=merchant_name,
            description=description,
            user_id=user_id,
            status=JOB_PENDING,
            attempts=0,
            created_at=self.clock(),
        )
        self.db.add(job)
        try:
            await self.db.commit()
        except IntegrityError:
            # Another caller queued the same expense between our read and write.
            await self.db.rollback()
            existing = await self.get_by_expense(expense_id)
            if existing is None:
                raise
            return existing

        logger.debug("Queued categorization job", extra={"expense_id": expense_id})
        return job

    async def get_by_expense(self, expense_id: str) -> CategorizationJob | None:
        """Get the job for an expense, if one was ever queued."""
        result = await self.db.execute(
            select(CategorizationJob).where(CategorizationJob.expense_id == expense_id)
        )
        return result.scalar_one_or_none()

    async def poll_ready(self, max_jobs: int) -> list[CategorizationJob]:
        """Jobs ready to run, at most ``max_jobs``.

        Pending jobs come first, oldest first, so fresh work is never starved
        by retries. Failed jobs whose backoff has elapsed fill the remaining
        capacity, earliest retry first.
        """
        if max_jobs <= 0:
            return []

        pending = await self.db.execute(
            select(CategorizationJob)
            .where(CategorizationJob.status == JOB_PENDING)
            .order_by(CategorizationJob.created_at.asc())
            .limit(max_jobs)
            .execution_options(populate_existing=True)
        )
        jobs = list(pending.scalars().all())

        remaining = max_jobs - len(jobs)
        if remaining > 0:
            retryable = await self.db.execute(
                select(CategorizationJob)
                .where(
                    CategorizationJob.status == JOB_FAILED,
                    CategorizationJob.next_retry.is_not(None),
                    CategorizationJob.next_retry <= self.clock(),
                )
                .order_by(CategorizationJob.next_retry.asc())
                .limit(remaining)
                .execution_options(populate_existing=True)
            )
            jobs.extend(retryable.scalars().all())

        return jobs

    async def mark_processing(self, job_id: UUID) -> CategorizationJob:
        job = await self._get_or_raise(job_id)
        job.status = JOB_PROCESSING
        job.last_attempt = self.clock()
        job.next_retry = None
        await self.db.commit()
        return job

    async def mark_completed(self, job_id: UUID) -> CategorizationJob:
        job = await self._get_or_raise(job_id)
        job.status = JOB_COMPLETED
        job.attempts = job.attempts + 1
        job.next_retry = None
        job.error = None
        await self.db.commit()
        return job

    async def mark_failed(self, job_id: UUID, error: str, retry: bool = True) -> CategorizationJob:
        """Record a failed attempt and schedule the retry from the backoff table.

        With ``retry=False`` no retry is scheduled and the job is never polled again.
        """
        job = await self._get_or_raise(job_id)
        attempts = job.attempts + 1
        job.status = JOB_FAILED
        job.attempts = attempts
        job.error = error
        job.next_retry = self.clock() + backoff_delay(attempts) if retry else None
        await self.db.commit()
        logger.info(
            "Categorization job failed",
            extra={
                "job_id": str(job_id),
                "expense_id": job.expense_id,
                "attempts": attempts,
                "next_retry": job.next_retry.isoformat() if job.next_retry else None,
                "error": error,
            },
        )
        return job

    async def reclaim_stuck(self, timeout: timedelta) -> int:
        """Fail jobs left in processing longer than ``timeout``.

        Covers workers that crashed mid-job. Reclaimed jobs follow the normal
        failure path (attempt counted, backoff scheduled).
        """
        cutoff = self.clock() - timeout
        result = await self.db.execute(
            select(CategorizationJob.id).where(
                CategorizationJob.status == JOB_PROCESSING,
                CategorizationJob.last_attempt < cutoff,
            )
        )
        stuck_ids = list(result.scalars().all())
        for job_id in stuck_ids:
            await self.mark_failed(job_id, PROCESSING_TIMEOUT_ERROR)
        if stuck_ids:
            logger.warning("Reclaimed stuck categorization jobs", extra={"reclaimed": len(stuck_ids)})
        return len(stuck_ids)

    async def cleanup_completed(self, older_than_days: int = 7) -> int:
        """Delete completed jobs created before the retention cutoff."""
        cutoff = self.clock() - timedelta(days=older_than_days)
        result = await self.db.execute(
            delete(CategorizationJob).where(
                CategorizationJob.status == JOB_COMPLETED,
                CategorizationJob.created_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return int(result.rowcount or 0)

    async def stats(self) -> JobStats:
        """Counts by status plus failed jobs that are due for retry."""
        result = await self.db.execute(
            select(CategorizationJob.status, func.count(CategorizationJob.id)).group_by(
                CategorizationJob.status
            )
        )
        stats = JobStats()
        for status, count in result:
            if status in (JOB_PENDING, JOB_PROCESSING, JOB_COMPLETED, JOB_FAILED):
                setattr(stats, status, int(count))
            stats.total += int(count)

        retryable = await self.db.execute(
            select(func.count(CategorizationJob.id)).where(
                CategorizationJob.status == JOB_FAILED,
                CategorizationJob.next_retry.is_not(None),
                CategorizationJob.next_retry <= self.clock(),
            )
        )
        stats.retryable = int(retryable.scalar() or 0)
        return stats

    async def _get_or_raise(self, job_id: UUID) -> CategorizationJob:
        job = await self.get_by_id(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job
