"""Background worker draining the categorization job queue.

One logical worker runs at a time: an in-process lock stops overlapping
ticks and a database lease stops other instances. Jobs are processed one
after another and the lease is renewed before each. Mappings and heuristics
are tried first; every provider call is paced by the shared rate limiter and
followed by a fixed delay.
"""

import asyncio
import logging
import os
import socket
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from merchant_categorizer.config import Settings, settings
from merchant_categorizer.core.clock import utcnow
from merchant_categorizer.core.exceptions import (
    CategorizationError,
    ExpenseNotFoundError,
    TransientProviderError,
)
from merchant_categorizer.models.merchant_mapping import CONFIDENCE_AI
from merchant_categorizer.repositories.expense import ExpenseRepository
from merchant_categorizer.repositories.job import JobQueue
from merchant_categorizer.repositories.mapping import MappingStore
from merchant_categorizer.repositories.rate_limit import LeaseRepository
from merchant_categorizer.services.ai_classifier import AIClassifier
from merchant_categorizer.services.orchestrator import resolve_from_cache
from merchant_categorizer.services.rate_limiter import RateLimiter, limits_from_settings

logger = logging.getLogger(__name__)

WORKER_LEASE_NAME = "categorization-worker"
RATE_LIMITED_LOCAL = "Rate limited - will retry soon"
RATE_LIMITED_PROVIDER = "Rate limited by provider"


@dataclass
class WorkerRunResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    duration_ms: int = 0
    reclaimed: int = 0
    skipped: bool = False
    lease_lost: bool = False

    def add(self, other: "WorkerRunResult") -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.reclaimed += other.reclaimed
        self.lease_lost = self.lease_lost or other.lease_lost


class CategorizationWorker:
    """Processes queued categorization jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        classifier: AIClassifier,
        config: Settings = settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.classifier = classifier
        self.config = config
        self.sleep = sleep
        self.clock = clock
        self.holder = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._lock = asyncio.Lock()

    async def run_once(self) -> WorkerRunResult:
        """One scheduled tick: process up to ``worker_batch_size`` ready jobs.

        Skipped when a previous tick is still running or another instance
        holds the worker lease.
        """
        if self._lock.locked():
            logger.debug("Previous worker tick still running, skipping")
            return WorkerRunResult(skipped=True)

        async with self._lock:
            started = time.monotonic()
            async with self.session_factory() as db:
                if not await self._acquire_lease(db):
                    return WorkerRunResult(skipped=True)
                try:
                    result = await self._process_batch(db, self.config.worker_batch_size)
                finally:
                    await self._release_lease(db)

            result.duration_ms = int((time.monotonic() - started) * 1000)
            if result.processed:
                logger.info(
                    "Worker tick finished",
                    extra={
                        "processed": result.processed,
                        "succeeded": result.succeeded,
                        "failed": result.failed,
                        "duration_ms": result.duration_ms,
                    },
                )
            return result

    async def process_backlog(self) -> WorkerRunResult:
        """Drain every ready job in chunks, pausing one rate-limit window
        after each full chunk.

        Each job is attempted at most once per call.
        """
        chunk_size = self.config.worker_backlog_chunk_size
        window = self.config.rate_limit_window_seconds

        async with self._lock:
            started = time.monotonic()
            total = WorkerRunResult()
            seen: set = set()

            async with self.session_factory() as db:
                if not await self._acquire_lease(db):
                    return WorkerRunResult(skipped=True)
                try:
                    while True:
                        chunk = await self._process_batch(db, chunk_size, exclude=seen)
                        total.add(chunk)
                        if chunk.lease_lost or chunk.processed < chunk_size:
                            break
                        logger.info(
                            "Backlog chunk done, waiting for the rate-limit window",
                            extra={"chunk_size": chunk_size, "window_seconds": window},
                        )
                        await self.sleep(window)
                        if not await self._acquire_lease(db):
                            break
                finally:
                    await self._release_lease(db)

            total.duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(
                "Backlog run finished",
                extra={
                    "processed": total.processed,
                    "succeeded": total.succeeded,
                    "failed": total.failed,
                    "duration_ms": total.duration_ms,
                },
            )
            return total

    async def _process_batch(
        self,
        db: AsyncSession,
        max_jobs: int,
        exclude: set | None = None,
    ) -> WorkerRunResult:
        queue = JobQueue(db, clock=self.clock)
        result = WorkerRunResult()
        result.reclaimed = await queue.reclaim_stuck(
            timedelta(minutes=self.config.worker_processing_timeout_minutes)
        )

        if exclude is None:
            jobs = await queue.poll_ready(max_jobs)
        else:
            # Over-fetch so jobs already tried in this run do not starve the chunk.
            candidates = await queue.poll_ready(max_jobs + len(exclude))
            jobs = [job for job in candidates if job.id not in exclude][:max_jobs]
            exclude.update(job.id for job in jobs)

        # Rollbacks expire loaded rows, so snapshot the fields up front.
        work = [
            (job.id, job.expense_id, job.merchant_name, job.description, job.user_id)
            for job in jobs
        ]
        for job_id, expense_id, merchant_key, description, user_id in work:
            # A job can outlast the lease TTL; stop rather than run beside another instance.
            if not await self._acquire_lease(db):
                logger.warning("Worker lease lost, stopping batch", extra={"job_id": str(job_id)})
                result.lease_lost = True
                break
            result.processed += 1
            if await self._process_job(
                db, queue, job_id, expense_id, merchant_key, description, user_id
            ):
                result.succeeded += 1
            else:
                result.failed += 1
        return result

    async def _process_job(
        self,
        db: AsyncSession,
        queue: JobQueue,
        job_id: UUID,
        expense_id: str,
        merchant_key: str,
        description: str,
        user_id: str | None = None,
    ) -> bool:
        """Run one job to completed or failed. Returns True on success.

        Mappings and heuristics are consulted before the provider; only a
        full cache miss spends rate-limit budget, and only an AI answer is
        written back as a global mapping.
        """
        log_extra = {"job_id": str(job_id), "expense_id": expense_id, "merchant_key": merchant_key}
        try:
            await queue.mark_processing(job_id)

            expenses = ExpenseRepository(db)
            if await expenses.get_by_expense_id(expense_id) is None:
                error = ExpenseNotFoundError(expense_id)
                logger.warning("Job expense not found", extra=log_extra)
                await queue.mark_failed(job_id, str(error), retry=False)
                return False

            mappings = MappingStore(db, clock=self.clock)
            cached = await resolve_from_cache(mappings, merchant_key, description, user_id)
            if cached is not None:
                category = cached.category
            else:
                limiter = RateLimiter(db, limits_from_settings(self.config), clock=self.clock)
                if not await limiter.acquire(self.classifier.provider):
                    await queue.mark_failed(job_id, RATE_LIMITED_LOCAL)
                    return False

                outcome = await self.classifier.classify_with_retry(
                    merchant_key,
                    description,
                    max_retries=self.config.worker_max_retries,
                )
                await self.sleep(self.config.worker_post_request_delay_seconds)
                if not outcome.final_attempt_succeeded:
                    await queue.mark_failed(job_id, RATE_LIMITED_PROVIDER)
                    return False
                category = outcome.category

            await expenses.set_category(expense_id, category)
            if cached is None:
                await mappings.upsert_global(
                    merchant_key, category, CONFIDENCE_AI, ai_suggestion=category
                )
            await queue.mark_completed(job_id)
            logger.debug(
                "Job completed",
                extra={
                    **log_extra,
                    "category": category,
                    "source": cached.source if cached is not None else "ai",
                },
            )
            return True

        except TransientProviderError as e:
            logger.warning("Provider error for job", extra={**log_extra, "error": str(e)})
            await queue.mark_failed(job_id, str(e))
            return False
        except CategorizationError as e:
            await db.rollback()
            logger.warning(
                "Job failed", extra={**log_extra, "error_code": e.error_code, "error": str(e)}
            )
            await queue.mark_failed(job_id, str(e))
            return False
        except Exception as e:
            await db.rollback()
            logger.exception("Unexpected error processing job", extra=log_extra)
            await queue.mark_failed(job_id, str(e) or "Unexpected error")
            return False

    async def _acquire_lease(self, db: AsyncSession) -> bool:
        now = self.clock()
        acquired = await LeaseRepository(db).acquire(
            WORKER_LEASE_NAME,
            self.holder,
            now,
            now + timedelta(seconds=self.config.worker_lease_ttl_seconds),
        )
        if not acquired:
            logger.debug("Worker lease held by another instance, skipping")
        return acquired

    async def _release_lease(self, db: AsyncSession) -> None:
        await LeaseRepository(db).release(WORKER_LEASE_NAME, self.holder, self.clock())
