"""Integration tests for the durable categorization job queue."""
import sys
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

sys.path.append(str(Path(__file__).parents[2] / "src"))

from merchant_categorizer.core.clock import ensure_utc
from merchant_categorizer.core.exceptions import JobNotFoundError
from merchant_categorizer.repositories.job import PROCESSING_TIMEOUT_ERROR, JobQueue


@pytest.fixture
def queue(db_session: AsyncSession, clock) -> JobQueue:
    return JobQueue(db_session, clock=clock)


async def queue_jobs(queue: JobQueue, clock, *expense_ids: str):
    jobs = []
    for expense_id in expense_ids:
        jobs.append(await queue.create_job(expense_id, "ACME", f"ACME {expense_id}"))
        clock.advance(seconds=1)
    return jobs


class TestCreateJob:
    async def test_new_job_is_pending(self, queue: JobQueue, clock):
        job = await queue.create_job("exp-1", "ACME", "ACME UNKNOWN 42", user_id="user-1")

        assert job.status == "pending"
        assert job.attempts == 0
        assert job.next_retry is None
        assert job.user_id == "user-1"
        assert ensure_utc(job.created_at) == clock()

    async def test_create_is_idempotent_by_expense(self, queue: JobQueue):
        first = await queue.create_job("exp-1", "ACME", "ACME UNKNOWN 42")
        second = await queue.create_job("exp-1", "OTHER", "something else")

        assert second.id == first.id
        assert second.merchant_name == "ACME"
        assert (await queue.stats()).total == 1

    async def test_get_by_expense(self, queue: JobQueue):
        job = await queue.create_job("exp-1", "ACME", "ACME")

        assert (await queue.get_by_expense("exp-1")).id == job.id
        assert await queue.get_by_expense("missing") is None


class TestPollReady:
    async def test_pending_jobs_oldest_first(self, queue: JobQueue, clock):
        await queue_jobs(queue, clock, "exp-1", "exp-2", "exp-3")

        jobs = await queue.poll_ready(2)

        assert [job.expense_id for job in jobs] == ["exp-1", "exp-2"]

    async def test_zero_capacity(self, queue: JobQueue, clock):
        await queue_jobs(queue, clock, "exp-1")

        assert await queue.poll_ready(0) == []

    async def test_failed_job_waits_for_backoff(self, queue: JobQueue, clock):
        (job,) = await queue_jobs(queue, clock, "exp-1")
        await queue.mark_processing(job.id)
        await queue.mark_failed(job.id, "Rate limited by provider")

        assert await queue.poll_ready(5) == []

        clock.advance(minutes=1, seconds=1)
        ready = await queue.poll_ready(5)
        assert [j.expense_id for j in ready] == ["exp-1"]

    async def test_non_retryable_failure_is_never_ready(self, queue: JobQueue, clock):
        (job,) = await queue_jobs(queue, clock, "exp-1")
        await queue.mark_processing(job.id)

        job = await queue.mark_failed(job.id, "Expense not found: exp-1", retry=False)

        assert (job.status, job.attempts, job.next_retry) == ("failed", 1, None)
        clock.advance(days=30)
        assert await queue.poll_ready(5) == []
        assert (await queue.stats()).retryable == 0

    async def test_pending_before_retryable(self, queue: JobQueue, clock):
        failed, _ = await queue_jobs(queue, clock, "exp-old", "exp-new")
        await queue.mark_failed(failed.id, "boom")
        clock.advance(minutes=2)

        ready = await queue.poll_ready(2)
        assert [job.expense_id for job in ready] == ["exp-new", "exp-old"]

        only_one = await queue.poll_ready(1)
        assert [job.expense_id for job in only_one] == ["exp-new"]

    async def test_completed_and_processing_jobs_are_not_ready(self, queue: JobQueue, clock):
        done, busy = await queue_jobs(queue, clock, "exp-1", "exp-2")
        await queue.mark_processing(done.id)
        await queue.mark_completed(done.id)
        await queue.mark_processing(busy.id)

        assert await queue.poll_ready(5) == []


class TestTransitions:
    async def test_mark_processing(self, queue: JobQueue, clock):
        (job,) = await queue_jobs(queue, clock, "exp-1")

        job = await queue.mark_processing(job.id)

        assert job.status == "processing"
        assert ensure_utc(job.last_attempt) == clock()

    async def test_mark_completed_counts_attempt(self, queue: JobQueue, clock):
        (job,) = await queue_jobs(queue, clock, "exp-1")
        await queue.mark_processing(job.id)
        await queue.mark_failed(job.id, "boom")
        await queue.mark_processing(job.id)

        job = await queue.mark_completed(job.id)

        assert job.status == "completed"
        assert job.attempts == 2
        assert job.error is None
        assert job.next_retry is None

    async def test_mark_failed_schedules_backoff(self, queue: JobQueue, clock):
        (job,) = await queue_jobs(queue, clock, "exp-1")
        gaps = []
        for _ in range(7):
            await queue.mark_processing(job.id)
            job = await queue.mark_failed(job.id, "Rate limited by provider")
            gaps.append(ensure_utc(job.next_retry) - clock())

        assert job.status == "failed"
        assert job.attempts == 7
        assert job.error == "Rate limited by provider"
        assert gaps == [
            timedelta(minutes=1),
            timedelta(minutes=5),
            timedelta(minutes=30),
            timedelta(hours=2),
            timedelta(hours=12),
            timedelta(hours=24),
            timedelta(hours=24),
        ]

    async def test_unknown_job(self, queue: JobQueue):
        with pytest.raises(JobNotFoundError):
            await queue.mark_processing(uuid4())


class TestMaintenance:
    async def test_reclaim_stuck_processing_jobs(self, queue: JobQueue, clock):
        stuck, fresh = await queue_jobs(queue, clock, "exp-stuck", "exp-fresh")
        await queue.mark_processing(stuck.id)
        clock.advance(minutes=10)
        await queue.mark_processing(fresh.id)
        clock.advance(minutes=6)

        reclaimed = await queue.reclaim_stuck(timedelta(minutes=15))

        assert reclaimed == 1
        stuck = await queue.get_by_expense("exp-stuck")
        assert stuck.status == "failed"
        assert stuck.attempts == 1
        assert stuck.error == PROCESSING_TIMEOUT_ERROR
        assert (await queue.get_by_expense("exp-fresh")).status == "processing"

    async def test_cleanup_completed(self, queue: JobQueue, clock):
        done, pending = await queue_jobs(queue, clock, "exp-done", "exp-pending")
        await queue.mark_processing(done.id)
        await queue.mark_completed(done.id)

        clock.advance(days=3)
        assert await queue.cleanup_completed(older_than_days=7) == 0

        clock.advance(days=5)
        assert await queue.cleanup_completed(older_than_days=7) == 1
        assert await queue.get_by_expense("exp-done") is None
        assert await queue.get_by_expense("exp-pending") is not None

    async def test_stats(self, queue: JobQueue, clock):
        done, failed, _, busy = await queue_jobs(queue, clock, "exp-1", "exp-2", "exp-3", "exp-4")
        await queue.mark_processing(done.id)
        await queue.mark_completed(done.id)
        await queue.mark_failed(failed.id, "boom")
        await queue.mark_processing(busy.id)

        stats = await queue.stats()
        assert (stats.total, stats.pending, stats.processing, stats.completed, stats.failed) == (4, 1, 1, 1, 1)
        assert stats.retryable == 0

        clock.advance(minutes=2)
        assert (await queue.stats()).retryable == 1
