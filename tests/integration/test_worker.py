"""Integration tests for the background categorization worker."""
import sys
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from httpx import Response
from sqlalchemy import select

sys.path.append(str(Path(__file__).parents[2] / "src"))

from merchant_categorizer.core.clock import ensure_utc
from merchant_categorizer.models.categorization_job import CategorizationJob
from merchant_categorizer.models.expense import Expense
from merchant_categorizer.repositories.expense import ExpenseRepository
from merchant_categorizer.repositories.job import JobQueue
from merchant_categorizer.repositories.mapping import MappingStore
from merchant_categorizer.repositories.rate_limit import LeaseRepository
from merchant_categorizer.services.worker import (
    RATE_LIMITED_LOCAL,
    RATE_LIMITED_PROVIDER,
    WORKER_LEASE_NAME,
    CategorizationWorker,
)


@pytest.fixture
def worker_config(ai_config):
    ai_config.worker_batch_size = 5
    ai_config.worker_max_retries = 2
    ai_config.worker_post_request_delay_seconds = 4.0
    ai_config.worker_backlog_chunk_size = 2
    return ai_config


@pytest.fixture
def make_worker(session_factory, make_classifier, worker_config, fake_sleep, clock):
    def factory(*responses):
        classifier, provider = make_classifier(*responses, config=worker_config)
        worker = CategorizationWorker(
            session_factory, classifier, config=worker_config, sleep=fake_sleep, clock=clock
        )
        return worker, provider

    return factory


async def enqueue(session_factory, clock, *rows: tuple[str, str], user_id: str | None = None) -> None:
    """Insert expenses and queue one job each, oldest first."""
    async with session_factory() as db:
        added, _ = await ExpenseRepository(db).add_many(
            Expense(expense_id=expense_id, name=name, amount=Decimal("5.00"), user_id=user_id)
            for expense_id, name in rows
        )
        queue = JobQueue(db, clock=clock)
        for expense in added:
            await queue.create_job(
                expense.expense_id, expense.merchant_name, expense.name, user_id=expense.user_id
            )
            clock.advance(seconds=1)


async def load_job(session_factory, expense_id: str) -> CategorizationJob:
    async with session_factory() as db:
        return await JobQueue(db).get_by_expense(expense_id)


async def load_category(session_factory, expense_id: str) -> str | None:
    async with session_factory() as db:
        result = await db.execute(select(Expense.category).where(Expense.expense_id == expense_id))
        return result.scalar_one()


class TestRunOnce:
    async def test_heuristic_job_needs_no_provider(self, session_factory, make_worker, clock, fake_sleep):
        await enqueue(session_factory, clock, ("exp-1", "WOOLWORTHS TOWN HALL 123"))
        worker, provider = make_worker()

        result = await worker.run_once()

        assert (result.processed, result.succeeded, result.failed) == (1, 1, 0)
        assert await load_category(session_factory, "exp-1") == "Groceries"
        job = await load_job(session_factory, "exp-1")
        assert (job.status, job.attempts) == ("completed", 1)
        assert provider.requests == []
        assert fake_sleep.calls == []
        async with session_factory() as db:
            assert await MappingStore(db).get_global("WOOLWORTHS") is None

    async def test_ai_job_writes_mapping_and_paces(self, session_factory, make_worker, clock, fake_sleep):
        await enqueue(session_factory, clock, ("exp-1", "ACME UNKNOWN 42"))
        worker, provider = make_worker("Hobbies")

        result = await worker.run_once()

        assert result.succeeded == 1
        assert await load_category(session_factory, "exp-1") == "Hobbies"
        assert (await load_job(session_factory, "exp-1")).status == "completed"
        async with session_factory() as db:
            mapping = await MappingStore(db).get_global("ACME")
        assert (mapping.category, mapping.confidence) == ("Hobbies", "ai")
        assert fake_sleep.calls == [4.0]
        assert len(provider.requests) == 1

    async def test_provider_rate_limit_fails_job_with_backoff(
        self, session_factory, make_worker, clock, fake_sleep
    ):
        await enqueue(session_factory, clock, ("exp-1", "ACME UNKNOWN 42"))
        worker, provider = make_worker(429, 429)

        result = await worker.run_once()

        assert (result.processed, result.failed) == (1, 1)
        job = await load_job(session_factory, "exp-1")
        assert (job.status, job.attempts, job.error) == ("failed", 1, RATE_LIMITED_PROVIDER)
        assert ensure_utc(job.next_retry) == clock() + timedelta(minutes=1)
        assert await load_category(session_factory, "exp-1") is None
        assert len(provider.requests) == 2
        assert fake_sleep.calls == [1.0, 4.0]

    async def test_local_budget_exhausted(self, session_factory, make_worker, worker_config, clock):
        worker_config.rate_limit_requests_per_window = 1
        await enqueue(
            session_factory,
            clock,
            ("exp-1", "ACME UNKNOWN 42"),
            ("exp-2", "ZEPHYR ROASTERS"),
        )
        worker, provider = make_worker("Hobbies")

        result = await worker.run_once()

        assert (result.processed, result.succeeded, result.failed) == (2, 1, 1)
        job = await load_job(session_factory, "exp-2")
        assert (job.status, job.error) == ("failed", RATE_LIMITED_LOCAL)
        assert len(provider.requests) == 1

    async def test_provider_error_fails_job(self, session_factory, make_worker, clock):
        await enqueue(session_factory, clock, ("exp-1", "ACME UNKNOWN 42"))
        worker, _ = make_worker(Response(500, text="down"))

        await worker.run_once()

        job = await load_job(session_factory, "exp-1")
        assert (job.status, job.error) == ("failed", "Provider returned HTTP 500")

    async def test_missing_expense_fails_job_for_good(self, session_factory, make_worker, clock):
        async with session_factory() as db:
            await JobQueue(db, clock=clock).create_job("ghost", "ACME", "ACME UNKNOWN 42")
        worker, provider = make_worker("Hobbies")

        result = await worker.run_once()

        assert result.failed == 1
        job = await load_job(session_factory, "ghost")
        assert (job.status, job.error) == ("failed", "Expense not found: ghost")
        assert job.next_retry is None
        assert provider.requests == []

        clock.advance(days=2)
        assert (await worker.run_once()).processed == 0
        async with session_factory() as db:
            stats = await JobQueue(db, clock=clock).stats()
        assert (stats.failed, stats.retryable) == (1, 0)

    async def test_mappings_resolve_before_provider(self, session_factory, make_worker, clock):
        async with session_factory() as db:
            mappings = MappingStore(db, clock=clock)
            await mappings.vote("ZEPHYR", "Travel")
            await mappings.upsert_global("QUOKKA", "Shopping", "ai")
            await mappings.upsert_personal("user-1", "QUOKKA", "Hobbies")
        await enqueue(
            session_factory,
            clock,
            ("exp-1", "ZEPHYR ROASTERS"),
            ("exp-2", "QUOKKA 3"),
            user_id="user-1",
        )
        worker, provider = make_worker("Entertainment", "Entertainment")

        result = await worker.run_once()

        assert (result.processed, result.succeeded) == (2, 2)
        assert await load_category(session_factory, "exp-1") == "Travel"
        assert await load_category(session_factory, "exp-2") == "Hobbies"
        assert provider.requests == []
        async with session_factory() as db:
            zephyr = await MappingStore(db).get_global("ZEPHYR")
            quokka = await MappingStore(db).get_global("QUOKKA")
        assert (zephyr.category, zephyr.confidence, zephyr.vote_count) == ("Travel", "user", 1)
        assert (quokka.category, quokka.confidence) == ("Shopping", "ai")

    async def test_batch_size_limits_tick(self, session_factory, make_worker, worker_config, clock):
        worker_config.worker_batch_size = 1
        await enqueue(
            session_factory,
            clock,
            ("exp-1", "WOOLWORTHS 1"),
            ("exp-2", "COLES 2"),
        )
        worker, _ = make_worker()

        result = await worker.run_once()

        assert result.processed == 1
        assert (await load_job(session_factory, "exp-1")).status == "completed"
        assert (await load_job(session_factory, "exp-2")).status == "pending"

    async def test_reclaims_stuck_jobs(self, session_factory, make_worker, clock):
        await enqueue(session_factory, clock, ("exp-1", "WOOLWORTHS 1"))
        async with session_factory() as db:
            queue = JobQueue(db, clock=clock)
            job = await queue.get_by_expense("exp-1")
            await queue.mark_processing(job.id)
        clock.advance(minutes=16)
        worker, _ = make_worker()

        result = await worker.run_once()

        assert result.reclaimed == 1
        assert result.processed == 0
        assert (await load_job(session_factory, "exp-1")).status == "failed"

    async def test_skipped_when_lease_held_elsewhere(self, session_factory, make_worker, clock):
        await enqueue(session_factory, clock, ("exp-1", "WOOLWORTHS 1"))
        async with session_factory() as db:
            now = clock()
            assert await LeaseRepository(db).acquire(
                WORKER_LEASE_NAME, "other-host", now, now + timedelta(seconds=60)
            )
        worker, _ = make_worker()

        result = await worker.run_once()

        assert result.skipped
        assert (await load_job(session_factory, "exp-1")).status == "pending"

        clock.advance(seconds=61)
        result = await worker.run_once()
        assert not result.skipped
        assert result.succeeded == 1

    async def test_lease_released_after_tick(self, session_factory, make_worker, clock):
        first, _ = make_worker()
        second, _ = make_worker()

        assert not (await first.run_once()).skipped
        assert not (await second.run_once()).skipped

    async def test_lease_renewed_between_jobs(
        self, session_factory, make_classifier, worker_config, clock
    ):
        worker_config.worker_lease_ttl_seconds = 90
        await enqueue(
            session_factory,
            clock,
            ("exp-1", "ACME 1"),
            ("exp-2", "ZEPHYR 2"),
            ("exp-3", "QUOKKA 3"),
        )
        other_classifier, other_provider = make_classifier("Travel", config=worker_config)
        other = CategorizationWorker(session_factory, other_classifier, config=worker_config, clock=clock)
        other_results = []
        delays = []

        async def slow_sleep(seconds: float) -> None:
            # Each post-request delay takes 50s; the other instance ticks during the second.
            delays.append(seconds)
            clock.advance(seconds=50)
            if len(delays) == 2:
                other_results.append(await other.run_once())

        classifier, _ = make_classifier("Hobbies", "Hobbies", "Hobbies", config=worker_config)
        worker = CategorizationWorker(
            session_factory, classifier, config=worker_config, sleep=slow_sleep, clock=clock
        )

        result = await worker.run_once()

        assert other_results[0].skipped
        assert other_provider.requests == []
        assert (result.processed, result.succeeded, result.lease_lost) == (3, 3, False)
        for expense_id in ("exp-1", "exp-2", "exp-3"):
            assert await load_category(session_factory, expense_id) == "Hobbies"

    async def test_stops_when_lease_taken_over(self, session_factory, make_worker, worker_config, clock):
        worker_config.worker_lease_ttl_seconds = 30
        await enqueue(
            session_factory,
            clock,
            ("exp-1", "ACME 1"),
            ("exp-2", "ZEPHYR 2"),
        )
        worker, provider = make_worker("Hobbies", "Hobbies")

        async def takeover_sleep(seconds: float) -> None:
            clock.advance(seconds=31)
            async with session_factory() as db:
                now = clock()
                assert await LeaseRepository(db).acquire(
                    WORKER_LEASE_NAME, "other-host", now, now + timedelta(seconds=30)
                )

        worker.sleep = takeover_sleep

        result = await worker.run_once()

        assert (result.processed, result.succeeded, result.lease_lost) == (1, 1, True)
        assert len(provider.requests) == 1
        assert (await load_job(session_factory, "exp-2")).status == "pending"


class TestProcessBacklog:
    async def test_drains_in_chunks(self, session_factory, make_worker, clock, fake_sleep):
        await enqueue(
            session_factory,
            clock,
            ("exp-1", "WOOLWORTHS 1"),
            ("exp-2", "COLES 2"),
            ("exp-3", "BP NORTHSIDE"),
        )
        worker, _ = make_worker()

        result = await worker.process_backlog()

        assert (result.processed, result.succeeded) == (3, 3)
        assert fake_sleep.calls == [60]
        assert await load_category(session_factory, "exp-3") == "Fuel"

    async def test_each_job_attempted_once(self, session_factory, make_worker, worker_config, clock):
        worker_config.rate_limit_requests_per_window = 0
        await enqueue(
            session_factory,
            clock,
            ("exp-1", "ACME 1"),
            ("exp-2", "ZEPHYR 2"),
            ("exp-3", "QUOKKA 3"),
        )
        worker, provider = make_worker()

        result = await worker.process_backlog()

        assert (result.processed, result.failed) == (3, 3)
        assert provider.requests == []
        job = await load_job(session_factory, "exp-1")
        assert (job.attempts, job.error) == (1, RATE_LIMITED_LOCAL)
