import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

sys.path.append(str(Path(__file__).parents[1] / "src"))

from merchant_categorizer.api.deps import get_session_factory
from merchant_categorizer.config import Settings
from merchant_categorizer.db.session import get_db
from merchant_categorizer.main import app
from merchant_categorizer.services import rate_limiter
from merchant_categorizer.services.ai_classifier import AIClassifier

TEST_DATABASE_URL = os.getenv(
    "TEST_DATABASE_URL",
    "sqlite+aiosqlite:///./test_categorizer.db",
)

test_engine = create_async_engine(TEST_DATABASE_URL, echo=False)
TestSessionLocal = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


class FakeClock:
    """Controllable UTC clock for time-dependent behavior."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ScriptedProvider:
    """Mock transport handler replaying canned provider responses in order.

    A string becomes a completion with that content, 429 becomes a rate
    limit response; responses and exceptions are used as given.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            return httpx.Response(200, json={"choices": [{"message": {"content": response}}]})
        if response == 429:
            return httpx.Response(429, json={"error": {"message": "Rate limit exceeded"}})
        return response


@pytest.fixture
def ai_config() -> Settings:
    return Settings(
        openrouter_api_key="test-key",
        openrouter_base_url="https://provider.test/api/v1",
        openrouter_model="test-model",
        ai_backoff_base_ms=1000,
        ai_backoff_cap_ms=30000,
        rate_limit_requests_per_window=15,
        rate_limit_window_seconds=60,
    )


@pytest.fixture
def make_classifier(ai_config, fake_sleep, clock):
    """Build an AIClassifier backed by scripted provider responses."""

    def factory(*responses, config: Settings | None = None) -> tuple[AIClassifier, ScriptedProvider]:
        provider = ScriptedProvider(*responses)
        client = httpx.AsyncClient(transport=httpx.MockTransport(provider))
        classifier = AIClassifier(config=config or ai_config, client=client, sleep=fake_sleep, clock=clock)
        return classifier, provider

    return factory


@pytest.fixture(autouse=True)
def reset_provider_locks():
    """Locks bind to the event loop that first waits on them."""
    rate_limiter._provider_locks.clear()
    yield
    rate_limiter._provider_locks.clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(scope="function")
async def setup_database():
    """Create tables for tests that need the database, and drop them after.

    Not autouse so pure unit tests run without a database.
    """
    from merchant_categorizer.models import Base

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await test_engine.dispose()


@pytest.fixture
async def db_session(setup_database):
    """Provide test database session with fresh connection per test."""
    async with TestSessionLocal() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_factory(setup_database) -> async_sessionmaker[AsyncSession]:
    """Factory for code that opens its own sessions (the worker)."""
    return TestSessionLocal


@pytest.fixture
async def client(db_session: AsyncSession):
    """Provide test client with database override."""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestSessionLocal

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
