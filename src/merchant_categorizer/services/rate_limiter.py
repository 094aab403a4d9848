"""Fixed-window rate limiting for external classification providers.

One counter row per provider is shared by every caller (interactive requests
and the background worker). Each read-modify-write runs under a per-provider
asyncio lock and a row lock, so check-and-record is atomic.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from merchant_categorizer.config import Settings, settings
from merchant_categorizer.core.clock import ensure_utc, utcnow
from merchant_categorizer.models.rate_limit_state import RateLimitState
from merchant_categorizer.repositories.rate_limit import RateLimitStateRepository

logger = logging.getLogger(__name__)

_provider_locks: dict[str, asyncio.Lock] = {}


def _lock_for(provider: str) -> asyncio.Lock:
    lock = _provider_locks.get(provider)
    if lock is None:
        lock = _provider_locks[provider] = asyncio.Lock()
    return lock


@dataclass(frozen=True)
class ProviderLimit:
    requests_per_window: int
    window: timedelta


@dataclass
class RateLimitStatus:
    """Snapshot of one provider's budget."""

    provider: str
    request_count: int
    limit: int
    available: int
    window_seconds: int
    resets_at: datetime | None
    last_request: datetime | None = None


def limits_from_settings(config: Settings = settings) -> dict[str, ProviderLimit]:
    return {
        config.ai_provider: ProviderLimit(
            requests_per_window=config.rate_limit_requests_per_window,
            window=timedelta(seconds=config.rate_limit_window_seconds),
        )
    }


class RateLimiter:
    """Per-provider fixed-window request counter.

    Unknown providers are always allowed and never tracked.
    """

    def __init__(
        self,
        db: AsyncSession,
        limits: dict[str, ProviderLimit] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.repo = RateLimitStateRepository(db)
        self.limits = limits if limits is not None else limits_from_settings()
        self.clock = clock

    async def try_acquire(self, provider: str) -> bool:
        """True if a request can be made now without exceeding the limit.

        Starts a fresh window when the current one has elapsed. Does not
        count a request; call record_request once the request is made.
        """
        limit = self.limits.get(provider)
        if limit is None:
            return True

        async with _lock_for(provider):
            state = await self._load_current(provider, limit)
            allowed = state.request_count < limit.requests_per_window
            await self.db.commit()
        return allowed

    async def record_request(self, provider: str) -> None:
        """Count one request against the current window."""
        limit = self.limits.get(provider)
        if limit is None:
            return

        async with _lock_for(provider):
            state = await self._load_current(provider, limit)
            state.request_count += 1
            state.last_request = self.clock()
            await self.db.commit()

    async def acquire(self, provider: str) -> bool:
        """Check and record in one atomic step.

        Returns:
            True if the request was admitted and counted, False if the
            window's budget is spent
        """
        limit = self.limits.get(provider)
        if limit is None:
            return True

        async with _lock_for(provider):
            state = await self._load_current(provider, limit)
            if state.request_count >= limit.requests_per_window:
                await self.db.commit()
                logger.info(
                    "Rate limit reached",
                    extra={"provider": provider, "request_count": state.request_count},
                )
                return False
            state.request_count += 1
            state.last_request = self.clock()
            await self.db.commit()
        return True

    async def status(self, provider: str) -> RateLimitStatus:
        """Budget left in the current window and when it resets."""
        limit = self.limits.get(provider)
        if limit is None:
            return RateLimitStatus(
                provider=provider,
                request_count=0,
                limit=0,
                available=0,
                window_seconds=0,
                resets_at=None,
            )

        window_seconds = int(limit.window.total_seconds())
        state = await self.repo.get_by_provider(provider)
        now = self.clock()
        window_start = ensure_utc(state.window_start) if state else None
        if state is None or now - window_start >= limit.window:
            return RateLimitStatus(
                provider=provider,
                request_count=0,
                limit=limit.requests_per_window,
                available=limit.requests_per_window,
                window_seconds=window_seconds,
                resets_at=now,
                last_request=ensure_utc(state.last_request) if state else None,
            )

        return RateLimitStatus(
            provider=provider,
            request_count=state.request_count,
            limit=limit.requests_per_window,
            available=max(0, limit.requests_per_window - state.request_count),
            window_seconds=window_seconds,
            resets_at=window_start + limit.window,
            last_request=ensure_utc(state.last_request),
        )

    async def all_status(self) -> list[RateLimitStatus]:
        return [await self.status(provider) for provider in self.limits]

    async def reset(self, provider: str) -> bool:
        """Zero the counter and start a new window. False when no state exists."""
        async with _lock_for(provider):
            state = await self.repo.get_for_update(provider)
            if state is None:
                await self.db.commit()
                return False
            now = self.clock()
            state.request_count = 0
            state.window_start = now
            state.last_reset = now
            await self.db.commit()
        return True

    async def recommended_delay(self, provider: str) -> timedelta:
        """Spacing that spreads requests evenly across the window.

        Zero when idle or the window has elapsed; the time left in the
        window when only one request remains.
        """
        limit = self.limits.get(provider)
        if limit is None:
            return timedelta(0)

        state = await self.repo.get_by_provider(provider)
        if state is None or state.request_count == 0:
            return timedelta(0)

        window_age = self.clock() - ensure_utc(state.window_start)
        if window_age >= limit.window:
            return timedelta(0)

        if state.request_count >= limit.requests_per_window - 1:
            return max(timedelta(0), limit.window - window_age)

        return limit.window / limit.requests_per_window

    async def _load_current(self, provider: str, limit: ProviderLimit) -> RateLimitState:
        """Locked provider row, created or rolled over to the current window."""
        now = self.clock()
        state = await self.repo.get_for_update(provider)
        if state is None:
            state = await self.repo.insert(provider, now)
            if state is None:
                state = await self.repo.get_for_update(provider)
            return state

        if now - ensure_utc(state.window_start) >= limit.window:
            state.request_count = 0
            state.window_start = now
            state.last_reset = now
        return state
