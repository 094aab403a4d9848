"""Rate limit state and worker lease persistence."""
from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_categorizer.models.rate_limit_state import RateLimitState, WorkerLease
from merchant_categorizer.repositories.base import BaseRepository


class RateLimitStateRepository(BaseRepository[RateLimitState]):
    """Row-level access to per-provider counters."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, RateLimitState)

    async def get_for_update(self, provider: str) -> RateLimitState | None:
        """Load a provider row, locking it until the transaction ends.

        The lock is a no-op on SQLite, where the in-process lock in the rate
        limiter provides the exclusion.
        """
        result = await self.db.execute(
            select(RateLimitState)
            .where(RateLimitState.provider == provider)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_provider(self, provider: str) -> RateLimitState | None:
        result = await self.db.execute(
            select(RateLimitState)
            .where(RateLimitState.provider == provider)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def insert(self, provider: str, now: datetime, request_count: int = 0) -> RateLimitState | None:
        """Create the provider row; None if another writer created it first."""
        state = RateLimitState(
            provider=provider,
            request_count=request_count,
            window_start=now,
            last_reset=now,
            last_request=now if request_count else None,
        )
        self.db.add(state)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            return None
        return state


class LeaseRepository(BaseRepository[WorkerLease]):
    """Named, expiring leases used for single-worker mutual exclusion."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, WorkerLease)

    async def acquire(self, name: str, holder: str, now: datetime, expires_at: datetime) -> bool:
        """Take or renew the lease when it is free, expired or already ours."""
        result = await self.db.execute(
            update(WorkerLease)
            .where(
                WorkerLease.name == name,
                or_(WorkerLease.holder == holder, WorkerLease.expires_at <= now),
            )
            .values(holder=holder, expires_at=expires_at, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            await self.db.commit()
            return True

        self.db.add(WorkerLease(name=name, holder=holder, expires_at=expires_at))
        try:
            await self.db.commit()
        except IntegrityError:
            # Row exists and is held by someone else.
            await self.db.rollback()
            return False
        return True

    async def release(self, name: str, holder: str, now: datetime) -> None:
        """Expire our lease immediately so another worker can take over."""
        await self.db.execute(
            update(WorkerLease)
            .where(WorkerLease.name == name, WorkerLease.holder == holder)
            .values(expires_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
