"""Mapping store: global (crowd) and personal merchant -> category caches.

Writes are last-writer-wins per merchant key. Concurrent interactive requests
for the same merchant may overwrite each other (and drop a concurrent vote);
that is accepted in exchange for lock-free upserts.
"""
import logging
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_categorizer.core.clock import utcnow
from merchant_categorizer.models.merchant_mapping import (
    CONFIDENCE_AI,
    CONFIDENCE_CONSENSUS,
    CONFIDENCE_USER,
    MerchantMapping,
    PersonalMapping,
)

logger = logging.getLogger(__name__)


class MappingStore:
    """Sole writer of MerchantMapping and PersonalMapping rows."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def get_personal(self, user_id: str, merchant_key: str) -> str | None:
        """Category the user pinned for this merchant, if any."""
        result = await self.db.execute(
            select(PersonalMapping.category).where(
                PersonalMapping.user_id == user_id,
                PersonalMapping.merchant_key == merchant_key,
            )
        )
        return result.scalar_one_or_none()

    async def get_global(self, merchant_key: str) -> MerchantMapping | None:
        """Crowd mapping for this merchant, if any."""
        result = await self.db.execute(
            select(MerchantMapping).where(MerchantMapping.merchant_key == merchant_key)
        )
        return result.scalar_one_or_none()

    async def upsert_global(
        self,
        merchant_key: str,
        category: str,
        confidence: str,
        ai_suggestion: str | None = None,
    ) -> MerchantMapping:
        """Create or overwrite the global mapping.

        New rows start with one vote unless the category came from the
        classifier. Existing rows keep their vote count.
        """
        now = self.clock()
        mapping = await self.get_global(merchant_key)
        if mapping is None:
            mapping = MerchantMapping(
                merchant_key=merchant_key,
                category=category,
                confidence=confidence,
                vote_count=0 if confidence == CONFIDENCE_AI else 1,
                ai_suggestion=ai_suggestion,
                last_updated=now,
            )
            if await self._insert(mapping):
                return mapping
            mapping = await self.get_global(merchant_key)

        mapping.category = category
        mapping.confidence = confidence
        if ai_suggestion is not None:
            mapping.ai_suggestion = ai_suggestion
        mapping.last_updated = now
        await self.db.commit()
        return mapping

    async def upsert_personal(self, user_id: str, merchant_key: str, category: str) -> PersonalMapping:
        """Create or overwrite a user's override for this merchant."""
        result = await self.db.execute(
            select(PersonalMapping).where(
                PersonalMapping.user_id == user_id,
                PersonalMapping.merchant_key == merchant_key,
            )
        )
        mapping = result.scalar_one_or_none()
        if mapping is None:
            mapping = PersonalMapping(user_id=user_id, merchant_key=merchant_key, category=category)
            if await self._insert(mapping):
                return mapping
            return await self.upsert_personal(user_id, merchant_key, category)

        mapping.category = category
        await self.db.commit()
        return mapping

    async def vote(self, merchant_key: str, category: str) -> MerchantMapping:
        """Record a user's category choice on the global mapping.

        The most recent vote sets the category. This is not majority voting;
        see rebuild_from_history for the plurality tally.
        """
        now = self.clock()
        mapping = await self.get_global(merchant_key)
        if mapping is None:
            mapping = MerchantMapping(
                merchant_key=merchant_key,
                category=category,
                confidence=CONFIDENCE_USER,
                vote_count=1,
                last_updated=now,
            )
            if await self._insert(mapping):
                return mapping
            mapping = await self.get_global(merchant_key)

        mapping.vote_count = mapping.vote_count + 1
        mapping.category = category
        mapping.confidence = CONFIDENCE_USER
        mapping.last_updated = now
        await self.db.commit()
        return mapping

    async def rebuild_from_history(self, records: Iterable[tuple[str, str]]) -> int:
        """Rebuild global mappings from historical (merchant key, category) pairs.

        Each merchant gets the plurality category (first seen wins ties),
        confidence "consensus", the total vote count and the full tally.

        Returns:
            Number of mappings written
        """
        tallies: dict[str, Counter] = {}
        for merchant_key, category in records:
            if not merchant_key or not category:
                continue
            tallies.setdefault(merchant_key, Counter())[category] += 1

        now = self.clock()
        for merchant_key, tally in tallies.items():
            category, _ = tally.most_common(1)[0]
            mapping = await self.get_global(merchant_key)
            if mapping is None:
                mapping = MerchantMapping(merchant_key=merchant_key)
                self.db.add(mapping)
            mapping.category = category
            mapping.confidence = CONFIDENCE_CONSENSUS
            mapping.vote_count = sum(tally.values())
            mapping.category_votes = dict(tally)
            mapping.last_updated = now

        await self.db.commit()
        logger.info("Rebuilt merchant mappings from history", extra={"mappings_written": len(tallies)})
        return len(tallies)

    async def recent_global(self, limit: int = 10) -> list[MerchantMapping]:
        """Most recently touched global mappings."""
        result = await self.db.execute(
            select(MerchantMapping).order_by(MerchantMapping.last_updated.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def _insert(self, obj) -> bool:
        """Insert a new row; False when a concurrent writer created it first."""
        self.db.add(obj)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                "Concurrent mapping insert, falling back to update",
                extra={"merchant_key": obj.merchant_key},
            )
            return False
        return True
