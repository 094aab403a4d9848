"""Expense repository: the category field consumed by the tracker."""
from collections.abc import Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_categorizer.categorization import normalize_merchant
from merchant_categorizer.core.exceptions import ExpenseNotFoundError
from merchant_categorizer.models.expense import Expense
from merchant_categorizer.repositories.base import BaseRepository

_UNCATEGORIZED = or_(Expense.category.is_(None), func.trim(Expense.category) == "")


class ExpenseRepository(BaseRepository[Expense]):
    """Repository for Expense model with categorization queries."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, Expense)

    async def get_by_expense_id(self, expense_id: str) -> Expense | None:
        """Get an expense by its external (deduplication) id."""
        result = await self.db.execute(select(Expense).where(Expense.expense_id == expense_id))
        return result.scalar_one_or_none()

    async def add_many(self, expenses: Iterable[Expense]) -> tuple[list[Expense], int]:
        """Insert expenses that do not exist yet.

        Missing merchant keys are derived from the expense name.

        Returns:
            (newly added expenses, number of duplicates skipped)
        """
        added: list[Expense] = []
        duplicates = 0
        seen: set[str] = set()
        for expense in expenses:
            if expense.expense_id in seen or await self.get_by_expense_id(expense.expense_id):
                duplicates += 1
                continue
            seen.add(expense.expense_id)
            if not expense.merchant_name:
                expense.merchant_name = normalize_merchant(expense.name)
            self.db.add(expense)
            added.append(expense)
        await self.db.commit()
        return added, duplicates

    async def set_category(self, expense_id: str, category: str) -> Expense:
        """Set the category of one expense.

        Raises:
            ExpenseNotFoundError: If no expense has this id
        """
        expense = await self.get_by_expense_id(expense_id)
        if expense is None:
            raise ExpenseNotFoundError(expense_id)
        expense.category = category
        await self.db.commit()
        return expense

    async def set_category_many(self, expense_ids: list[str], category: str) -> int:
        """Set the same category on many expenses, returning the rows updated."""
        if not expense_ids:
            return 0
        result = await self.db.execute(
            update(Expense).where(Expense.expense_id.in_(expense_ids)).values(category=category)
        )
        await self.db.commit()
        return int(result.rowcount or 0)

    async def get_uncategorized(self, user_id: str | None = None) -> list[Expense]:
        """Expenses without a category, oldest first."""
        query = select(Expense).where(_UNCATEGORIZED)
        if user_id is not None:
            query = query.where(Expense.user_id == user_id)
        result = await self.db.execute(query.order_by(Expense.created_at.asc()))
        return list(result.scalars().all())

    async def group_uncategorized_by_merchant(
        self, user_id: str | None = None
    ) -> dict[str, list[Expense]]:
        """Uncategorized expenses grouped by merchant key, in first-seen order."""
        groups: dict[str, list[Expense]] = {}
        for expense in await self.get_uncategorized(user_id):
            key = expense.merchant_name or normalize_merchant(expense.name) or "UNKNOWN"
            groups.setdefault(key, []).append(expense)
        return groups

    async def count(self, user_id: str | None = None, uncategorized_only: bool = False) -> int:
        """Count expenses, optionally only the uncategorized ones."""
        query = select(func.count(Expense.id))
        if user_id is not None:
            query = query.where(Expense.user_id == user_id)
        if uncategorized_only:
            query = query.where(_UNCATEGORIZED)
        result = await self.db.execute(query)
        return int(result.scalar() or 0)

    async def get_category_breakdown(self) -> dict[str, int]:
        """
        Count categorized expenses per category.
        Returns dict of {category: count}.
        """
        result = await self.db.execute(
            select(Expense.category, func.count(Expense.id).label("total"))
            .where(~_UNCATEGORIZED)
            .group_by(Expense.category)
        )
        return {row.category: int(row.total) for row in result}

    async def get_categorized_records(self) -> list[tuple[str, str]]:
        """(merchant key, category) pairs for every categorized expense."""
        result = await self.db.execute(
            select(Expense.merchant_name, Expense.name, Expense.category)
            .where(~_UNCATEGORIZED)
            .order_by(Expense.created_at.asc())
        )
        return [
            (merchant_name or normalize_merchant(name), category)
            for merchant_name, name, category in result
        ]
