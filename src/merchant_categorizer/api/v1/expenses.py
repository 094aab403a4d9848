"""Expense import endpoint."""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_categorizer.api.deps import get_db
from merchant_categorizer.models.expense import Expense
from merchant_categorizer.repositories.expense import ExpenseRepository
from merchant_categorizer.repositories.job import JobQueue
from merchant_categorizer.repositories.mapping import MappingStore
from merchant_categorizer.schemas.expense import ExpenseImportRequest, ExpenseImportResult
from merchant_categorizer.services.orchestrator import resolve_from_cache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/expenses", tags=["expenses"])


@router.post(
    "",
    response_model=ExpenseImportResult,
    status_code=status.HTTP_201_CREATED,
    summary="Import expenses",
    description="""
    Add expenses in bulk. Expenses whose id already exists are skipped.

    When `enqueue` is true every newly added expense is resolved from the
    personal and global mappings and the heuristics right away. Only the
    expenses none of those can categorize get a job for the background worker.
    """,
)
async def import_expenses(
    payload: ExpenseImportRequest,
    db: AsyncSession = Depends(get_db),
) -> ExpenseImportResult:
    repo = ExpenseRepository(db)
    added, duplicates = await repo.add_many(
        Expense(
            expense_id=item.expense_id,
            user_id=item.user_id,
            name=item.name,
            merchant_name=item.merchant_name,
            amount=item.amount,
            expense_date=item.expense_date,
        )
        for item in payload.expenses
    )

    new_ids = [expense.expense_id for expense in added]
    queued = categorized = 0
    if payload.enqueue:
        mappings = MappingStore(db)
        queue = JobQueue(db)
        resolved: dict[str, list[str]] = {}
        work = [(e.expense_id, e.merchant_name, e.name, e.user_id) for e in added]
        for expense_id, merchant_key, name, user_id in work:
            cached = await resolve_from_cache(mappings, merchant_key, name, user_id)
            if cached is not None:
                resolved.setdefault(cached.category, []).append(expense_id)
                continue
            await queue.create_job(expense_id, merchant_key, name, user_id=user_id)
            queued += 1
        for category, expense_ids in resolved.items():
            categorized += await repo.set_category_many(expense_ids, category)

    logger.info(
        "Imported expenses",
        extra={
            "added": len(added),
            "duplicates": duplicates,
            "queued": queued,
            "categorized": categorized,
        },
    )
    return ExpenseImportResult(
        added_count=len(added),
        duplicate_count=duplicates,
        queued_count=queued,
        categorized_count=categorized,
        new_expense_ids=new_ids,
    )
