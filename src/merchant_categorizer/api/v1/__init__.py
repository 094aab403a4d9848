"""API version 1 routes."""

from fastapi import APIRouter

from merchant_categorizer.api.v1 import categorization, expenses, maintenance

router = APIRouter(prefix="/api/v1")

router.include_router(expenses.router)
router.include_router(categorization.router)
router.include_router(maintenance.router)
