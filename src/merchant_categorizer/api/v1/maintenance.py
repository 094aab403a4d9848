"""Maintenance endpoints mirroring the scheduled jobs."""

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends

from merchant_categorizer.api.deps import get_maintenance_service
from merchant_categorizer.services.maintenance import MaintenanceService

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/daily-categorization", summary="Categorize or queue uncategorized expenses")
async def daily_categorization(
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict[str, int]:
    return asdict(await service.daily_categorization())


@router.post("/cleanup", summary="Delete old completed jobs")
async def daily_cleanup(
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict[str, int]:
    return await service.daily_cleanup()


@router.post("/weekly-stats", summary="Categorization statistics report")
async def weekly_stats(
    service: MaintenanceService = Depends(get_maintenance_service),
) -> dict[str, Any]:
    return await service.weekly_stats()
