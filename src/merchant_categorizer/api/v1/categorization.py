"""Categorization endpoints: resolve, overrides, mappings, jobs and limits."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_categorizer.api.deps import (
    get_categorization_service,
    get_db,
    get_maintenance_service,
    get_rate_limiter,
    get_worker,
)
from merchant_categorizer.categorization import CATEGORIES, normalize_merchant
from merchant_categorizer.core.exceptions import ExpenseNotFoundError, JobNotFoundError
from merchant_categorizer.repositories.expense import ExpenseRepository
from merchant_categorizer.repositories.job import JobQueue
from merchant_categorizer.repositories.mapping import MappingStore
from merchant_categorizer.schemas.categorization import (
    BatchCategorizeRequest,
    BatchCategorizeResponse,
    CategoryOverrideRequest,
    DashboardResponse,
    JobCreateRequest,
    JobResponse,
    JobStatsResponse,
    MerchantGroupResponse,
    MerchantMappingResponse,
    RateLimitStatusResponse,
    RebuildMappingsResponse,
    ResolveRequest,
    ResolveResponse,
    WorkerRunResponse,
)
from merchant_categorizer.schemas.expense import ExpenseResponse
from merchant_categorizer.services.maintenance import MaintenanceService
from merchant_categorizer.services.orchestrator import CategorizationService
from merchant_categorizer.services.rate_limiter import RateLimiter
from merchant_categorizer.services.worker import CategorizationWorker

router = APIRouter(prefix="/categorization", tags=["categorization"])


@router.get("/categories", response_model=list[str], summary="List categories")
async def list_categories() -> list[str]:
    return list(CATEGORIES)


@router.post(
    "/resolve",
    response_model=ResolveResponse,
    summary="Resolve a merchant's category",
    description="""
    Resolve the category of a merchant using, in order: the user's personal
    mapping, the global mapping, keyword heuristics and the AI classifier.

    Returns 429 with a `Retry-After` header when the AI is needed but the
    provider budget is spent.
    """,
)
async def resolve_category(
    payload: ResolveRequest,
    service: CategorizationService = Depends(get_categorization_service),
) -> ResolveResponse:
    merchant_key = payload.merchant_key or normalize_merchant(payload.description)
    resolution = await service.resolve(
        merchant_key,
        payload.description,
        user_id=payload.user_id,
        enable_retry=payload.enable_retry,
        max_retries=payload.max_retries,
    )
    return ResolveResponse(
        merchant_key=merchant_key,
        category=resolution.category,
        source=resolution.source,
        attempts=resolution.attempts,
    )


@router.put(
    "/expenses/{expense_id}/category",
    response_model=ExpenseResponse,
    summary="Override an expense's category",
)
async def override_category(
    expense_id: str,
    payload: CategoryOverrideRequest,
    db: AsyncSession = Depends(get_db),
    service: CategorizationService = Depends(get_categorization_service),
) -> ExpenseResponse:
    """
    Set a user-chosen category on an expense.

    Also votes on the merchant's global mapping and, when
    `apply_to_all_from_merchant` is set with a user id, pins a personal
    mapping for the merchant.
    """
    merchant_key = payload.merchant_key
    if not merchant_key:
        expense = await ExpenseRepository(db).get_by_expense_id(expense_id)
        if expense is None:
            raise ExpenseNotFoundError(expense_id)
        merchant_key = expense.merchant_name or normalize_merchant(expense.name)

    expense = await service.apply_user_override(
        expense_id,
        merchant_key,
        payload.category,
        user_id=payload.user_id,
        apply_to_all_from_merchant=payload.apply_to_all_from_merchant,
    )
    return ExpenseResponse.model_validate(expense)


@router.post(
    "/expenses/categorize",
    response_model=BatchCategorizeResponse,
    summary="Categorize all uncategorized expenses",
    description="""
    Interactive bulk categorization, one resolution per merchant. Stops at
    the first rate limit and reports `rate_limit_reset_time` so the caller
    can resume later.
    """,
)
async def categorize_expenses(
    payload: BatchCategorizeRequest,
    service: CategorizationService = Depends(get_categorization_service),
) -> BatchCategorizeResponse:
    result = await service.categorize_expenses(
        user_id=payload.user_id,
        enable_retry=payload.enable_retry,
        max_retries=payload.max_retries,
    )
    return BatchCategorizeResponse.model_validate(result)


@router.get(
    "/expenses/uncategorized",
    response_model=list[MerchantGroupResponse],
    summary="Uncategorized expenses grouped by merchant",
)
async def uncategorized_expenses(
    service: MaintenanceService = Depends(get_maintenance_service),
) -> list[MerchantGroupResponse]:
    groups = await service.uncategorized_by_merchant()
    return [MerchantGroupResponse.model_validate(group) for group in groups]


@router.get(
    "/mappings/{merchant_key}",
    response_model=MerchantMappingResponse,
    summary="Get a merchant's global mapping",
)
async def get_mapping(
    merchant_key: str,
    db: AsyncSession = Depends(get_db),
) -> MerchantMappingResponse:
    mapping = await MappingStore(db).get_global(merchant_key)
    if mapping is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No mapping for merchant {merchant_key}",
        )
    return MerchantMappingResponse.model_validate(mapping)


@router.post(
    "/mappings/rebuild",
    response_model=RebuildMappingsResponse,
    summary="Rebuild global mappings from categorized expenses",
)
async def rebuild_mappings(
    service: MaintenanceService = Depends(get_maintenance_service),
) -> RebuildMappingsResponse:
    return RebuildMappingsResponse(mappings_written=await service.rebuild_mappings())


@router.post(
    "/jobs",
    response_model=JobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Queue a categorization job",
    description="Idempotent by expense id: an existing job is returned unchanged.",
)
async def create_job(
    payload: JobCreateRequest,
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    job = await JobQueue(db).create_job(
        payload.expense_id,
        payload.merchant_name,
        payload.description,
        user_id=payload.user_id,
    )
    return JobResponse.model_validate(job)


@router.get("/jobs/stats", response_model=JobStatsResponse, summary="Job queue statistics")
async def job_stats(db: AsyncSession = Depends(get_db)) -> JobStatsResponse:
    return JobStatsResponse.model_validate(await JobQueue(db).stats())


@router.get("/jobs/{expense_id}", response_model=JobResponse, summary="Get an expense's job")
async def get_job(expense_id: str, db: AsyncSession = Depends(get_db)) -> JobResponse:
    job = await JobQueue(db).get_by_expense(expense_id)
    if job is None:
        raise JobNotFoundError(expense_id)
    return JobResponse.model_validate(job)


@router.post(
    "/jobs/process",
    response_model=WorkerRunResponse,
    summary="Process the job backlog now",
    description="""
    Drain every ready job in chunks, pausing one rate-limit window after
    each full chunk. Can run for minutes on a large backlog.
    """,
)
async def process_jobs(
    worker: CategorizationWorker = Depends(get_worker),
) -> WorkerRunResponse:
    return WorkerRunResponse.model_validate(await worker.process_backlog())


@router.get(
    "/rate-limit",
    response_model=list[RateLimitStatusResponse],
    summary="Rate limit status for every provider",
)
async def rate_limit_status(
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> list[RateLimitStatusResponse]:
    return [RateLimitStatusResponse.model_validate(s) for s in await limiter.all_status()]


@router.get(
    "/rate-limit/{provider}",
    response_model=RateLimitStatusResponse,
    summary="Rate limit status for one provider",
)
async def provider_rate_limit_status(
    provider: str,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitStatusResponse:
    return RateLimitStatusResponse.model_validate(await limiter.status(provider))


@router.get("/dashboard", response_model=DashboardResponse, summary="Admin dashboard summary")
async def dashboard(
    service: MaintenanceService = Depends(get_maintenance_service),
) -> DashboardResponse:
    return DashboardResponse.model_validate(await service.dashboard_stats())
