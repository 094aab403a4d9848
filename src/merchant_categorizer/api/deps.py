"""FastAPI dependency injection for database sessions and services."""

import httpx
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from merchant_categorizer.db.session import AsyncSessionLocal, get_db
from merchant_categorizer.services.ai_classifier import AIClassifier
from merchant_categorizer.services.maintenance import MaintenanceService
from merchant_categorizer.services.orchestrator import CategorizationService
from merchant_categorizer.services.rate_limiter import RateLimiter
from merchant_categorizer.services.worker import CategorizationWorker

__all__ = [
    "get_ai_classifier",
    "get_categorization_service",
    "get_db",
    "get_maintenance_service",
    "get_rate_limiter",
    "get_session_factory",
    "get_worker",
]


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for work that outlives one request session."""
    return AsyncSessionLocal


def get_ai_classifier(request: Request) -> AIClassifier:
    """
    Get the AI classifier, sharing the application's HTTP client when the
    lifespan created one.

    Args:
        request: Current request

    Returns:
        AIClassifier instance
    """
    client: httpx.AsyncClient | None = getattr(request.app.state, "http_client", None)
    return AIClassifier(client=client)


async def get_rate_limiter(db: AsyncSession = Depends(get_db)) -> RateLimiter:
    return RateLimiter(db)


async def get_categorization_service(
    db: AsyncSession = Depends(get_db),
    classifier: AIClassifier = Depends(get_ai_classifier),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> CategorizationService:
    """
    Get categorization service instance.

    Args:
        db: Database session
        classifier: AI classifier
        rate_limiter: Shared provider rate limiter

    Returns:
        CategorizationService instance
    """
    return CategorizationService(db, classifier, rate_limiter=rate_limiter)


async def get_maintenance_service(db: AsyncSession = Depends(get_db)) -> MaintenanceService:
    return MaintenanceService(db)


def get_worker(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    classifier: AIClassifier = Depends(get_ai_classifier),
) -> CategorizationWorker:
    """The application's background worker, or a fresh one when none runs."""
    worker: CategorizationWorker | None = getattr(request.app.state, "worker", None)
    if worker is not None:
        return worker
    return CategorizationWorker(session_factory, classifier)
