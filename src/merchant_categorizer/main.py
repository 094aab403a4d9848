from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import IntegrityError

from merchant_categorizer.api.middleware.error_handler import (
    handle_categorization_error,
    handle_generic_error,
    handle_integrity_error,
    handle_validation_error,
)
from merchant_categorizer.api.middleware.logging import RequestLoggingMiddleware, configure_logging
from merchant_categorizer.api.v1 import router as v1_router
from merchant_categorizer.api.v1.health import router as health_router
from merchant_categorizer.config import settings
from merchant_categorizer.core.exceptions import CategorizationError
from merchant_categorizer.db.session import AsyncSessionLocal, async_engine
from merchant_categorizer.services.ai_classifier import AIClassifier
from merchant_categorizer.services.scheduler import PeriodicTask
from merchant_categorizer.services.worker import CategorizationWorker


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    http_client = httpx.AsyncClient(timeout=settings.ai_timeout_seconds)
    app.state.http_client = http_client
    app.state.worker = CategorizationWorker(AsyncSessionLocal, AIClassifier(client=http_client))

    ticker = None
    if settings.worker_enabled:
        ticker = PeriodicTask(
            "categorization-worker",
            app.state.worker.run_once,
            settings.worker_interval_seconds,
        )
        ticker.start()
    app.state.worker_ticker = ticker

    yield

    # Shutdown
    if ticker is not None:
        await ticker.stop()
    await http_client.aclose()
    await async_engine.dispose()


def create_app() -> FastAPI:
    configure_logging(settings.log_level, json_output=settings.log_json)

    app = FastAPI(
        title="Merchant Categorizer API",
        description="Expense categorization by merchant mapping, heuristics and AI",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)

    # Register exception handlers (order matters - most specific first)
    app.add_exception_handler(CategorizationError, handle_categorization_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(IntegrityError, handle_integrity_error)
    app.add_exception_handler(Exception, handle_generic_error)

    app.include_router(health_router)
    app.include_router(v1_router)

    return app


app = create_app()
