from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_categorizer.config import settings
from merchant_categorizer.db.session import get_db

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok", "service": "merchant-categorizer"}


@router.get("/health/ready")
async def health_ready(request: Request, db: AsyncSession = Depends(get_db)):
    """Readiness check: database reachable, provider key and worker state."""
    ticker = getattr(request.app.state, "worker_ticker", None)
    checks = {
        "ai_provider": settings.ai_provider,
        "ai_configured": bool(settings.openrouter_api_key),
        "worker": "running" if ticker is not None and ticker.running else "stopped",
    }
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not ready", "database": "disconnected", "error": str(e), **checks},
        )
    return {"status": "ready", "database": "connected", **checks}
