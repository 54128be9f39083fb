"""Health check endpoints.

Provides:
- Basic liveness probe (/health/)
- Store connectivity check (/health/health)
- Engine status (/health/status)
"""

import time
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request, status
from sqlalchemy import text

from app.config import get_settings

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("/", response_model=dict[str, Any])
async def root() -> dict[str, Any]:
    """
    Get API root information and version.
    Used as a simple liveness probe.
    """
    settings = get_settings()
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "ok",
    }


@router.get("/health", response_model=dict[str, Any])
async def health_check(request: Request) -> dict[str, Any]:
    """
    Health check with store verification.
    Returns 503 if the SQL store cannot be reached.
    """
    checks: dict[str, str] = {}

    db_engine = getattr(request.app.state, "db_engine", None)
    if db_engine is None:
        checks["store"] = "memory"
    else:
        try:
            async with db_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks["store"] = "ok"
        except Exception as e:
            logger.error("store_health_check_failed", error=str(e))
            checks["store"] = "unavailable"

    if checks["store"] == "unavailable":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "checks": checks},
        )
    return {"status": "healthy", "checks": checks}


@router.get("/status", response_model=dict[str, Any])
async def system_status(request: Request) -> dict[str, Any]:
    """
    Uptime and the number of executions currently being driven.
    """
    settings = get_settings()
    engine = request.app.state.engine
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "store_backend": settings.STORE_BACKEND,
        "started_at": _start_datetime,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "running_executions": len(engine.get_running_executions()),
    }
