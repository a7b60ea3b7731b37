"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (database round-trip)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from orderhooks.database import get_db
from orderhooks.schemas.api_responses import HealthResponse, ReadinessResponse

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

SERVICE_NAME = "webhooks"


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return HealthResponse(
        status="ok",
        service=SERVICE_NAME,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """Readiness check - 503 when the database is unreachable."""
    checks = {"database": False}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    ready = all(checks.values())
    body = ReadinessResponse(
        status="ready" if ready else "degraded",
        checks=checks,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    if not ready:
        return JSONResponse(status_code=503, content=body.model_dump())
    return body
