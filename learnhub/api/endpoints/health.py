"""
Health check endpoints for LearnHub API.

Liveness for load balancers and a readiness check that includes the rate
limit store.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
import structlog

from ...core.auth import settings_for

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_check(request: Request) -> Dict[str, Any]:
    """
    Basic health check endpoint.

    Returns a simple health status for load balancers and monitoring systems.
    """
    settings = settings_for(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    The service stays ready while the rate limit store is degraded, since
    the limiter fails open; the store state is reported for operators.
    """
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "reason": "rate limiter not initialized"},
        )

    try:
        health = await limiter.health_check()
    except Exception as e:
        logger.error("Readiness check failed", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "reason": str(e)},
        )

    return {
        "status": "ready",
        "timestamp": health["timestamp"],
        "rate_limiting": {
            "enabled": health["enabled"],
            "store": health["store"],
        },
    }
