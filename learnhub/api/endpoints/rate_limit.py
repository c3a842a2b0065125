"""
Rate Limit API Endpoints

Health, metrics, configuration, per-caller status and admin diagnostics
for the rate limiting service. Responses use the ``{success, data}`` /
``{success, error}`` envelope.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Path, Request, status
from pydantic import ValidationError

from ...core.auth import (
    get_optional_caller,
    require_admin,
    require_caller,
    settings_for,
)
from ...services.rate_limiting.exceptions import (
    RateLimitConfigurationException,
    RateLimitHTTPException,
)
from ...services.rate_limiting.middleware import DECISION_STATE_KEY, get_client_ip
from ...services.rate_limiting.models import (
    CallerInfo,
    RateLimitConfigUpdate,
    RateLimitDecision,
    RequestContext,
)
from ...services.rate_limiting.rate_limiter import RateLimiter

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/rate-limit", tags=["rate-limit"])

MIN_ADMIN_WINDOW_MS = 1000


def get_rate_limiter(request: Request) -> RateLimiter:
    """Dependency: the limiter owned by the running app."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"success": False, "error": "Rate limiting service not initialized"},
        )
    return limiter


def validate_admin_update(payload: Any) -> RateLimitConfigUpdate:
    """
    Validate an admin configuration document.

    Raises:
        RateLimitConfigurationException: If the document is malformed or a
            tier window is shorter than one second
    """
    if not isinstance(payload, dict):
        raise RateLimitConfigurationException(
            "Configuration update must be a JSON object"
        )
    try:
        update = RateLimitConfigUpdate.model_validate(payload)
    except ValidationError as e:
        raise RateLimitConfigurationException(
            "Invalid rate limit configuration update",
            errors=e.errors(include_url=False),
        ) from e

    if update.limits is not None:
        for tier, tier_update in update.limits:
            if (
                tier_update is not None
                and tier_update.window_ms is not None
                and tier_update.window_ms < MIN_ADMIN_WINDOW_MS
            ):
                raise RateLimitConfigurationException(
                    f"windowMs for {tier} must be at least {MIN_ADMIN_WINDOW_MS}",
                    errors=[
                        {
                            "loc": ["limits", tier, "windowMs"],
                            "msg": f"must be at least {MIN_ADMIN_WINDOW_MS}",
                        }
                    ],
                )
    return update


@router.get("/health")
async def rate_limit_health(
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> Dict[str, Any]:
    """Rate limiting service health. Public."""
    try:
        health = await limiter.health_check()
    except Exception as e:
        logger.error("Rate limit health check error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "success": False,
                "error": "Rate limiting service health check failed",
            },
        )
    return {"success": True, "data": health}


@router.get("/metrics")
async def rate_limit_metrics(
    limiter: RateLimiter = Depends(get_rate_limiter),
    admin: CallerInfo = Depends(require_admin),
) -> Dict[str, Any]:
    """In-process rate limiting counters. Admin only."""
    return {"success": True, "data": limiter.get_metrics()}


@router.get("/config")
async def get_rate_limit_config(
    limiter: RateLimiter = Depends(get_rate_limiter),
    caller: CallerInfo = Depends(require_caller),
) -> Dict[str, Any]:
    """Current limits and flags. Any authenticated caller."""
    return {"success": True, "data": limiter.config.to_public_dict()}


@router.put("/config")
async def update_rate_limit_config(
    payload: Any = Body(...),
    limiter: RateLimiter = Depends(get_rate_limiter),
    admin: CallerInfo = Depends(require_admin),
) -> Dict[str, Any]:
    """
    Apply a partial configuration update. Admin only.

    Recognised fields are ``enabled``, ``skipSuccessfulRequests``,
    ``skipFailedRequests`` and ``limits.{tier}.{windowMs,maxRequests}``;
    anything else is ignored.
    """
    try:
        update = validate_admin_update(payload)
        applied = limiter.update_config(update)
    except RateLimitConfigurationException as e:
        logger.warning(
            "Rejected rate limit configuration update",
            admin_id=admin.id,
            error=e.message,
        )
        raise RateLimitHTTPException(e, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)

    data = applied.applied_fields()
    logger.info(
        "Rate limit configuration updated by admin", admin_id=admin.id, updates=data
    )
    return {
        "success": True,
        "message": "Rate limit configuration updated successfully",
        "data": data,
    }


@router.get("/status")
async def get_rate_limit_status(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
    caller: Optional[CallerInfo] = Depends(get_optional_caller),
) -> Dict[str, Any]:
    """
    The caller's own tier and remaining quota.

    When the middleware already counted this request its decision is
    reused, so the call costs exactly one request.
    """
    decision: Optional[RateLimitDecision] = getattr(
        request.state, DECISION_STATE_KEY, None
    )
    if decision is None:
        decision = await limiter.check_rate_limit(
            RequestContext(
                caller=caller,
                client_ip=get_client_ip(
                    request, settings_for(request).trusted_proxies_list
                ),
                path=request.url.path,
                method=request.method,
            )
        )

    tier = decision.tier or limiter.classify_tier(RequestContext(caller=caller))
    return {
        "success": True,
        "data": {
            "userType": tier.value,
            "limit": decision.limit,
            "remaining": decision.remaining,
            "resetTime": decision.reset_time_iso,
            "windowMs": limiter.config.limit_for(tier).window_ms,
        },
    }


@router.get("/stats/{identifier}")
async def get_rate_limit_stats(
    identifier: str = Path(..., min_length=1),
    limiter: RateLimiter = Depends(get_rate_limiter),
    admin: CallerInfo = Depends(require_admin),
) -> Dict[str, Any]:
    """Raw window record for ``user:<id>`` or ``ip:<addr>``. Admin only."""
    record = await limiter.get_stats(identifier)
    if record is None:
        return {
            "success": True,
            "data": {"message": "No rate limit data found for this identifier"},
        }
    return {"success": True, "data": record.model_dump(by_alias=True)}


@router.delete("/clear/{identifier}")
async def clear_rate_limit(
    identifier: str = Path(..., min_length=1),
    limiter: RateLimiter = Depends(get_rate_limiter),
    admin: CallerInfo = Depends(require_admin),
) -> Dict[str, Any]:
    """Reset the quota of one identifier. Admin only."""
    cleared = await limiter.clear(identifier)
    if not cleared:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"success": False, "error": "Failed to clear rate limit"},
        )

    logger.info("Rate limit cleared by admin", admin_id=admin.id, identifier=identifier)
    return {
        "success": True,
        "message": f"Rate limit cleared for identifier: {identifier}",
    }
