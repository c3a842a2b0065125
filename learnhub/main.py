"""
LearnHub Backend - Main FastAPI Application

Rate limiting service for the LearnHub online education platform:
- Tiered sliding-window limits for guests, users, premium subscribers and admins
- In-memory or Redis-backed window storage with local fallback
- Runtime-configurable limits through the admin API
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api.endpoints.health import router as health_router
from .api.endpoints.rate_limit import router as rate_limit_router
from .core.config import Settings, get_settings
from .core.correlation import CorrelationIdMiddleware
from .core.logging import configure_logging
from .services.rate_limiting import (
    RateLimiter,
    RateLimitingMiddleware,
    api_rate_limit_options,
    build_rate_limiter,
)

logger = structlog.get_logger()


def create_app(
    rate_limiter: Optional[RateLimiter] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        rate_limiter: Limiter to serve; built from settings when omitted
        settings: Application settings; process defaults when omitted
    """
    settings = settings or get_settings()
    configure_logging(settings)
    limiter = rate_limiter if rate_limiter is not None else build_rate_limiter(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info(
            "Starting LearnHub API",
            version=settings.SERVICE_VERSION,
            environment=settings.ENVIRONMENT,
            rate_limit_enabled=limiter.config.enabled,
            rate_limit_store=limiter.store.backend,
        )

        yield

        logger.info("Shutting down LearnHub API")
        try:
            await limiter.close()
        except Exception as e:
            logger.error("Error during application shutdown", error=str(e))

    app = FastAPI(
        title="LearnHub API",
        description="LearnHub backend rate limiting service",
        version=settings.SERVICE_VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.rate_limiter = limiter

    app.add_middleware(RateLimitingMiddleware, **api_rate_limit_options())

    # Added last so it wraps rate limiting and its logs carry the ID
    app.add_middleware(CorrelationIdMiddleware)

    @app.exception_handler(StarletteHTTPException)
    async def envelope_http_exception(request: Request, exc: StarletteHTTPException):
        """Render errors in the ``{success: false, error}`` envelope."""
        if isinstance(exc.detail, dict):
            content = exc.detail
        else:
            content = {"success": False, "error": exc.detail}
        return JSONResponse(
            status_code=exc.status_code, content=content, headers=exc.headers
        )

    app.include_router(health_router, tags=["health"])
    app.include_router(rate_limit_router, tags=["rate-limit"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
