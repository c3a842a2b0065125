"""
Rate Limiting Services

Tiered sliding-window rate limiting with pluggable stores.
Guests, authenticated users, premium subscribers and admins each get their
own quota, keyed by user id or source address.
"""

from .config import RateLimitConfigHolder
from .exceptions import (
    RateLimitConfigurationException,
    RateLimitException,
    RateLimitStoreException,
)
from .models import (
    CallerInfo,
    RateLimitConfig,
    RateLimitConfigUpdate,
    RateLimitDecision,
    RequestContext,
    Tier,
    TierLimit,
    WindowRecord,
)
from .rate_limiter import RateLimiter, build_rate_limiter
from .stores import (
    FallbackRateLimitStore,
    MemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
    build_store,
)
from .middleware import (
    RateLimitingMiddleware,
    api_rate_limit_options,
    auth_rate_limit_options,
    public_rate_limit_options,
)

__all__ = [
    "RateLimiter",
    "build_rate_limiter",
    "RateLimitingMiddleware",
    "api_rate_limit_options",
    "auth_rate_limit_options",
    "public_rate_limit_options",
    "RateLimitConfigHolder",
    "RateLimitConfig",
    "RateLimitConfigUpdate",
    "RateLimitDecision",
    "RequestContext",
    "CallerInfo",
    "Tier",
    "TierLimit",
    "WindowRecord",
    "RateLimitStore",
    "MemoryRateLimitStore",
    "RedisRateLimitStore",
    "FallbackRateLimitStore",
    "build_store",
    "RateLimitException",
    "RateLimitStoreException",
    "RateLimitConfigurationException",
]
