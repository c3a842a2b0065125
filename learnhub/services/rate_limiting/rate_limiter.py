"""
Rate Limiter Service

Tiered sliding-window rate limiting. Each caller is classified into a tier
(guest, authenticated, premium, admin), keyed by user id or source address,
and counted against that tier's quota in a pluggable store.

Concurrency: the read-modify-write on a key is serialised within one process
by striped asyncio locks. Across service instances sharing Redis, two
instances can still read the same window and both write back, letting a
caller exceed its quota by a small margin during bursts. This is soft
limiting; hard limits would need an atomic increment-with-expiry on the
store instead of get/compute/set.
"""

import asyncio
import logging
import math
import time
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from .config import RateLimitConfigHolder
from .exceptions import RateLimitStoreException
from .models import (
    ADMIN_ROLES,
    PREMIUM_PLAN,
    UNKNOWN_ADDRESS,
    RateLimitConfig,
    RateLimitConfigUpdate,
    RateLimitDecision,
    RequestContext,
    Tier,
    WindowRecord,
)
from .stores import MemoryRateLimitStore, RateLimitStore, build_store

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

LOCK_STRIPES = 64


def epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateLimitMetrics:
    """In-process counters for monitoring."""

    checks: int = 0
    allowed: int = 0
    denied: int = 0
    fail_open: int = 0
    refunds: int = 0
    checks_by_tier: Dict[str, int] = field(
        default_factory=lambda: {tier.value: 0 for tier in Tier}
    )
    denied_by_tier: Dict[str, int] = field(
        default_factory=lambda: {tier.value: 0 for tier in Tier}
    )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "checks": self.checks,
            "allowed": self.allowed,
            "denied": self.denied,
            "fail_open": self.fail_open,
            "refunds": self.refunds,
            "checks_by_tier": dict(self.checks_by_tier),
            "denied_by_tier": dict(self.denied_by_tier),
        }


class RateLimiter:
    """
    Tiered sliding-window rate limiter.

    The store and the configuration holder are injected so tests and
    separate apps get isolated state. ``clock`` returns epoch milliseconds.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        config: Optional[Union[RateLimitConfigHolder, RateLimitConfig]] = None,
        clock: Callable[[], int] = epoch_ms,
        environment: str = "development",
    ):
        self.store = store if store is not None else MemoryRateLimitStore()
        if isinstance(config, RateLimitConfigHolder):
            self.config_holder = config
        else:
            self.config_holder = RateLimitConfigHolder(config)
        self._clock = clock
        self.environment = environment
        self.metrics = RateLimitMetrics()
        self._locks: List[asyncio.Lock] = [asyncio.Lock() for _ in range(LOCK_STRIPES)]

    @property
    def config(self) -> RateLimitConfig:
        """Current configuration snapshot."""
        return self.config_holder.snapshot()

    @staticmethod
    def classify_tier(context: RequestContext) -> Tier:
        """Map the caller to a tier."""
        caller = context.caller
        if caller is None:
            return Tier.GUEST
        if caller.role in ADMIN_ROLES:
            return Tier.ADMIN
        if caller.subscription_plan == PREMIUM_PLAN:
            return Tier.PREMIUM
        return Tier.AUTHENTICATED

    @staticmethod
    def resolve_identifier(context: RequestContext) -> str:
        """User id when known, otherwise source address, otherwise ``unknown``."""
        if context.caller is not None and context.caller.id:
            return f"user:{context.caller.id}"
        return f"ip:{context.client_ip or UNKNOWN_ADDRESS}"

    def _key(self, config: RateLimitConfig, identifier: str) -> str:
        return f"{config.key_prefix}{identifier}"

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._locks[zlib.crc32(key.encode("utf-8")) % LOCK_STRIPES]

    async def check_rate_limit(self, context: RequestContext) -> RateLimitDecision:
        """
        Count one request and decide whether it is allowed.

        Args:
            context: Caller, source address and path of the request

        Returns:
            Decision with quota metadata; allowed whenever limiting is
            disabled or the store is unavailable
        """
        config = self.config
        if not config.enabled:
            return RateLimitDecision(allowed=True)

        tier = self.classify_tier(context)
        limits = config.limit_for(tier)
        identifier = self.resolve_identifier(context)
        key = self._key(config, identifier)

        with tracer.start_as_current_span("rate_limiter.check") as span:
            span.set_attribute("rate_limit.tier", tier.value)
            span.set_attribute("rate_limit.identifier", identifier)
            span.set_attribute("rate_limit.limit", limits.max_requests)
            span.set_attribute("rate_limit.window_ms", limits.window_ms)
            if context.path:
                span.set_attribute("http.path", context.path)

            self.metrics.checks += 1
            self.metrics.checks_by_tier[tier.value] += 1

            try:
                async with self._lock_for(key):
                    now = self._clock()
                    record = await self.store.get(key)
                    record = self._advance_window(record, now, limits.window_ms)
                    ttl = max(1, math.ceil((record.reset_time - now) / 1000))
                    await self.store.set(key, record, ttl)

            except RateLimitStoreException as e:
                self.metrics.fail_open += 1
                self.metrics.allowed += 1
                span.set_status(Status(StatusCode.ERROR, e.message))
                logger.error(
                    f"Rate limit store failure for {identifier}, allowing request: {e.message}",
                    extra={
                        "identifier": identifier,
                        "tier": tier.value,
                        "error_code": e.error_code,
                        "details": e.details,
                    },
                )
                now = self._clock()
                return RateLimitDecision(
                    allowed=True,
                    limit=limits.max_requests,
                    remaining=limits.max_requests,
                    reset_time=now + limits.window_ms,
                    retry_after=0,
                    tier=tier,
                    identifier=identifier,
                )

            remaining = max(0, limits.max_requests - record.count)
            allowed = record.count <= limits.max_requests
            retry_after = (
                0 if allowed else math.ceil((record.reset_time - now) / 1000)
            )

            span.set_attribute("rate_limit.allowed", allowed)
            span.set_attribute("rate_limit.count", record.count)
            span.set_attribute("rate_limit.remaining", remaining)

            if allowed:
                self.metrics.allowed += 1
            else:
                self.metrics.denied += 1
                self.metrics.denied_by_tier[tier.value] += 1
                logger.warning(
                    f"Rate limit exceeded for {tier.value} {identifier}",
                    extra={
                        "tier": tier.value,
                        "identifier": identifier,
                        "limit": limits.max_requests,
                        "count": record.count,
                        "retry_after": retry_after,
                        "path": context.path,
                    },
                )

            return RateLimitDecision(
                allowed=allowed,
                limit=limits.max_requests,
                remaining=remaining,
                reset_time=record.reset_time,
                retry_after=retry_after,
                tier=tier,
                identifier=identifier,
                timestamp=now,
            )

    @staticmethod
    def _advance_window(
        record: Optional[WindowRecord], now: int, window_ms: int
    ) -> WindowRecord:
        """Start a new window or append ``now`` to the current one."""
        if record is None or record.reset_time <= now:
            return WindowRecord(requests=[now], count=1, reset_time=now + window_ms)

        window_start = now - window_ms
        requests = [ts for ts in record.requests if ts > window_start]
        requests.append(now)
        return WindowRecord(
            requests=requests, count=len(requests), reset_time=record.reset_time
        )

    async def refund(self, decision: RateLimitDecision) -> bool:
        """
        Remove the request counted by ``decision`` from its window.

        Used when skipSuccessfulRequests / skipFailedRequests says the
        request should not count. Returns False when there was nothing to
        remove or the store was unavailable.
        """
        if decision.identifier is None or decision.timestamp is None:
            return False

        key = self._key(self.config, decision.identifier)
        try:
            async with self._lock_for(key):
                record = await self.store.get(key)
                if record is None or decision.timestamp not in record.requests:
                    return False
                requests = list(record.requests)
                requests.remove(decision.timestamp)
                updated = WindowRecord(
                    requests=requests,
                    count=len(requests),
                    reset_time=record.reset_time,
                )
                ttl = max(1, math.ceil((record.reset_time - self._clock()) / 1000))
                await self.store.set(key, updated, ttl)
        except RateLimitStoreException as e:
            logger.error(
                f"Failed to refund rate limit request for {decision.identifier}: {e.message}"
            )
            return False

        self.metrics.refunds += 1
        return True

    def update_config(
        self, partial: Union[RateLimitConfigUpdate, Dict[str, Any]]
    ) -> RateLimitConfigUpdate:
        """
        Merge a partial update into the live configuration.

        Takes effect on the next check. Stored windows keep their reset
        time; the new limits apply to them from the next request on.

        Raises:
            RateLimitConfigurationException: If the update is malformed
        """
        return self.config_holder.update(partial)

    async def get_stats(self, identifier: str) -> Optional[WindowRecord]:
        """Return the stored window for an identifier without touching it."""
        key = self._key(self.config, identifier)
        try:
            return await self.store.get(key)
        except RateLimitStoreException as e:
            logger.error(f"Failed to read rate limit stats for {identifier}: {e.message}")
            return None

    async def clear(self, identifier: str) -> bool:
        """
        Delete the stored window for an identifier.

        Returns:
            True when the key is gone (including when it never existed),
            False on a store failure
        """
        key = self._key(self.config, identifier)
        try:
            async with self._lock_for(key):
                await self.store.delete(key)
        except RateLimitStoreException as e:
            logger.error(f"Failed to clear rate limit for {identifier}: {e.message}")
            return False

        logger.info(f"Rate limit cleared for {identifier}")
        return True

    def get_metrics(self) -> Dict[str, Any]:
        """Counters plus the current configuration, for the metrics endpoint."""
        return {
            **self.metrics.as_dict(),
            "store": self.store.backend,
            "enabled": self.config.enabled,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def health_check(self) -> Dict[str, Any]:
        """Limiter and store health."""
        store_health = await self.store.health_check()
        return {
            "enabled": self.config.enabled,
            "store": store_health,
            "redisConnected": store_health.get("backend") in ("redis", "fallback")
            and store_health.get("status") == "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": self.environment,
        }

    async def close(self) -> None:
        """Release store resources."""
        await self.store.close()
        logger.info("Rate limiter closed")


def build_rate_limiter(settings) -> RateLimiter:
    """Create a limiter with the store and defaults chosen by settings."""
    return RateLimiter(
        store=build_store(settings),
        config=RateLimitConfig.from_settings(settings),
        environment=settings.ENVIRONMENT,
    )
