"""
Rate Limit Stores

Backing stores for per-identifier window records. Every store exposes the
same async contract (``get``, ``set``, ``delete``) and reports backend
failures as ``RateLimitStoreException`` so the limiter can fail open.

- MemoryRateLimitStore: in-process map with TTL eviction, single instance only
- RedisRateLimitStore: shared Redis cache with native TTL, for multi-instance
- FallbackRateLimitStore: Redis first, local memory while Redis is down
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    TimeoutError as RedisTimeoutError,
    RedisError,
)

from opentelemetry import trace

from ...core.config import Settings
from .circuit_breaker import CircuitBreakerConfig, StoreCircuitBreaker
from .exceptions import (
    RateLimitStoreException,
    StoreConnectionException,
    StoreOperationTimeoutException,
)
from .models import WindowRecord

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class RateLimitStore(ABC):
    """Contract shared by all window record stores."""

    backend: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[WindowRecord]:
        """Return the record stored under ``key`` or None. Never extends TTL."""

    @abstractmethod
    async def set(self, key: str, record: WindowRecord, ttl_seconds: int) -> None:
        """Store ``record`` under ``key`` for ``ttl_seconds`` (at least 1)."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``. Deleting a missing key is not an error."""

    async def health_check(self) -> Dict[str, Any]:
        return {"backend": self.backend, "status": "healthy"}

    async def close(self) -> None:
        return None


class MemoryRateLimitStore(RateLimitStore):
    """
    In-process store.

    A deferred deletion is scheduled on the running loop at every ``set``;
    ``get`` also ignores records whose expiry has passed, so a record never
    outlives its TTL even if the loop is busy.
    """

    backend = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._records: Dict[str, Tuple[WindowRecord, float]] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self._records)

    async def get(self, key: str) -> Optional[WindowRecord]:
        entry = self._records.get(key)
        if entry is None:
            return None
        record, expires_at = entry
        if self._clock() >= expires_at:
            self._evict(key)
            return None
        return record.model_copy(deep=True)

    async def set(self, key: str, record: WindowRecord, ttl_seconds: int) -> None:
        ttl_seconds = max(1, int(ttl_seconds))
        self._records[key] = (record.model_copy(deep=True), self._clock() + ttl_seconds)

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(ttl_seconds, self._evict, key)

    async def delete(self, key: str) -> None:
        self._evict(key)

    def _evict(self, key: str) -> None:
        self._records.pop(key, None)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    async def health_check(self) -> Dict[str, Any]:
        return {"backend": self.backend, "status": "healthy", "keys": len(self)}

    async def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._records.clear()


class RedisRateLimitStore(RateLimitStore):
    """
    Shared store on Redis.

    Records are JSON strings written with SETEX. Calls go through a circuit
    breaker; once it opens, calls fail fast with ``StoreCircuitOpenException``
    until the recovery timeout passes.
    """

    backend = "redis"

    def __init__(
        self,
        client: Redis,
        circuit_breaker: Optional[StoreCircuitBreaker] = None,
        operation_timeout: float = 2.0,
    ):
        self._client = client
        self._operation_timeout = operation_timeout
        self.circuit_breaker = circuit_breaker or StoreCircuitBreaker(
            CircuitBreakerConfig(
                operation_timeout=operation_timeout,
                failure_exceptions=(
                    RedisConnectionError,
                    RedisTimeoutError,
                    ConnectionError,
                    OSError,
                ),
            )
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisRateLimitStore":
        """Create a store with a client built from ``REDIS_URL``."""
        client = Redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=settings.REDIS_CONNECTION_TIMEOUT,
            socket_timeout=settings.REDIS_OPERATION_TIMEOUT,
        )
        breaker = StoreCircuitBreaker(
            CircuitBreakerConfig(
                failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
                recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
                operation_timeout=settings.REDIS_OPERATION_TIMEOUT,
                failure_exceptions=(
                    RedisConnectionError,
                    RedisTimeoutError,
                    ConnectionError,
                    OSError,
                ),
            )
        )
        return cls(
            client,
            circuit_breaker=breaker,
            operation_timeout=settings.REDIS_OPERATION_TIMEOUT,
        )

    async def _execute(self, operation: str, key: str, func) -> Any:
        """Run one Redis call, translating failures into store exceptions."""
        with tracer.start_as_current_span(f"rate_limit_store.{operation}") as span:
            span.set_attribute("rate_limit.store", self.backend)
            span.set_attribute("rate_limit.key", key)
            try:
                return await self.circuit_breaker.call(func)
            except RateLimitStoreException:
                raise
            except (asyncio.TimeoutError, RedisTimeoutError) as e:
                raise StoreOperationTimeoutException(
                    operation=operation,
                    timeout_seconds=self._operation_timeout,
                    key=key,
                    original_error=e,
                )
            except (RedisConnectionError, ConnectionError, OSError) as e:
                raise StoreConnectionException(
                    operation=operation, key=key, original_error=e
                )
            except RedisError as e:
                raise RateLimitStoreException(
                    message=f"Redis {operation} failed",
                    operation=operation,
                    key=key,
                    original_error=e,
                )

    async def get(self, key: str) -> Optional[WindowRecord]:
        raw = await self._execute("get", key, lambda: self._client.get(key))
        if raw is None:
            return None
        try:
            return WindowRecord.from_json(raw)
        except ValidationError as e:
            # A record we cannot parse is treated as absent and overwritten
            logger.warning(
                f"Discarding malformed rate limit record for {key}: {e}"
            )
            return None

    async def set(self, key: str, record: WindowRecord, ttl_seconds: int) -> None:
        payload = record.to_json()
        await self._execute(
            "set",
            key,
            lambda: self._client.setex(key, max(1, int(ttl_seconds)), payload),
        )

    async def delete(self, key: str) -> None:
        await self._execute("delete", key, lambda: self._client.delete(key))

    async def ping(self) -> bool:
        return bool(await self._execute("ping", "", lambda: self._client.ping()))

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.ping()
            status = "healthy"
            error = None
        except RateLimitStoreException as e:
            status = "unhealthy"
            error = e.message
        health = {
            "backend": self.backend,
            "status": status,
            "circuit_breaker": self.circuit_breaker.get_status(),
        }
        if error:
            health["error"] = error
        return health

    async def close(self) -> None:
        await self._client.aclose()


class FallbackRateLimitStore(RateLimitStore):
    """
    Primary store with a local fallback.

    On a primary failure the error is logged and the call is served by the
    fallback. While degraded, the primary is probed again every
    ``probe_interval`` seconds; the first successful probe switches back.
    Windows kept in the fallback are not copied to the primary on recovery.
    """

    backend = "fallback"

    def __init__(
        self,
        primary: RateLimitStore,
        fallback: Optional[RateLimitStore] = None,
        probe_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.primary = primary
        self.fallback = fallback if fallback is not None else MemoryRateLimitStore()
        self.probe_interval = probe_interval
        self._clock = clock
        self._degraded_since: Optional[float] = None
        self._last_probe: float = 0.0

    @property
    def degraded(self) -> bool:
        return self._degraded_since is not None

    def _should_use_primary(self) -> bool:
        if not self.degraded:
            return True
        return self._clock() - self._last_probe >= self.probe_interval

    def _mark_degraded(self, operation: str, error: RateLimitStoreException) -> None:
        now = self._clock()
        self._last_probe = now
        if self._degraded_since is None:
            self._degraded_since = now
            logger.warning(
                f"Rate limit store degraded to local fallback after {operation} failure: {error.message}",
                extra={"error_code": error.error_code, "details": error.details},
            )
        else:
            logger.debug(f"Rate limit primary store still unavailable: {error.message}")

    def _mark_recovered(self) -> None:
        if self._degraded_since is not None:
            outage = self._clock() - self._degraded_since
            self._degraded_since = None
            logger.info(
                "Rate limit primary store recovered",
                extra={"outage_seconds": round(outage, 3)},
            )

    async def _call(self, operation: str, *args):
        if self._should_use_primary():
            try:
                result = await getattr(self.primary, operation)(*args)
            except RateLimitStoreException as e:
                self._mark_degraded(operation, e)
            else:
                self._mark_recovered()
                return result
        return await getattr(self.fallback, operation)(*args)

    async def get(self, key: str) -> Optional[WindowRecord]:
        return await self._call("get", key)

    async def set(self, key: str, record: WindowRecord, ttl_seconds: int) -> None:
        await self._call("set", key, record, ttl_seconds)

    async def delete(self, key: str) -> None:
        # Clear both sides so a record held by either cannot resurface
        await self.fallback.delete(key)
        await self._call("delete", key)

    async def health_check(self) -> Dict[str, Any]:
        primary_health = await self.primary.health_check()
        return {
            "backend": self.backend,
            "status": "degraded" if self.degraded else primary_health.get("status"),
            "degraded": self.degraded,
            "primary": primary_health,
            "fallback": await self.fallback.health_check(),
        }

    async def close(self) -> None:
        await self.primary.close()
        await self.fallback.close()


def build_store(settings: Settings) -> RateLimitStore:
    """Choose the store implementation from settings."""
    backend = settings.rate_limit_store_backend
    if backend == "memory":
        logger.info("Rate limiting using in-memory store")
        return MemoryRateLimitStore()

    logger.info(
        "Rate limiting using Redis store with local fallback",
        extra={"redis_url": settings.REDIS_URL.split("@")[-1]},
    )
    return FallbackRateLimitStore(
        primary=RedisRateLimitStore.from_settings(settings),
        fallback=MemoryRateLimitStore(),
        probe_interval=settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
    )
