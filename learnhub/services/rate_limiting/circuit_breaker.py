"""
Store Circuit Breaker

Circuit breaker for the shared rate limit store. After repeated backend
failures calls are rejected immediately until the recovery timeout passes,
so an unreachable Redis costs one fast exception per request instead of a
socket timeout.
"""

import time
import asyncio
import logging
from enum import Enum
from typing import Callable, Awaitable, Optional, TypeVar
from dataclasses import dataclass

from .exceptions import StoreCircuitOpenException

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    # Failure threshold - number of failures before opening
    failure_threshold: int = 5

    # Recovery timeout - seconds to wait before trying again
    recovery_timeout: float = 30.0

    # Success threshold - number of successes needed to close circuit
    success_threshold: int = 1

    # Timeout for individual operations
    operation_timeout: float = 5.0

    # Monitor these exception types as failures
    failure_exceptions: tuple = (
        ConnectionError,
        TimeoutError,
        OSError,
    )


@dataclass
class CircuitBreakerMetrics:
    """Metrics for circuit breaker monitoring."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    timeout_calls: int = 0
    circuit_opens: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate."""
        if self.total_calls == 0:
            return 0.0
        return self.failed_calls / self.total_calls


class StoreCircuitBreaker:
    """
    Circuit breaker for store operations.

    Only exceptions listed in ``failure_exceptions`` (and timeouts) count as
    failures; anything else is re-raised without touching the circuit.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.metrics = CircuitBreakerMetrics()
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        """True while calls are being rejected."""
        return self.state == CircuitState.OPEN and not self._should_attempt_reset()

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute an async callable with circuit breaker protection.

        Raises:
            StoreCircuitOpenException: If circuit is open
            Exception: Original exception from the call
        """
        async with self._lock:
            self.metrics.total_calls += 1
            if self.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self.state = CircuitState.HALF_OPEN
                    logger.info(
                        "Store circuit breaker transitioning to HALF_OPEN",
                        extra={"failure_count": self.failure_count},
                    )
                else:
                    self.metrics.rejected_calls += 1
                    raise StoreCircuitOpenException()

        try:
            result = await asyncio.wait_for(
                func(), timeout=self.config.operation_timeout
            )
        except asyncio.TimeoutError:
            self.metrics.timeout_calls += 1
            await self._record_failure("timeout")
            raise
        except Exception as e:
            if isinstance(e, self.config.failure_exceptions):
                await self._record_failure(type(e).__name__)
            raise

        await self._record_success()
        return result

    async def _record_success(self) -> None:
        """Record successful operation."""
        async with self._lock:
            self.metrics.successful_calls += 1
            self.metrics.last_success_time = self._clock()

            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.config.success_threshold:
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
                    self.success_count = 0
                    logger.info("Store circuit breaker closed after recovery")
            elif self.state == CircuitState.CLOSED and self.failure_count > 0:
                self.failure_count -= 1

    async def _record_failure(self, failure_type: str) -> None:
        """Record failed operation."""
        async with self._lock:
            now = self._clock()
            self.metrics.failed_calls += 1
            self.metrics.last_failure_time = now
            self.last_failure_time = now

            if self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
                self.success_count = 0
                self.metrics.circuit_opens += 1
                logger.warning(
                    "Store circuit breaker re-opened after failure in half-open state",
                    extra={"failure_type": failure_type},
                )

            elif self.state == CircuitState.CLOSED:
                self.failure_count += 1
                if self.failure_count >= self.config.failure_threshold:
                    self.state = CircuitState.OPEN
                    self.metrics.circuit_opens += 1
                    logger.warning(
                        "Store circuit breaker opened due to failure threshold",
                        extra={
                            "failure_count": self.failure_count,
                            "threshold": self.config.failure_threshold,
                            "failure_type": failure_type,
                        },
                    )

    def _should_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt circuit reset."""
        if self.last_failure_time is None:
            return True
        return self._clock() - self.last_failure_time >= self.config.recovery_timeout

    def get_status(self) -> dict:
        """Get current circuit breaker status for monitoring."""
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "metrics": {
                "total_calls": self.metrics.total_calls,
                "successful_calls": self.metrics.successful_calls,
                "failed_calls": self.metrics.failed_calls,
                "rejected_calls": self.metrics.rejected_calls,
                "timeout_calls": self.metrics.timeout_calls,
                "failure_rate": self.metrics.failure_rate,
                "circuit_opens": self.metrics.circuit_opens,
            },
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "recovery_timeout": self.config.recovery_timeout,
                "operation_timeout": self.config.operation_timeout,
            },
        }

    async def reset(self) -> None:
        """Manually reset circuit breaker to closed state."""
        async with self._lock:
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.success_count = 0
            self.last_failure_time = None
            logger.info("Store circuit breaker manually reset to CLOSED state")
