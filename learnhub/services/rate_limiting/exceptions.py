"""
Rate Limiting Exceptions

Store failures are kept distinct from configuration errors so the limiter
can degrade to "allow" on the former and reject the latter at the API edge.
"""

from typing import Optional, Any, Dict
from fastapi import HTTPException


class RateLimitException(Exception):
    """Base exception for rate limiting errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class RateLimitStoreException(RateLimitException):
    """Raised when the backing store cannot serve a read, write or delete.

    The limiter treats every subclass as "backend unavailable" and fails open.
    """

    def __init__(
        self,
        message: str = "Rate limit store unavailable",
        error_code: str = "RATE_LIMIT_STORE_ERROR",
        operation: Optional[str] = None,
        key: Optional[str] = None,
        original_error: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if operation:
            details["operation"] = operation
        if key:
            details["key"] = key
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(message=message, error_code=error_code, details=details)
        # Preserve exception context for debugging (exception chaining)
        if original_error:
            self.__cause__ = original_error


class StoreConnectionException(RateLimitStoreException):
    """Raised when the store backend cannot be reached."""

    def __init__(
        self,
        message: str = "Rate limit store connection failed",
        operation: Optional[str] = None,
        key: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            error_code="RATE_LIMIT_STORE_CONNECTION_ERROR",
            operation=operation,
            key=key,
            original_error=original_error,
        )


class StoreOperationTimeoutException(RateLimitStoreException):
    """Raised when a store operation times out."""

    def __init__(
        self,
        operation: str,
        timeout_seconds: float,
        key: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=f"Rate limit store operation '{operation}' timed out after {timeout_seconds}s",
            error_code="RATE_LIMIT_STORE_TIMEOUT",
            operation=operation,
            key=key,
            original_error=original_error,
            details={"timeout_seconds": timeout_seconds},
        )


class StoreCircuitOpenException(RateLimitStoreException):
    """Raised when the store circuit breaker rejects a call."""

    def __init__(
        self, message: str = "Rate limit store circuit breaker is open"
    ):
        super().__init__(
            message=message,
            error_code="RATE_LIMIT_STORE_CIRCUIT_OPEN",
            details={"service_status": "unavailable"},
        )


class RateLimitConfigurationException(RateLimitException):
    """Raised when a configuration update is malformed."""

    def __init__(
        self,
        message: str,
        errors: Optional[Any] = None,
    ):
        details = {}
        if errors is not None:
            details["errors"] = errors

        super().__init__(
            message=message, error_code="RATE_LIMIT_CONFIGURATION_ERROR", details=details
        )


# HTTP Exceptions for API layer
class RateLimitHTTPException(HTTPException):
    """HTTP exception wrapper for rate limiting errors."""

    def __init__(self, exception: RateLimitException, status_code: int = 400):
        self.rate_limit_exception = exception
        super().__init__(
            status_code=status_code,
            detail={
                "success": False,
                "error": exception.message,
                "code": exception.error_code,
                "details": exception.details,
            },
        )
