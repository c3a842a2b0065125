"""
Correlation ID Middleware

Request tracking across services. Every request gets a correlation ID,
taken from the inbound headers when present and valid, generated otherwise.
The ID is bound into the structlog context for the duration of the request
and echoed on the response.
"""

import uuid
from typing import Awaitable, Callable, Optional

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

logger = structlog.get_logger()

CORRELATION_HEADERS = (
    "x-correlation-id",
    "correlation-id",
    "x-request-id",
    "request-id",
)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Generate or propagate a correlation ID for each request."""

    def __init__(
        self,
        app: ASGIApp,
        header_name: str = "x-correlation-id",
        validate_format: bool = True,
    ):
        super().__init__(app)
        self.header_name = header_name.lower()
        self.validate_format = validate_format

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = self._extract_or_generate_correlation_id(request)
        request.state.correlation_id = correlation_id

        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("correlation_id")

        response.headers[self.header_name] = correlation_id
        return response

    def _extract_or_generate_correlation_id(self, request: Request) -> str:
        correlation_id = self._extract_from_headers(request)
        if correlation_id and (
            not self.validate_format or self._is_valid_correlation_id(correlation_id)
        ):
            return correlation_id
        if correlation_id:
            logger.warning(
                "Invalid correlation ID format in request header, generating new one",
                received_correlation_id=correlation_id[:64],
            )
        return str(uuid.uuid4())

    @staticmethod
    def _extract_from_headers(request: Request) -> Optional[str]:
        for header_name in CORRELATION_HEADERS:
            value = request.headers.get(header_name, "").strip()
            if value:
                return value
        return None

    @staticmethod
    def _is_valid_correlation_id(correlation_id: str) -> bool:
        """UUIDs and short alphanumeric IDs (dashes and underscores allowed)."""
        if len(correlation_id) > 128:
            return False
        try:
            uuid.UUID(correlation_id)
            return True
        except ValueError:
            pass
        return all(c.isalnum() or c in "-_" for c in correlation_id)
