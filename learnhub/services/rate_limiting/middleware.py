"""
Rate Limiting Middleware

FastAPI middleware that runs every non-exempt request through the tiered
rate limiter. Checked responses carry quota headers; denied requests get
HTTP 429 with a Retry-After header.
"""

import re
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Pattern, Union

import structlog
from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from opentelemetry import trace

from ...core import auth
from .models import UNKNOWN_ADDRESS, CallerInfo, RateLimitDecision, RequestContext
from .rate_limiter import RateLimiter

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

ExemptRule = Union[str, Pattern[str]]
SkipPredicate = Callable[[Request], bool]
LimitReachedHook = Callable[[Request, RateLimitDecision], Awaitable[Response]]
CallerExtractor = Callable[[Request], Optional[CallerInfo]]

DECISION_STATE_KEY = "rate_limit_decision"


def get_client_ip(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """
    Get client IP address from request.

    The socket peer is the client unless it is one of ``trusted_proxies``;
    only then are X-Forwarded-For and X-Real-IP consulted.
    """
    peer = request.client.host if request.client and request.client.host else None
    if peer is None or peer not in trusted_proxies:
        return peer or UNKNOWN_ADDRESS

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return peer


def rate_limit_headers(decision: RateLimitDecision) -> Dict[str, str]:
    """Quota headers attached to every checked response."""
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": decision.reset_time_iso,
        "X-RateLimit-User-Type": decision.tier.value if decision.tier else "",
    }
    if not decision.allowed:
        headers["Retry-After"] = str(decision.retry_after)
    return headers


def rate_limit_exceeded_body(decision: RateLimitDecision) -> Dict[str, Any]:
    return {
        "error": "Rate limit exceeded",
        "message": (
            "Too many requests. You have exceeded the rate limit of "
            f"{decision.limit} requests per minute."
        ),
        "retryAfter": decision.retry_after,
        "limit": decision.limit,
        "remaining": decision.remaining,
        "resetTime": decision.reset_time_iso,
    }


class RateLimitingMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware for tiered rate limiting.

    The limiter is looked up on ``request.app.state.rate_limiter`` unless one
    is passed in. Exempt rules are exact path strings or compiled patterns
    matched with ``search``.
    """

    def __init__(
        self,
        app,
        rate_limiter: Optional[RateLimiter] = None,
        exempt_paths: Optional[Iterable[ExemptRule]] = None,
        skip: Optional[SkipPredicate] = None,
        on_limit_reached: Optional[LimitReachedHook] = None,
        caller_extractor: Optional[CallerExtractor] = None,
        skip_successful_requests: bool = False,
        skip_failed_requests: bool = False,
        trusted_proxies: Optional[Iterable[str]] = None,
    ):
        """
        Initialize rate limiting middleware.

        Args:
            app: ASGI application
            rate_limiter: Limiter to use; defaults to the one on app state
            exempt_paths: Paths never rate limited
            skip: Predicate; requests for which it returns True are not limited
            on_limit_reached: Builds the response for a denied request
                instead of the default 429 body
            caller_extractor: Resolves the authenticated caller of a request
            skip_successful_requests: Do not count responses below 400
            skip_failed_requests: Do not count responses of 400 and above
            trusted_proxies: Peers whose forwarding headers name the client;
                defaults to the app settings
        """
        super().__init__(app)
        self.rate_limiter = rate_limiter
        self.exact_paths = set()
        self.path_patterns: List[Pattern[str]] = []
        for rule in exempt_paths or []:
            self.add_excluded_path(rule)
        self.skip = skip
        self.on_limit_reached = on_limit_reached
        self.caller_extractor = caller_extractor or auth.caller_from_request
        self.skip_successful_requests = skip_successful_requests
        self.skip_failed_requests = skip_failed_requests
        self.trusted_proxies = (
            frozenset(trusted_proxies) if trusted_proxies is not None else None
        )

    def _limiter_for(self, request: Request) -> Optional[RateLimiter]:
        if self.rate_limiter is not None:
            return self.rate_limiter
        return getattr(request.app.state, "rate_limiter", None)

    def _trusted_proxies_for(self, request: Request) -> Iterable[str]:
        if self.trusted_proxies is not None:
            return self.trusted_proxies
        return auth.settings_for(request).trusted_proxies_list

    def is_exempt(self, path: str) -> bool:
        if path in self.exact_paths:
            return True
        return any(pattern.search(path) for pattern in self.path_patterns)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request through rate limiting middleware.

        Args:
            request: Incoming HTTP request
            call_next: Next middleware in chain

        Returns:
            HTTP response with rate limiting headers
        """
        limiter = self._limiter_for(request)
        if limiter is None or not limiter.config.enabled:
            return await call_next(request)

        path = request.url.path
        if self.is_exempt(path):
            return await call_next(request)

        with tracer.start_as_current_span("rate_limiting_middleware.dispatch") as span:
            span.set_attribute("http.method", request.method)
            span.set_attribute("http.path", path)

            try:
                if self.skip is not None and self.skip(request):
                    span.set_attribute("rate_limit.skipped", True)
                    decision = None
                else:
                    decision = await self._check(request, limiter)
            except Exception as e:
                logger.error(
                    "Rate limiting middleware error, allowing request",
                    error=str(e),
                    error_type=type(e).__name__,
                    path=path,
                )
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                # Fail open - allow request on middleware errors
                return await call_next(request)

            if decision is None:
                return await call_next(request)

            span.set_attribute("rate_limit.allowed", decision.allowed)
            span.set_attribute("rate_limit.remaining", decision.remaining)

            if not decision.allowed:
                span.set_attribute("http.status_code", status.HTTP_429_TOO_MANY_REQUESTS)
                return await self._limit_reached(request, decision)

            response = await call_next(request)
            self._add_rate_limit_headers(response, decision)
            try:
                await self._apply_skip_flags(limiter, decision, response.status_code)
            except Exception as e:
                logger.error(
                    "Failed to apply rate limit skip flags",
                    error=str(e),
                    error_type=type(e).__name__,
                    identifier=decision.identifier,
                    path=path,
                )
            return response

    async def _check(self, request: Request, limiter: RateLimiter) -> RateLimitDecision:
        caller = self._extract_caller(request)
        request.state.caller = caller
        context = RequestContext(
            caller=caller,
            client_ip=get_client_ip(request, self._trusted_proxies_for(request)),
            path=request.url.path,
            method=request.method,
        )
        decision = await limiter.check_rate_limit(context)
        setattr(request.state, DECISION_STATE_KEY, decision)
        return decision

    def _extract_caller(self, request: Request) -> Optional[CallerInfo]:
        try:
            return self.caller_extractor(request)
        except Exception as e:
            logger.warning("Failed to extract caller from request", error=str(e))
            return None

    async def _limit_reached(
        self, request: Request, decision: RateLimitDecision
    ) -> Response:
        caller = getattr(request.state, "caller", None)
        logger.warning(
            "Rate limit exceeded",
            identifier=decision.identifier,
            tier=decision.tier.value if decision.tier else None,
            user_id=caller.id if caller else None,
            path=request.url.path,
            method=request.method,
            limit=decision.limit,
            retry_after=decision.retry_after,
        )

        if self.on_limit_reached is not None:
            response = await self.on_limit_reached(request, decision)
        else:
            response = JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content=rate_limit_exceeded_body(decision),
            )
        self._add_rate_limit_headers(response, decision)
        return response

    def _add_rate_limit_headers(
        self, response: Response, decision: RateLimitDecision
    ) -> None:
        for key, value in rate_limit_headers(decision).items():
            response.headers[key] = value

    async def _apply_skip_flags(
        self, limiter: RateLimiter, decision: RateLimitDecision, status_code: int
    ) -> None:
        config = limiter.config
        skip_success = self.skip_successful_requests or config.skip_successful_requests
        skip_failed = self.skip_failed_requests or config.skip_failed_requests

        if skip_success and 200 <= status_code < 400:
            await limiter.refund(decision)
        elif skip_failed and status_code >= 400:
            await limiter.refund(decision)

    def add_excluded_path(self, rule: ExemptRule) -> None:
        """Add a path or pattern to the exemption list."""
        if isinstance(rule, str):
            self.exact_paths.add(rule)
        else:
            self.path_patterns.append(rule)
        logger.debug("Added path to rate limiting exclusions", rule=str(rule))

    def remove_excluded_path(self, rule: ExemptRule) -> None:
        """Remove a path or pattern from the exemption list."""
        if isinstance(rule, str):
            self.exact_paths.discard(rule)
        elif rule in self.path_patterns:
            self.path_patterns.remove(rule)
        logger.debug("Removed path from rate limiting exclusions", rule=str(rule))


# Preset options, used as ``app.add_middleware(RateLimitingMiddleware, **options)``

API_EXEMPT_PATHS: List[ExemptRule] = [
    "/api/health",
    "/api/status",
    "/api/docs",
    "/swagger",
    re.compile(r"^/api/docs"),
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
]

AUTH_SENSITIVE_PATHS = frozenset(
    {"/login", "/register", "/forgot-password", "/reset-password"}
)


def api_rate_limit_options(**overrides) -> Dict[str, Any]:
    """General API limiting with health and documentation routes exempt."""
    options: Dict[str, Any] = {"exempt_paths": list(API_EXEMPT_PATHS)}
    options.update(overrides)
    return options


def _is_not_sensitive_auth_route(request: Request) -> bool:
    path = request.url.path
    return not any(route in path for route in AUTH_SENSITIVE_PATHS)


def auth_rate_limit_options(**overrides) -> Dict[str, Any]:
    """Limit only login, registration and password recovery routes."""
    options: Dict[str, Any] = {"skip": _is_not_sensitive_auth_route}
    options.update(overrides)
    return options


def _has_authenticated_caller(request: Request) -> bool:
    return auth.caller_from_request(request) is not None


def public_rate_limit_options(**overrides) -> Dict[str, Any]:
    """Limit anonymous traffic only; authenticated callers pass through."""
    options: Dict[str, Any] = {"skip": _has_authenticated_caller}
    options.update(overrides)
    return options
