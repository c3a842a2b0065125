"""
Bearer token authentication.

Tokens are HS-signed JWTs issued by the LearnHub auth service. The claims
used here are the user id (``_id``, ``id`` or ``sub``), ``role`` and
``subscriptionPlan``.
"""

from typing import Any, Dict, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError

from ..services.rate_limiting.models import ADMIN_ROLES, CallerInfo
from .config import Settings, get_settings

logger = structlog.get_logger()


def settings_for(request: Request) -> Settings:
    """Settings of the app serving ``request``, or the process defaults."""
    return getattr(request.app.state, "settings", None) or get_settings()


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def caller_from_claims(claims: Dict[str, Any]) -> CallerInfo:
    user_id = claims.get("_id") or claims.get("id") or claims.get("sub")
    return CallerInfo(
        id=str(user_id) if user_id is not None else None,
        role=claims.get("role"),
        subscription_plan=claims.get("subscriptionPlan"),
    )


def decode_token(token: str, settings: Settings) -> CallerInfo:
    """
    Verify a bearer token and return its caller.

    Raises:
        ExpiredSignatureError: If the token has expired
        InvalidTokenError: If the token is malformed or badly signed
    """
    claims = jwt.decode(token, settings.JWT_SECRET, algorithms=settings.jwt_algorithms)
    return caller_from_claims(claims)


def caller_from_request(request: Request) -> Optional[CallerInfo]:
    """Caller of ``request``, or None for anonymous and invalid tokens."""
    token = bearer_token(request)
    if token is None:
        return None
    try:
        return decode_token(token, settings_for(request))
    except InvalidTokenError as e:
        logger.debug("Ignoring invalid bearer token", error=str(e))
        return None


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"success": False, "error": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_optional_caller(request: Request) -> Optional[CallerInfo]:
    """Dependency: the authenticated caller, if any."""
    if hasattr(request.state, "caller"):
        return request.state.caller
    return caller_from_request(request)


async def require_caller(request: Request) -> CallerInfo:
    """Dependency: an authenticated caller, or 401."""
    token = bearer_token(request)
    if token is None:
        raise _unauthorized("Access denied, no token provided")
    try:
        return decode_token(token, settings_for(request))
    except ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except InvalidTokenError:
        raise _unauthorized("Invalid token")


async def require_admin(caller: CallerInfo = Depends(require_caller)) -> CallerInfo:
    """Dependency: an authenticated admin, or 403."""
    if caller.role not in ADMIN_ROLES:
        logger.warning("Admin access denied", user_id=caller.id, role=caller.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"success": False, "error": "Admin access required"},
        )
    return caller
