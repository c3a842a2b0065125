"""
Rate Limiting Models

Tiers, per-tier limits, the live configuration snapshot, per-identifier
window records and the decision returned for every checked request.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    conint,
    model_validator,
)

ADMIN_ROLES = frozenset({"admin", "superadmin"})
PREMIUM_PLAN = "premium"
UNKNOWN_ADDRESS = "unknown"

PositiveStrictInt = conint(strict=True, gt=0)


class Tier(str, Enum):
    """Caller classification that selects a quota."""

    GUEST = "guest"
    AUTHENTICATED = "authenticated"
    PREMIUM = "premium"
    ADMIN = "admin"


@dataclass(frozen=True)
class CallerInfo:
    """Authenticated caller as decoded from a bearer token."""

    id: Optional[str] = None
    role: Optional[str] = None
    subscription_plan: Optional[str] = None


@dataclass(frozen=True)
class RequestContext:
    """What the limiter needs to know about an inbound request."""

    caller: Optional[CallerInfo] = None
    client_ip: Optional[str] = None
    path: str = ""
    method: str = "GET"


def format_epoch_ms(epoch_ms: int) -> str:
    """Render epoch milliseconds as an ISO-8601 UTC timestamp."""
    moment = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TierLimit(BaseModel):
    """Window length and request quota for one tier."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    window_ms: int = Field(..., gt=0, alias="windowMs")
    max_requests: int = Field(..., gt=0, alias="maxRequests")


class RateLimitConfig(BaseModel):
    """Immutable snapshot of the live rate limit configuration."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    enabled: bool = True
    guest: TierLimit = TierLimit(window_ms=60000, max_requests=30)
    authenticated: TierLimit = TierLimit(window_ms=60000, max_requests=100)
    premium: TierLimit = TierLimit(window_ms=60000, max_requests=200)
    admin: TierLimit = TierLimit(window_ms=60000, max_requests=500)
    skip_successful_requests: bool = Field(
        default=False, alias="skipSuccessfulRequests"
    )
    skip_failed_requests: bool = Field(default=False, alias="skipFailedRequests")
    key_prefix: str = Field(default="rl:", alias="keyPrefix")

    @classmethod
    def from_settings(cls, settings) -> "RateLimitConfig":
        """Build the startup configuration from environment-derived settings."""
        return cls(
            enabled=settings.RATE_LIMIT_ENABLED,
            guest=TierLimit(
                window_ms=settings.RATE_LIMIT_GUEST_WINDOW_MS,
                max_requests=settings.RATE_LIMIT_GUEST_MAX,
            ),
            authenticated=TierLimit(
                window_ms=settings.RATE_LIMIT_AUTH_WINDOW_MS,
                max_requests=settings.RATE_LIMIT_AUTH_MAX,
            ),
            premium=TierLimit(
                window_ms=settings.RATE_LIMIT_PREMIUM_WINDOW_MS,
                max_requests=settings.RATE_LIMIT_PREMIUM_MAX,
            ),
            admin=TierLimit(
                window_ms=settings.RATE_LIMIT_ADMIN_WINDOW_MS,
                max_requests=settings.RATE_LIMIT_ADMIN_MAX,
            ),
            skip_successful_requests=settings.RATE_LIMIT_SKIP_SUCCESS,
            skip_failed_requests=settings.RATE_LIMIT_SKIP_FAILED,
            key_prefix=settings.RATE_LIMIT_KEY_PREFIX,
        )

    def limit_for(self, tier: Tier) -> TierLimit:
        """Return the limit configured for a tier."""
        return getattr(self, tier.value)

    def to_public_dict(self) -> Dict[str, Any]:
        """Shape returned by the admin config endpoint."""
        return {
            "enabled": self.enabled,
            "limits": {
                tier.value: self.limit_for(tier).model_dump(by_alias=True)
                for tier in Tier
            },
            "settings": {
                "skipSuccessfulRequests": self.skip_successful_requests,
                "skipFailedRequests": self.skip_failed_requests,
            },
        }


class TierLimitUpdate(BaseModel):
    """Partial update of one tier; omitted fields keep their value."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    window_ms: Optional[PositiveStrictInt] = Field(default=None, alias="windowMs")
    max_requests: Optional[PositiveStrictInt] = Field(
        default=None, alias="maxRequests"
    )


class TierLimitsUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    guest: Optional[TierLimitUpdate] = None
    authenticated: Optional[TierLimitUpdate] = None
    premium: Optional[TierLimitUpdate] = None
    admin: Optional[TierLimitUpdate] = None


class RateLimitConfigUpdate(BaseModel):
    """
    Partial configuration document accepted by ``update_config``.

    Tier limits may be given under ``limits`` or as top-level tier keys.
    Unrecognised fields are ignored.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: Optional[StrictBool] = None
    skip_successful_requests: Optional[StrictBool] = Field(
        default=None, alias="skipSuccessfulRequests"
    )
    skip_failed_requests: Optional[StrictBool] = Field(
        default=None, alias="skipFailedRequests"
    )
    limits: Optional[TierLimitsUpdate] = None

    @model_validator(mode="before")
    @classmethod
    def collect_top_level_tiers(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        tier_keys = [tier.value for tier in Tier if tier.value in data]
        if not tier_keys or not isinstance(data.get("limits") or {}, dict):
            return data
        data = dict(data)
        limits = dict(data.get("limits") or {})
        for key in tier_keys:
            limits.setdefault(key, data.pop(key))
        data["limits"] = limits
        return data

    def applied_fields(self) -> Dict[str, Any]:
        """The recognised fields that were actually supplied, in API shape."""
        return self.model_dump(by_alias=True, exclude_none=True)


class WindowRecord(BaseModel):
    """Per-identifier window state as persisted in the store."""

    model_config = ConfigDict(populate_by_name=True)

    requests: List[int] = Field(default_factory=list)
    count: int = 0
    reset_time: int = Field(..., alias="resetTime")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "WindowRecord":
        return cls.model_validate_json(raw)


class RateLimitDecision(BaseModel):
    """Outcome of a rate limit check, returned whether allowed or not."""

    model_config = ConfigDict(populate_by_name=True)

    allowed: bool
    limit: int = 0
    remaining: int = 0
    reset_time: int = Field(default=0, alias="resetTime")
    retry_after: int = Field(default=0, alias="retryAfter")
    tier: Optional[Tier] = None
    identifier: Optional[str] = None
    timestamp: Optional[int] = Field(default=None, exclude=True)

    @property
    def reset_time_iso(self) -> str:
        return format_epoch_ms(self.reset_time)
