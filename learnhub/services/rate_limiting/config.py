"""
Rate Limit Configuration Holder

Owns the live ``RateLimitConfig`` snapshot. Readers take the current
reference without locking; writers merge an update into a new snapshot
under a lock and swap it in, so a reader never sees a half-applied update.
"""

import logging
import threading
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from .exceptions import RateLimitConfigurationException
from .models import RateLimitConfig, RateLimitConfigUpdate, Tier

logger = logging.getLogger(__name__)


class RateLimitConfigHolder:
    """Process-wide, runtime-mutable rate limit configuration cell."""

    def __init__(self, initial: Optional[RateLimitConfig] = None):
        self._config = initial or RateLimitConfig()
        self._write_lock = threading.Lock()

    def snapshot(self) -> RateLimitConfig:
        """Return the current configuration snapshot."""
        return self._config

    def update(
        self, partial: Union[RateLimitConfigUpdate, Dict[str, Any]]
    ) -> RateLimitConfigUpdate:
        """
        Merge a partial update into the live configuration.

        Args:
            partial: Update model or a raw document to validate into one

        Returns:
            The validated update that was applied

        Raises:
            RateLimitConfigurationException: If the document is malformed
        """
        update = self._coerce(partial)

        with self._write_lock:
            current = self._config
            changes: Dict[str, Any] = {}

            if update.enabled is not None:
                changes["enabled"] = update.enabled
            if update.skip_successful_requests is not None:
                changes["skip_successful_requests"] = update.skip_successful_requests
            if update.skip_failed_requests is not None:
                changes["skip_failed_requests"] = update.skip_failed_requests

            if update.limits is not None:
                for tier in Tier:
                    tier_update = getattr(update.limits, tier.value)
                    if tier_update is None:
                        continue
                    tier_changes = tier_update.model_dump(exclude_none=True)
                    if tier_changes:
                        changes[tier.value] = current.limit_for(tier).model_copy(
                            update=tier_changes
                        )

            self._config = current.model_copy(update=changes)

        logger.info(
            "Rate limit configuration updated",
            extra={"updates": update.applied_fields()},
        )
        return update

    @staticmethod
    def _coerce(
        partial: Union[RateLimitConfigUpdate, Dict[str, Any]]
    ) -> RateLimitConfigUpdate:
        if isinstance(partial, RateLimitConfigUpdate):
            return partial
        if not isinstance(partial, dict):
            raise RateLimitConfigurationException(
                "Configuration update must be a JSON object"
            )
        try:
            return RateLimitConfigUpdate.model_validate(partial)
        except ValidationError as e:
            raise RateLimitConfigurationException(
                "Invalid rate limit configuration update",
                errors=e.errors(include_url=False),
            ) from e
