"""
Rate Limiter Tests

Unit tests for tiered sliding-window rate limiting.
"""

import asyncio

import pytest

from learnhub.services.rate_limiting.exceptions import StoreConnectionException
from learnhub.services.rate_limiting.models import (
    CallerInfo,
    RateLimitConfig,
    RequestContext,
    Tier,
    TierLimit,
    WindowRecord,
)
from learnhub.services.rate_limiting.rate_limiter import RateLimiter
from learnhub.services.rate_limiting.stores import MemoryRateLimitStore, RateLimitStore

START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now


class UnavailableStore(RateLimitStore):
    """Store whose backend is always down."""

    backend = "unavailable"

    async def get(self, key):
        raise StoreConnectionException(operation="get", key=key)

    async def set(self, key, record, ttl_seconds):
        raise StoreConnectionException(operation="set", key=key)

    async def delete(self, key):
        raise StoreConnectionException(operation="delete", key=key)


class BrokenStore(MemoryRateLimitStore):
    """Store with a bug rather than an outage."""

    async def get(self, key):
        raise RuntimeError("unexpected store bug")


class YieldingStore(MemoryRateLimitStore):
    """Memory store that yields to the loop inside every call."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key, record, ttl_seconds):
        await asyncio.sleep(0)
        await super().set(key, record, ttl_seconds)


def guest(ip="10.0.0.1"):
    return RequestContext(caller=None, client_ip=ip, path="/api/courses")


def user(user_id="u-1", role="student", plan=None, ip="10.0.0.2"):
    return RequestContext(
        caller=CallerInfo(id=user_id, role=role, subscription_plan=plan),
        client_ip=ip,
        path="/api/courses",
    )


def make_limiter(store=None, clock=None, **limits):
    config = RateLimitConfig(
        guest=TierLimit(window_ms=60000, max_requests=limits.get("guest", 3)),
        authenticated=TierLimit(
            window_ms=60000, max_requests=limits.get("authenticated", 5)
        ),
        premium=TierLimit(window_ms=60000, max_requests=limits.get("premium", 8)),
        admin=TierLimit(window_ms=60000, max_requests=limits.get("admin", 50)),
    )
    return RateLimiter(
        store=store if store is not None else MemoryRateLimitStore(),
        config=config,
        clock=clock or FakeClock(),
    )


class TestTierClassification:
    """Test cases for mapping callers to tiers."""

    @pytest.mark.parametrize(
        "caller,expected",
        [
            (None, Tier.GUEST),
            (CallerInfo(id="u", role="student"), Tier.AUTHENTICATED),
            (CallerInfo(id="u", role="tutor", subscription_plan="basic"), Tier.AUTHENTICATED),
            (CallerInfo(id="u", role="student", subscription_plan="premium"), Tier.PREMIUM),
            (CallerInfo(id="u", role="admin"), Tier.ADMIN),
            (CallerInfo(id="u", role="superadmin", subscription_plan="premium"), Tier.ADMIN),
        ],
    )
    def test_classify_tier(self, caller, expected):
        assert RateLimiter.classify_tier(RequestContext(caller=caller)) == expected

    def test_identifier_prefers_user_id_over_address(self):
        context = user(user_id="42", ip="10.9.9.9")
        assert RateLimiter.resolve_identifier(context) == "user:42"

    def test_identifier_falls_back_to_address(self):
        assert RateLimiter.resolve_identifier(guest("192.168.1.1")) == "ip:192.168.1.1"

    def test_identifier_without_address_uses_unknown_bucket(self):
        context = RequestContext(caller=None, client_ip=None)
        assert RateLimiter.resolve_identifier(context) == "ip:unknown"


class TestRateLimiter:
    """Test cases for RateLimiter class."""

    @pytest.mark.asyncio
    async def test_guest_scenario_sequence(self):
        """Four calls in five seconds, then one after the window resets."""
        clock = FakeClock()
        limiter = make_limiter(clock=clock, guest=3)
        context = guest("10.0.0.1")

        observed = []
        for offset in (0, 1000, 2000, 5000):
            clock.now = START_MS + offset
            decision = await limiter.check_rate_limit(context)
            observed.append((decision.allowed, decision.remaining))

        assert observed == [(True, 2), (True, 1), (True, 0), (False, 0)]
        assert decision.retry_after == 55
        assert decision.identifier == "ip:10.0.0.1"
        assert decision.tier == Tier.GUEST

        clock.now = START_MS + 61000
        decision = await limiter.check_rate_limit(context)
        assert (decision.allowed, decision.remaining) == (True, 2)

    @pytest.mark.asyncio
    async def test_remaining_decreases_until_denied(self):
        clock = FakeClock()
        limiter = make_limiter(clock=clock, authenticated=5)
        context = user()

        for i in range(5):
            clock.now += 100
            decision = await limiter.check_rate_limit(context)
            assert decision.allowed is True
            assert decision.remaining == 5 - (i + 1)
            assert decision.limit == 5

        decision = await limiter.check_rate_limit(context)
        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.retry_after > 0

    @pytest.mark.asyncio
    async def test_window_reset_starts_fresh_after_denials(self):
        clock = FakeClock()
        limiter = make_limiter(clock=clock, guest=3)

        for _ in range(10):
            await limiter.check_rate_limit(guest())

        clock.now = START_MS + 60001
        decision = await limiter.check_rate_limit(guest())
        assert decision.allowed is True
        assert decision.remaining == 2

        record = await limiter.get_stats("ip:10.0.0.1")
        assert record.count == 1
        assert record.reset_time == clock.now + 60000

    @pytest.mark.asyncio
    async def test_request_at_reset_time_starts_new_window(self):
        clock = FakeClock()
        limiter = make_limiter(clock=clock, guest=3)

        for _ in range(3):
            await limiter.check_rate_limit(guest())

        clock.now = START_MS + 60000
        decision = await limiter.check_rate_limit(guest())
        assert decision.allowed is True
        assert decision.remaining == 2
        assert decision.reset_time == START_MS + 120000

    @pytest.mark.asyncio
    async def test_decision_metadata(self):
        clock = FakeClock()
        limiter = make_limiter(clock=clock, premium=8)

        decision = await limiter.check_rate_limit(user(plan="premium"))

        assert decision.tier == Tier.PREMIUM
        assert decision.limit == 8
        assert decision.reset_time == START_MS + 60000
        assert decision.retry_after == 0
        assert decision.reset_time_iso.endswith("Z")

    @pytest.mark.asyncio
    async def test_tier_isolation(self):
        clock = FakeClock()
        limiter = make_limiter(clock=clock, guest=2, authenticated=5)

        for _ in range(3):
            await limiter.check_rate_limit(guest())
        assert (await limiter.check_rate_limit(guest())).allowed is False

        decision = await limiter.check_rate_limit(user())
        assert decision.allowed is True
        assert decision.remaining == 4

        limiter.update_config({"limits": {"guest": {"maxRequests": 100}}})
        decision = await limiter.check_rate_limit(user())
        assert decision.limit == 5
        assert decision.remaining == 3

    @pytest.mark.asyncio
    async def test_config_change_applies_to_existing_window(self):
        clock = FakeClock()
        limiter = make_limiter(clock=clock, guest=3)

        for _ in range(3):
            await limiter.check_rate_limit(guest())

        limiter.update_config({"limits": {"guest": {"maxRequests": 10}}})
        decision = await limiter.check_rate_limit(guest())
        assert decision.allowed is True
        assert decision.limit == 10
        assert decision.remaining == 6
        # The running window keeps its original reset time
        assert decision.reset_time == START_MS + 60000

    @pytest.mark.asyncio
    async def test_disabled_limiter_always_allows(self):
        store = MemoryRateLimitStore()
        limiter = make_limiter(store=store, guest=1)
        await limiter.check_rate_limit(guest())
        await limiter.check_rate_limit(guest())

        limiter.update_config({"enabled": False})
        for _ in range(20):
            decision = await limiter.check_rate_limit(guest())
            assert decision.allowed is True
            assert decision.limit == 0
            assert decision.remaining == 0
            assert decision.reset_time == 0
            assert decision.retry_after == 0

        record = await limiter.get_stats("ip:10.0.0.1")
        assert record.count == 2

    @pytest.mark.asyncio
    async def test_fail_open_on_store_error(self):
        clock = FakeClock()
        limiter = make_limiter(store=UnavailableStore(), clock=clock, guest=1)

        for _ in range(5):
            decision = await limiter.check_rate_limit(guest())
            assert decision.allowed is True
            assert decision.limit == 1
            assert decision.remaining == 1
            assert decision.tier == Tier.GUEST

        assert limiter.metrics.fail_open == 5

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self):
        limiter = make_limiter(store=BrokenStore())

        with pytest.raises(RuntimeError):
            await limiter.check_rate_limit(guest())

    @pytest.mark.asyncio
    async def test_unknown_callers_share_one_bucket(self):
        limiter = make_limiter(guest=2)
        anonymous = RequestContext(caller=None, client_ip=None)

        await limiter.check_rate_limit(anonymous)
        await limiter.check_rate_limit(anonymous)
        decision = await limiter.check_rate_limit(anonymous)

        assert decision.allowed is False
        assert decision.identifier == "ip:unknown"

    @pytest.mark.asyncio
    async def test_user_keeps_quota_across_addresses(self):
        limiter = make_limiter(authenticated=5)

        await limiter.check_rate_limit(user(ip="10.0.0.1"))
        decision = await limiter.check_rate_limit(user(ip="172.16.0.9"))

        assert decision.identifier == "user:u-1"
        assert decision.remaining == 3

    @pytest.mark.asyncio
    async def test_concurrent_checks_match_serial_count(self):
        store = YieldingStore()
        limiter = make_limiter(store=store, authenticated=5)

        decisions = await asyncio.gather(
            *(limiter.check_rate_limit(user()) for _ in range(12))
        )

        assert sum(1 for d in decisions if d.allowed) == 5
        assert sorted(d.remaining for d in decisions if d.allowed) == [0, 1, 2, 3, 4]
        record = await limiter.get_stats("user:u-1")
        assert record.count == 12

    def test_keeps_injected_empty_store(self):
        store = MemoryRateLimitStore()

        limiter = RateLimiter(store=store)

        assert len(store) == 0
        assert limiter.store is store

    @pytest.mark.asyncio
    async def test_limiters_sharing_a_store_share_quota(self):
        store = MemoryRateLimitStore()
        clock = FakeClock()
        first = make_limiter(store=store, clock=clock, guest=1)
        second = make_limiter(store=store, clock=clock, guest=1)

        assert (await first.check_rate_limit(guest())).allowed is True
        decision = await second.check_rate_limit(guest())

        assert decision.allowed is False
        assert decision.remaining == 0


class TestStatsAndClear:
    """Test cases for diagnostics and quota reset."""

    @pytest.mark.asyncio
    async def test_get_stats_does_not_mutate(self):
        clock = FakeClock()
        limiter = make_limiter(clock=clock)
        await limiter.check_rate_limit(guest())

        first = await limiter.get_stats("ip:10.0.0.1")
        second = await limiter.get_stats("ip:10.0.0.1")

        assert isinstance(first, WindowRecord)
        assert first == second
        assert first.count == 1
        assert first.requests == [START_MS]

    @pytest.mark.asyncio
    async def test_get_stats_unknown_identifier(self):
        limiter = make_limiter()
        assert await limiter.get_stats("ip:203.0.113.5") is None

    @pytest.mark.asyncio
    async def test_clear_missing_identifier_succeeds(self):
        limiter = make_limiter()
        assert await limiter.clear("user:nobody") is True

    @pytest.mark.asyncio
    async def test_clear_restores_full_quota(self):
        limiter = make_limiter(guest=3)
        for _ in range(4):
            await limiter.check_rate_limit(guest())

        assert await limiter.clear("ip:10.0.0.1") is True
        assert await limiter.get_stats("ip:10.0.0.1") is None

        decision = await limiter.check_rate_limit(guest())
        assert decision.allowed is True
        assert decision.remaining == 2

    @pytest.mark.asyncio
    async def test_clear_reports_backend_failure(self):
        limiter = make_limiter(store=UnavailableStore())
        assert await limiter.clear("ip:10.0.0.1") is False

    @pytest.mark.asyncio
    async def test_refund_removes_counted_request(self):
        clock = FakeClock()
        limiter = make_limiter(clock=clock, guest=3)

        decision = await limiter.check_rate_limit(guest())
        clock.now += 10
        await limiter.check_rate_limit(guest())

        assert await limiter.refund(decision) is True
        record = await limiter.get_stats("ip:10.0.0.1")
        assert record.count == 1
        assert record.requests == [START_MS + 10]

        assert await limiter.refund(decision) is False
        assert limiter.metrics.refunds == 1

    @pytest.mark.asyncio
    async def test_metrics_track_outcomes(self):
        limiter = make_limiter(guest=1)
        await limiter.check_rate_limit(guest())
        await limiter.check_rate_limit(guest())

        metrics = limiter.get_metrics()
        assert metrics["checks"] == 2
        assert metrics["allowed"] == 1
        assert metrics["denied"] == 1
        assert metrics["denied_by_tier"]["guest"] == 1
        assert metrics["store"] == "memory"
