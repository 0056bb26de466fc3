"""
Usage accounting tests

KV stores (in-memory and fakeredis), rate limiting and cost tracking.
"""

import asyncio
from datetime import datetime, timezone

import fakeredis.aioredis
import pytest

from common.cost_tracker import CostTracker, calculate_cost
from common.kv_store import InMemoryKVStore, RedisKVStore
from common.rate_limiter import RateLimiter, TierDirectory, TierLimits


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


# 2026-03-02 10:30:00 UTC
NOW = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc).timestamp()


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "memory":
        return InMemoryKVStore()
    return RedisKVStore(fakeredis.aioredis.FakeRedis(decode_responses=True), prefix="t:")


class TestKVStore:
    @pytest.mark.asyncio
    async def test_incr_and_get(self, store):
        assert await store.get("k") is None
        assert await store.incr("k") == 1
        assert await store.incr("k", 4) == 5
        assert await store.get("k") == "5"

    @pytest.mark.asyncio
    async def test_incr_float(self, store):
        await store.incr_float("f", 0.25)
        assert await store.incr_float("f", 0.5) == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, store):
        await asyncio.gather(*(store.incr("c") for _ in range(50)))
        assert await store.get("c") == "50"

    @pytest.mark.asyncio
    async def test_compare_and_set(self, store):
        assert await store.compare_and_set("s", None, "a")
        assert not await store.compare_and_set("s", "b", "c")
        assert await store.compare_and_set("s", "a", "c")
        assert await store.get("s") == "c"
        assert await store.compare_and_set("s", "c", None)
        assert await store.get("s") is None

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.incr("d")
        await store.delete("d")
        assert await store.get("d") is None


class TestInMemoryExpiry:
    @pytest.mark.asyncio
    async def test_ttl_set_on_first_write_only(self):
        clock = FakeClock(0)
        store = InMemoryKVStore(clock=clock)
        await store.incr("w", ttl_s=10)
        clock.now = 8
        await store.incr("w", ttl_s=10)
        clock.now = 10
        assert await store.get("w") is None


class TestRedisKVStore:
    @pytest.mark.asyncio
    async def test_prefix_and_ttl(self):
        redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
        store = RedisKVStore(redis, prefix="vet:")
        await store.incr("hits", ttl_s=60)
        assert await redis.get("vet:hits") == "1"
        assert 0 < await redis.ttl("vet:hits") <= 60


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_hourly_limit(self):
        limiter = RateLimiter(
            InMemoryKVStore(), tiers={"free": TierLimits(requests_per_hour=2, requests_per_day=10)}, clock=FakeClock(NOW),
        )
        first = await limiter.check("u1")
        assert first.allowed and first.remaining == 1
        assert (await limiter.check("u1")).allowed
        denied = await limiter.check("u1")
        assert not denied.allowed
        assert "hourly" in denied.reason
        assert denied.reset_at == datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_denied_requests_do_not_consume_quota(self):
        store = InMemoryKVStore()
        clock = FakeClock(NOW)
        limiter = RateLimiter(store, tiers={"free": TierLimits(requests_per_hour=1, requests_per_day=2)}, clock=clock)
        await limiter.check("u1")
        for _ in range(5):
            assert not (await limiter.check("u1")).allowed
        # the daily counter still reads 1, so the next hour has room
        clock.now += 3600
        assert (await limiter.check("u1")).allowed
        clock.now += 3600
        denied = await limiter.check("u1")
        assert denied.reason == "daily request limit of 2 reached"

    @pytest.mark.asyncio
    async def test_daily_limit(self):
        clock = FakeClock(NOW)
        limiter = RateLimiter(
            InMemoryKVStore(), tiers={"free": TierLimits(requests_per_hour=5, requests_per_day=2)}, clock=clock,
        )
        await limiter.check("u1")
        clock.now += 3600
        await limiter.check("u1")
        clock.now += 3600
        denied = await limiter.check("u1")
        assert not denied.allowed
        assert "daily" in denied.reason
        assert denied.reset_at == datetime(2026, 3, 3, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_users_and_actions_are_independent(self):
        limiter = RateLimiter(
            InMemoryKVStore(), tiers={"free": TierLimits(requests_per_hour=1, requests_per_day=5)}, clock=FakeClock(NOW),
        )
        assert (await limiter.check("u1")).allowed
        assert (await limiter.check("u2")).allowed
        assert (await limiter.check("u1", action="deep_research")).allowed
        assert not (await limiter.check("u1")).allowed

    @pytest.mark.asyncio
    async def test_unknown_tier_uses_free(self):
        limiter = RateLimiter(InMemoryKVStore(), clock=FakeClock(NOW))
        result = await limiter.check("u1", tier="platinum")
        assert result.remaining == 19


class TestTierDirectory:
    @pytest.mark.asyncio
    async def test_unassigned_user_is_free(self, store):
        assert await TierDirectory(store).tier_for("u1") == "free"

    @pytest.mark.asyncio
    async def test_assign_and_reassign(self, store):
        tiers = TierDirectory(store)
        await tiers.assign("u1", "pro")
        assert await tiers.tier_for("u1") == "pro"
        await tiers.assign("u1", "enterprise")
        assert await tiers.tier_for("u1") == "enterprise"
        assert await tiers.tier_for("u2") == "free"

    @pytest.mark.asyncio
    async def test_unknown_tier_rejected(self, store):
        tiers = TierDirectory(store)
        with pytest.raises(ValueError, match="platinum"):
            await tiers.assign("u1", "platinum")
        assert await store.get("tier:u1") is None

    @pytest.mark.asyncio
    async def test_stale_stored_tier_falls_back_to_free(self, store):
        await store.compare_and_set("tier:u1", None, "platinum")
        assert await TierDirectory(store).tier_for("u1") == "free"


class TestCostTracker:
    def test_calculate_cost(self):
        assert calculate_cost("gpt-5-mini", 1_000_000, 1_000_000) == pytest.approx(2.25)
        assert calculate_cost("some-new-model", 1000, 1000) == pytest.approx(0.018)

    @pytest.mark.asyncio
    async def test_track_accumulates_per_day_and_user(self):
        tracker = CostTracker(InMemoryKVStore(), clock=FakeClock(NOW))
        await tracker.track("u1", "gpt-4o", 1_000_000, 0)
        await tracker.track("u2", "gpt-4o", 0, 100_000)
        assert await tracker.today_cost() == pytest.approx(3.5)
        assert await tracker.user_today_cost("u1") == pytest.approx(2.5)
        assert await tracker.user_today_cost("nobody") == 0.0

    @pytest.mark.asyncio
    async def test_over_budget(self):
        tracker = CostTracker(InMemoryKVStore(), clock=FakeClock(NOW))
        await tracker.track("u1", "gpt-4o", 1_000_000, 0)
        assert await tracker.over_budget(2.0)
        assert not await tracker.over_budget(10.0)
        assert not await tracker.over_budget(0)
