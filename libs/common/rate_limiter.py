# libs/common/rate_limiter.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from common.kv_store import KVStore

log = logging.getLogger("vet-usage.ratelimit")

HOUR_S = 3600
DAY_S = 86400


@dataclass(frozen=True)
class TierLimits:
    requests_per_hour: int
    requests_per_day: int


RATE_LIMITS: Dict[str, TierLimits] = {
    "free": TierLimits(requests_per_hour=20, requests_per_day=100),
    "pro": TierLimits(requests_per_hour=100, requests_per_day=1000),
    "enterprise": TierLimits(requests_per_hour=500, requests_per_day=10000),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    reason: Optional[str] = None


class RateLimiter:
    """
    Fixed hourly and daily windows per (user, action).

    Both counters are incremented first (atomic in the store), then checked;
    a denied request gives its slot back so rejected traffic does not eat
    into the quota.
    """

    def __init__(
        self,
        store: KVStore,
        tiers: Optional[Dict[str, TierLimits]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.tiers = tiers or RATE_LIMITS
        self._clock = clock

    async def check(self, user_id: str, action: str = "chat", tier: str = "free") -> RateLimitResult:
        limits = self.tiers.get(tier) or self.tiers["free"]
        now = self._clock()
        hour_bucket = int(now // HOUR_S)
        day_bucket = int(now // DAY_S)
        hour_key = f"ratelimit:{user_id}:{action}:h:{hour_bucket}"
        day_key = f"ratelimit:{user_id}:{action}:d:{day_bucket}"
        hour_reset = datetime.fromtimestamp((hour_bucket + 1) * HOUR_S, tz=timezone.utc)
        day_reset = datetime.fromtimestamp((day_bucket + 1) * DAY_S, tz=timezone.utc)

        hour_count = await self.store.incr(hour_key, 1, ttl_s=HOUR_S)
        day_count = await self.store.incr(day_key, 1, ttl_s=DAY_S)

        reason = None
        reset_at = min(hour_reset, day_reset)
        if hour_count > limits.requests_per_hour:
            reason = f"hourly request limit of {limits.requests_per_hour} reached"
            reset_at = hour_reset
        elif day_count > limits.requests_per_day:
            reason = f"daily request limit of {limits.requests_per_day} reached"
            reset_at = day_reset

        if reason:
            await self.store.incr(hour_key, -1, ttl_s=HOUR_S)
            await self.store.incr(day_key, -1, ttl_s=DAY_S)
            log.info("rate_limit_denied", extra={"user_id": user_id, "action": action, "tier": tier, "reason": reason})
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at, reason=reason)

        remaining = min(limits.requests_per_hour - hour_count, limits.requests_per_day - day_count)
        return RateLimitResult(allowed=True, remaining=remaining, reset_at=reset_at)


class TierDirectory:
    """
    Server-side subscription tier per user, stored under `tier:{user_id}` by
    billing. Users with no record, or with a tier we have no limits for, are
    "free"; a client never states its own tier.
    """

    def __init__(self, store: KVStore, tiers: Optional[Dict[str, TierLimits]] = None):
        self.store = store
        self.tiers = tiers or RATE_LIMITS

    async def tier_for(self, user_id: str) -> str:
        tier = await self.store.get(f"tier:{user_id}")
        return tier if tier in self.tiers else "free"

    async def assign(self, user_id: str, tier: str) -> None:
        if tier not in self.tiers:
            raise ValueError(f"unknown tier {tier!r}")
        key = f"tier:{user_id}"
        while True:
            current = await self.store.get(key)
            if await self.store.compare_and_set(key, current, tier):
                break
        log.info("tier_assigned", extra={"user_id": user_id, "tier": tier})
