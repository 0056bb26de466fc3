# libs/common/cost_tracker.py
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Tuple

from common.env import float_from_env
from common.kv_store import KVStore

log = logging.getLogger("vet-usage.cost")

# USD per million tokens: (input, output)
PRICING: Dict[str, Tuple[float, float]] = {
    "gpt-5": (1.25, 10.0),
    "gpt-5-mini": (0.25, 2.0),
    "gpt-4o": (2.5, 10.0),
    "gpt-4o-mini": (0.15, 0.6),
    "default": (3.0, 15.0),
}

DAILY_BUDGET_USD = float_from_env("VET_DAILY_BUDGET_USD", 0.0)  # 0 = no budget
_KEY_TTL_S = 3 * 86400


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    input_per_m, output_per_m = PRICING.get(model, PRICING["default"])
    cost = (input_tokens / 1_000_000) * input_per_m + (output_tokens / 1_000_000) * output_per_m
    return round(cost, 6)


class CostTracker:
    def __init__(self, store: KVStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    def _day(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).strftime("%Y-%m-%d")

    async def track(self, user_id: str, model: str, input_tokens: int, output_tokens: int) -> float:
        cost = calculate_cost(model, input_tokens, output_tokens)
        day = self._day()
        total = await self.store.incr_float(f"cost:day:{day}", cost, ttl_s=_KEY_TTL_S)
        await self.store.incr_float(f"cost:user:{user_id}:{day}", cost, ttl_s=_KEY_TTL_S)
        await self.store.incr(f"cost:requests:{day}", 1, ttl_s=_KEY_TTL_S)
        log.info(
            "cost_tracked",
            extra={"user_id": user_id, "model": model, "cost_usd": cost, "day_total_usd": round(total, 6)},
        )
        return cost

    async def today_cost(self) -> float:
        raw = await self.store.get(f"cost:day:{self._day()}")
        return round(float(raw), 6) if raw else 0.0

    async def user_today_cost(self, user_id: str) -> float:
        raw = await self.store.get(f"cost:user:{user_id}:{self._day()}")
        return round(float(raw), 6) if raw else 0.0

    async def over_budget(self, budget_usd: float = DAILY_BUDGET_USD) -> bool:
        if budget_usd <= 0:
            return False
        return await self.today_cost() >= budget_usd
