# libs/common/kv_store.py
"""
Shared counters behind one interface so a single process (dict) and a fleet
of workers (Redis) use the same call sites.

All mutating operations are atomic with respect to other callers of the
same store: `incr` never loses an update and `compare_and_set` only writes
when the stored value still equals `expected`.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis.exceptions import WatchError

log = logging.getLogger("vet-usage.kv")

KV_BACKEND = os.getenv("VET_KV_BACKEND", "memory").lower()


class KVStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def incr(self, key: str, amount: int = 1, ttl_s: Optional[int] = None) -> int: ...

    async def incr_float(self, key: str, amount: float, ttl_s: Optional[int] = None) -> float: ...

    async def compare_and_set(
        self, key: str, expected: Optional[str], new: Optional[str], ttl_s: Optional[int] = None
    ) -> bool: ...

    async def delete(self, key: str) -> None: ...


# ── In-process ───────────────────────────────────────────────────────────────
class InMemoryKVStore:
    """Dict-backed store. One asyncio.Lock serialises every mutation."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _write(self, key: str, value: str, ttl_s: Optional[int]) -> None:
        # a key keeps the expiry it was created with, like INCR on a key with a TTL
        prev = self._data.get(key)
        if prev is not None and prev[1] is not None:
            expires_at = prev[1]
        else:
            expires_at = self._clock() + ttl_s if ttl_s else None
        self._data[key] = (value, expires_at)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def incr(self, key: str, amount: int = 1, ttl_s: Optional[int] = None) -> int:
        async with self._lock:
            current = int(self._live(key) or 0) + amount
            self._write(key, str(current), ttl_s)
            return current

    async def incr_float(self, key: str, amount: float, ttl_s: Optional[int] = None) -> float:
        async with self._lock:
            current = float(self._live(key) or 0.0) + amount
            self._write(key, repr(current), ttl_s)
            return current

    async def compare_and_set(
        self, key: str, expected: Optional[str], new: Optional[str], ttl_s: Optional[int] = None
    ) -> bool:
        async with self._lock:
            if self._live(key) != expected:
                return False
            if new is None:
                self._data.pop(key, None)
            else:
                self._data[key] = (new, self._clock() + ttl_s if ttl_s else None)
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)


# ── Redis ────────────────────────────────────────────────────────────────────
def _decode(raw) -> Optional[str]:
    if raw is None:
        return None
    return raw.decode() if isinstance(raw, bytes) else str(raw)


class RedisKVStore:
    def __init__(self, client: aioredis.Redis, prefix: str = "vetevidence:"):
        self._redis = client
        self._prefix = prefix

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def _ensure_ttl(self, key: str, ttl_s: Optional[int]) -> None:
        # -1 means the key exists without an expiry (first write of this window)
        if ttl_s and await self._redis.ttl(key) == -1:
            await self._redis.expire(key, ttl_s)

    async def get(self, key: str) -> Optional[str]:
        return _decode(await self._redis.get(self._k(key)))

    async def incr(self, key: str, amount: int = 1, ttl_s: Optional[int] = None) -> int:
        k = self._k(key)
        value = await self._redis.incrby(k, amount)
        await self._ensure_ttl(k, ttl_s)
        return int(value)

    async def incr_float(self, key: str, amount: float, ttl_s: Optional[int] = None) -> float:
        k = self._k(key)
        value = await self._redis.incrbyfloat(k, amount)
        await self._ensure_ttl(k, ttl_s)
        return float(value)

    async def compare_and_set(
        self, key: str, expected: Optional[str], new: Optional[str], ttl_s: Optional[int] = None
    ) -> bool:
        k = self._k(key)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(k)
                current = _decode(await pipe.get(k))
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                if new is None:
                    pipe.delete(k)
                else:
                    pipe.set(k, new, ex=ttl_s)
                await pipe.execute()
                return True
            except WatchError:
                log.info("kv_cas_conflict", extra={"key": key})
                return False

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._k(key))


_default_store: Optional[KVStore] = None


def get_kv_store() -> KVStore:
    """Process-wide store picked by VET_KV_BACKEND (memory|redis)."""
    global _default_store
    if _default_store is None:
        if KV_BACKEND == "redis":
            from common.redis_conn import redis_client

            _default_store = RedisKVStore(redis_client())
        else:
            _default_store = InMemoryKVStore()
        log.info("kv_store_initialised", extra={"backend": KV_BACKEND})
    return _default_store
