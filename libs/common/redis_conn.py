# libs/common/redis_conn.py
import logging
import os
from urllib.parse import urlsplit, urlunsplit

import redis.asyncio as redis
from dotenv import load_dotenv

from common.env import int_from_env

load_dotenv(override=True)

log = logging.getLogger("vet-redis")

# One Redis for the taskiq broker, chat Pub/Sub, the relay latch and usage counters
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
REDIS_MAX_CONNECTIONS = int_from_env("REDIS_MAX_CONNECTIONS", 50)
REDIS_HEALTH_CHECK_S = int_from_env("REDIS_HEALTH_CHECK_S", 30)


def redacted_url(url: str = REDIS_URL) -> str:
    """REDIS_URL with the password masked, for log lines."""
    parts = urlsplit(url)
    if not parts.password:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@")
    return urlunsplit(parts._replace(netloc=netloc))


# ---- connection pool (lazy, process-wide) ---------------------------------
_redis_pool: redis.ConnectionPool | None = None

def get_redis_pool() -> redis.ConnectionPool:
    global _redis_pool
    if _redis_pool is None:
        log.info("redis_pool_init", extra={"url": redacted_url(), "max_connections": REDIS_MAX_CONNECTIONS})
        _redis_pool = redis.ConnectionPool.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=REDIS_MAX_CONNECTIONS,
            health_check_interval=REDIS_HEALTH_CHECK_S,
        )
    return _redis_pool

def redis_client() -> redis.Redis:
    """Client over the shared pool. Creating one does not open a connection."""
    return redis.Redis(connection_pool=get_redis_pool())

async def get_redis_connection() -> redis.Redis:
    """FastAPI dependency."""
    return redis_client()
