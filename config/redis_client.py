"""
config/redis_client.py
Async Redis client used for request rate limiting and as the Celery broker.
"""

from typing import Optional
import redis.asyncio as aioredis

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> Optional[aioredis.Redis]:
    """Returns the shared client, or None when Redis was never initialised."""
    return redis_client


# ── Rate Limiting ─────────────────────────────────────────────
class RateLimiter:
    """Fixed-window counters keyed by caller and bucket."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def hit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Count one request against `key`.
        Returns True if the request is allowed, False if rate limited.
        """
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds, nx=True)
        results = await pipe.execute()
        current_count = results[0]
        return current_count <= limit
