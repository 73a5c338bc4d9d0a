"""
Redis service for cross-instance coordination.
Provides short leases so periodic jobs run on one instance per tick, and a health probe.
"""
from typing import Optional
from redis.asyncio import Redis

from farmslot.app.core.settings import get_settings


class CacheService:
    """Service for coordination operations using Redis."""

    _redis: Optional[Redis] = None

    # Lease keys
    KEY_REAPER_LEASE = "farmslot:lease:reaper"
    KEY_MAINTENANCE_LEASE = "farmslot:lease:maintenance"

    @classmethod
    async def get_redis(cls) -> Redis:
        """Get or create Redis connection."""
        if cls._redis is None:
            settings = get_settings()
            cls._redis = Redis(
                host=settings.REDIS_HOST,
                port=settings.REDIS_PORT,
                db=settings.REDIS_DB,
                decode_responses=True,
            )
        return cls._redis

    @classmethod
    async def close(cls):
        """Close Redis connection."""
        if cls._redis:
            await cls._redis.aclose()
            cls._redis = None

    def __init__(self, redis: Redis):
        self.redis = redis

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def try_acquire_lease(self, key: str, holder: str, ttl: int) -> bool:
        """
        Take the lease if nobody holds it. It lapses on its own after `ttl`
        seconds, so a crashed holder never blocks the job for longer than that.
        """
        return bool(await self.redis.set(key, holder, nx=True, ex=ttl))
