"""Redis-backed cache for pricing catalog lookups.

Redis only ever holds derived copies of the service catalog and doctor
tariffs, so every failure here degrades to a cache miss and the caller reads
the database instead.
"""

import json
from typing import Any

import redis
import structlog

from clinicflow.config import settings

logger = structlog.get_logger(__name__)

KEY_PREFIX = "clinicflow:"

_pool: redis.ConnectionPool | None = None


def redis_connection() -> redis.Redis:
    """Redis client sharing one process-wide connection pool."""
    global _pool

    if _pool is None:
        _pool = redis.ConnectionPool(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password or None,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
            socket_timeout=settings.redis_socket_timeout_seconds,
        )
    return redis.Redis(connection_pool=_pool)


async def redis_available() -> bool:
    """Whether Redis answers a ping."""
    try:
        return bool(redis_connection().ping())
    except redis.RedisError as e:
        logger.debug("redis_ping_failed", error=str(e))
        return False


def release_redis() -> None:
    """Drop the pooled connections; the next call reconnects."""
    global _pool

    if _pool is not None:
        _pool.disconnect()
        _pool = None


class PricingCache:
    """
    JSON values under the ``clinicflow:`` key prefix with a bounded lifetime.

    Entries always expire, by default after ``PRICING_CACHE_TTL_SECONDS``, so a
    catalog edit shows up without explicit invalidation.
    """

    def __init__(self, client: redis.Redis, ttl_seconds: int | None = None):
        self.client = client
        self.ttl_seconds = ttl_seconds or settings.pricing_cache_ttl_seconds

    @staticmethod
    def key(name: str) -> str:
        return f"{KEY_PREFIX}{name}"

    def get(self, name: str) -> Any | None:
        """Cached value for ``name``, or None on a miss or when Redis is unusable."""
        try:
            raw = self.client.get(self.key(name))
            return json.loads(raw) if raw else None
        except (redis.RedisError, ValueError) as e:
            logger.warning("pricing_cache_read_failed", key=name, error=str(e))
            return None

    def put(self, name: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """Store ``value``; returns False when it could not be written."""
        try:
            payload = json.dumps(value, default=str)
            self.client.setex(self.key(name), ttl_seconds or self.ttl_seconds, payload)
            return True
        except (redis.RedisError, TypeError, ValueError) as e:
            logger.warning("pricing_cache_write_failed", key=name, error=str(e))
            return False
