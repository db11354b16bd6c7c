"""
Redis connection + in-process TTL cache.

- Redis backs cross-process state (alert dedup windows). Graceful
  degradation: when Redis is unreachable callers get None and fall back to
  process-local state.
- TTLCache is a tiny bounded-staleness holder for hot, rarely-written
  documents (kill-switch configuration).
"""

import time
from typing import Any, Callable, Generic, Optional, TypeVar

import structlog

from trustgate.config import settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_redis = None


async def get_redis():
    """Lazy-init Redis connection. Returns None when unavailable."""
    global _redis
    if _redis is None:
        try:
            import redis.asyncio as aioredis

            client = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=3,
            )
            await client.ping()
            _redis = client
            logger.info("redis_connected")
        except Exception as e:
            logger.warning("redis_unavailable", error=str(e))
            _redis = None
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


class TTLCache(Generic[T]):
    """Single-value cache with a time-to-live."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: Optional[T] = None
        self._stored_at: float = 0.0

    def get(self) -> Optional[T]:
        if self._value is None:
            return None
        if self._clock() - self._stored_at >= self.ttl_seconds:
            return None
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        self._value = None

    def peek(self) -> Optional[Any]:
        """Last stored value regardless of age (stale fallback)."""
        return self._value
