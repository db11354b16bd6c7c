"""
Alert Deduplication — one delivered alert per (category, source, sourceId,
target) inside the dedup window. The target is the user or employee id,
the role, or all admins.

State is tracked in-memory (for speed). When Redis is reachable the window
is also claimed there with SET NX EX so several engine processes share it;
when Redis is down we fall back to process-local state only.
"""

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import structlog

from trustgate.config import settings
from trustgate.db.compat import utcnow

logger = structlog.get_logger(__name__)

REDIS_KEY_PREFIX = "trustgate:alert_dedup:"


class DedupManager:
    """
    Claims dedup keys for a fixed window.

    `claim` reserves the key synchronously before any await, so two
    concurrent callers in one process can never both win.
    """

    def __init__(
        self,
        window_minutes: int = settings.alert_dedup_window_minutes,
        redis_getter: Optional[Callable[[], Awaitable[object]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.window = timedelta(minutes=window_minutes)
        self._redis_getter = redis_getter
        self._clock = clock
        # dedup_key → time the key was claimed
        self._claimed: dict[str, datetime] = {}

    async def claim(self, dedup_key: str) -> bool:
        """
        Try to claim a key.

        Returns:
            True if the caller owns the window and should deliver,
            False if an identical alert was already delivered.
        """
        now = self._clock()
        self._evict(now)

        last = self._claimed.get(dedup_key)
        if last is not None and now - last < self.window:
            logger.debug("alert_suppressed_dedup", dedup_key=dedup_key)
            return False
        self._claimed[dedup_key] = now

        if self._redis_getter is None:
            return True

        redis = await self._redis_getter()
        if redis is None:
            return True
        try:
            won = await redis.set(
                REDIS_KEY_PREFIX + dedup_key,
                now.isoformat(),
                nx=True,
                ex=int(self.window.total_seconds()),
            )
        except Exception as e:
            logger.warning("alert_dedup_redis_error", error=str(e))
            return True
        if not won:
            logger.debug("alert_suppressed_dedup_shared", dedup_key=dedup_key)
            return False
        return True

    async def release(self, dedup_key: str) -> None:
        """Give a key back (the alert could not be persisted)."""
        self._claimed.pop(dedup_key, None)
        if self._redis_getter is None:
            return
        redis = await self._redis_getter()
        if redis is None:
            return
        try:
            await redis.delete(REDIS_KEY_PREFIX + dedup_key)
        except Exception as e:
            logger.warning("alert_dedup_redis_error", error=str(e))

    def reset(self) -> None:
        """Reset all state (for testing)."""
        self._claimed.clear()

    def _evict(self, now: datetime) -> None:
        expired = [k for k, t in self._claimed.items() if now - t >= self.window]
        for key in expired:
            del self._claimed[key]
