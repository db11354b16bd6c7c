"""
Failure containment for dependencies.

- with_timeout: bounds a cross-component read (trust lookups from the
  risk/fraud paths) and turns a timeout into DependencyUnavailableError
- CircuitBreaker: stops alert delivery from hammering an SMTP relay or
  webhook endpoint that keeps failing
"""

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from trustgate.errors import DependencyUnavailableError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    dependency: str,
) -> T:
    """Await a dependency read, giving up after `timeout_seconds`."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning("dependency_timeout", dependency=dependency, timeout=timeout_seconds)
        raise DependencyUnavailableError(
            f"{dependency} did not answer within {timeout_seconds}s",
            details={"dependency": dependency},
        )


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """The breaker rejected a delivery without attempting it."""


class CircuitBreaker:
    """
    Consecutive-failure breaker for one delivery target.

    `failure_threshold` failures in a row open it. After `cooldown_seconds`
    a single trial delivery is let through: success closes the breaker,
    failure opens it for another cooldown.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._trial_running = False

    @property
    def state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - self._opened_at < self.cooldown_seconds:
            return CircuitState.OPEN
        return CircuitState.HALF_OPEN

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        state = self.state
        if state == CircuitState.OPEN or (state == CircuitState.HALF_OPEN and self._trial_running):
            logger.warning("delivery_breaker_rejected", breaker=self.name, state=state.value)
            raise CircuitOpenError(f"Delivery to '{self.name}' is paused")

        self._trial_running = state == CircuitState.HALF_OPEN
        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self._record_failure(state)
            raise
        finally:
            self._trial_running = False

        if state != CircuitState.CLOSED:
            logger.info("delivery_breaker_closed", breaker=self.name)
        self._consecutive_failures = 0
        self._opened_at = None
        return result

    def _record_failure(self, state: CircuitState) -> None:
        self._consecutive_failures += 1
        if state == CircuitState.HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
            self._opened_at = self._clock()
            logger.warning(
                "delivery_breaker_opened",
                breaker=self.name,
                consecutive_failures=self._consecutive_failures,
            )


webhook_breaker = CircuitBreaker(name="alert_webhook", failure_threshold=5, cooldown_seconds=30.0)
smtp_breaker = CircuitBreaker(name="alert_smtp", failure_threshold=3, cooldown_seconds=60.0)
