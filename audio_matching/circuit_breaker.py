"""
Circuit breaker for external search platforms

A platform that keeps failing is skipped until ``timeout_seconds`` have
passed, so a dead provider does not add latency to every resolution.
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised instead of calling a platform whose circuit is open"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Circuit breaker {name} is OPEN")


class CircuitBreaker:
    """
    Closed -> open after ``failure_threshold`` consecutive failures.
    Open -> half-open once ``timeout_seconds`` elapsed; one success closes it,
    one failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        if self.state == CircuitState.OPEN:
            if self._clock() - (self.opened_at or 0) < self.timeout_seconds:
                raise CircuitOpenError(self.name)
            logger.info("Circuit breaker half-open, probing", name=self.name)
            self.state = CircuitState.HALF_OPEN

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _on_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            logger.info("Circuit breaker closed after recovery", name=self.name)
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None

    def _on_failure(self) -> None:
        self.failure_count += 1

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning(
                    "Circuit breaker opened",
                    name=self.name,
                    failure_count=self.failure_count,
                )
            self.state = CircuitState.OPEN
            self.opened_at = self._clock()

    def get_state(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
        }
