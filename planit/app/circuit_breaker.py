"""Circuit breakers for the completion and place-search upstreams.

Each upstream client owns one breaker. After ``failure_threshold``
consecutive failures the breaker opens and calls fail fast with
``CircuitOpenError`` until ``cooldown_seconds`` have passed; the next call is
then let through as a trial. A successful trial closes the breaker, a failed
one opens it again.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from .metrics import circuit_breaker_rejected_total, circuit_breaker_state

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE = {CircuitState.CLOSED: 0, CircuitState.OPEN: 1, CircuitState.HALF_OPEN: 2}


@dataclass
class CircuitBreakerStats:
    total_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    consecutive_failures: int = 0
    times_opened: int = 0
    last_failure: str | None = None


class CircuitOpenError(Exception):
    """Raised instead of calling an upstream whose breaker is open."""


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        cooldown_seconds: float = 300.0,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.enabled = enabled
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._stats = CircuitBreakerStats()
        circuit_breaker_state.labels(circuit_name=name).set(0)

    @property
    def state(self) -> CircuitState:
        """Current state; an open breaker turns half-open once the cooldown has elapsed."""
        if self._state is CircuitState.OPEN and self.retry_after == 0.0:
            self._set_state(CircuitState.HALF_OPEN)
            logger.info("Upstream '%s' cooldown over, allowing a trial call", self.name)
        return self._state

    @property
    def retry_after(self) -> float:
        """Seconds until an open breaker admits a trial call (0 when not open)."""
        if self._state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self._opened_at + self.cooldown_seconds - self._clock())

    @property
    def stats(self) -> CircuitBreakerStats:
        return self._stats

    def _set_state(self, state: CircuitState) -> None:
        self._state = state
        circuit_breaker_state.labels(circuit_name=self.name).set(_STATE_GAUGE[state])

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._stats.times_opened += 1
        self._set_state(CircuitState.OPEN)
        logger.warning(
            "Upstream '%s' unavailable after %d consecutive failures (%s), pausing calls for %.0fs",
            self.name,
            self._stats.consecutive_failures,
            self._stats.last_failure,
            self.cooldown_seconds,
        )

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``func`` unless the breaker is open; its failures count toward opening."""
        if not self.enabled:
            return await func(*args, **kwargs)

        if self.state is CircuitState.OPEN:
            self._stats.rejected_calls += 1
            circuit_breaker_rejected_total.labels(circuit_name=self.name).inc()
            raise CircuitOpenError(
                f"Upstream '{self.name}' is unavailable, retrying in {self.retry_after:.0f}s"
            )

        self._stats.total_calls += 1
        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            self.record_failure(exc)
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        self._stats.consecutive_failures = 0
        if self._state is CircuitState.HALF_OPEN:
            self._set_state(CircuitState.CLOSED)
            logger.info("Upstream '%s' recovered", self.name)

    def record_failure(self, exc: BaseException | None = None) -> None:
        self._stats.failed_calls += 1
        self._stats.consecutive_failures += 1
        if exc is not None:
            self._stats.last_failure = type(exc).__name__
        if self._state is CircuitState.HALF_OPEN:
            self._open()
        elif (
            self._state is CircuitState.CLOSED
            and self._stats.consecutive_failures >= self.failure_threshold
        ):
            self._open()

    def reset(self) -> None:
        self._stats.consecutive_failures = 0
        self._set_state(CircuitState.CLOSED)
        logger.info("Upstream '%s' breaker reset", self.name)

    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerStats",
    "CircuitOpenError",
    "CircuitState",
]
