from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from ragsync.core.config import settings

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitOpenError(RuntimeError):
    def __init__(self, upstream: str, retry_after_seconds: float) -> None:
        super().__init__(f"circuit open for upstream {upstream}")
        self.upstream = upstream
        self.retry_after_seconds = retry_after_seconds


@dataclass
class _CircuitState:
    consecutive_failures: int = 0
    open_until: float = 0.0


class CircuitBreakerRegistry:
    """Per-upstream breakers: open after N consecutive failures, half-open after the reset window."""

    def __init__(
        self,
        failure_threshold: int | None = None,
        reset_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = max(1, int(failure_threshold or settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD))
        self.reset_seconds = float(reset_seconds if reset_seconds is not None else settings.CIRCUIT_BREAKER_RESET_SECONDS)
        self._clock = clock
        self._lock = threading.RLock()
        self._states: dict[str, _CircuitState] = {}

    def _state(self, upstream: str) -> _CircuitState:
        return self._states.setdefault(upstream, _CircuitState())

    def is_open(self, upstream: str) -> bool:
        with self._lock:
            return self._state(upstream).open_until > self._clock()

    def record_success(self, upstream: str) -> None:
        with self._lock:
            state = self._state(upstream)
            state.consecutive_failures = 0
            state.open_until = 0.0

    def record_failure(self, upstream: str) -> None:
        with self._lock:
            state = self._state(upstream)
            state.consecutive_failures += 1
            if state.consecutive_failures >= self.failure_threshold:
                state.open_until = self._clock() + self.reset_seconds
                LOGGER.warning(
                    "circuit_opened",
                    extra={"upstream": upstream, "consecutive_failures": state.consecutive_failures},
                )

    def call(self, upstream: str, fn: Callable[[], T]) -> T:
        with self._lock:
            state = self._state(upstream)
            now = self._clock()
            if state.open_until > now:
                raise CircuitOpenError(upstream, state.open_until - now)
        try:
            result = fn()
        except Exception:
            self.record_failure(upstream)
            raise
        self.record_success(upstream)
        return result
