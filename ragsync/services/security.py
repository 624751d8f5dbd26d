from __future__ import annotations

import time
from collections import defaultdict, deque


def client_key(forwarded_for: str | None, remote_host: str | None) -> str:
    """First hop of X-Forwarded-For, else the socket peer."""
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return (remote_host or "").strip() or "unknown"


class InMemoryRateLimiter:
    def __init__(self, window_seconds: int, per_key_limit: int, burst_limit: int, max_keys: int = 10000):
        self.window_seconds = max(1, int(window_seconds))
        self.per_key_limit = max(1, int(per_key_limit))
        self.burst_limit = max(1, int(burst_limit))
        self.max_keys = max(1, int(max_keys))
        self._events: dict[str, deque[float]] = defaultdict(deque)

    def _prune(self, events: deque[float], now: float) -> None:
        threshold = now - self.window_seconds
        while events and events[0] <= threshold:
            events.popleft()

    def _within_burst(self, events: deque[float], now: float) -> bool:
        recent = 0
        for ts in reversed(events):
            if ts <= now - 1.0:
                break
            recent += 1
            if recent >= self.burst_limit:
                return False
        return True

    def allow(self, key: str, now: float | None = None) -> bool:
        key = (key or "unknown").strip() or "unknown"
        now = time.monotonic() if now is None else now
        events = self._events[key]
        self._prune(events, now)

        if len(events) >= self.per_key_limit or not self._within_burst(events, now):
            return False

        events.append(now)
        if len(self._events) > self.max_keys:
            # oldest keys first, dicts keep insertion order
            for stale in list(self._events.keys())[: len(self._events) - self.max_keys]:
                self._events.pop(stale, None)
        return True

    def reset(self) -> None:
        self._events.clear()
