# escrowguard/throttling.py
"""
Rate limiting and de-duplication as injected capabilities.

Nothing on the money path depends on these for correctness. The in-memory
versions lose state on restart and are per-process; a deployment with several
instances plugs in implementations backed by a shared TTL store instead.
"""
from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Protocol, Tuple


class RateLimiter(Protocol):
    def hit(self, key: str) -> bool:
        """Count one request for key; False when the caller is over its limit."""


class Deduplicator(Protocol):
    def seen(self, key: str) -> bool:
        """True if key was already seen within the window (and records it otherwise)."""


class InMemoryRateLimiter:
    def __init__(self, limit: int, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Tuple[float, int]] = {}

    def hit(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
            return count <= self.limit


class InMemoryDeduplicator:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._seen: Dict[str, float] = {}

    def seen(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            # opportunistic eviction keeps the map bounded by the TTL
            for stale in [k for k, at in self._seen.items() if now - at >= self.ttl_seconds]:
                del self._seen[stale]
            if key in self._seen:
                return True
            self._seen[key] = now
            return False
