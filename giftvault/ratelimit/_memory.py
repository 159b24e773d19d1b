# ratelimit/_memory.py
from __future__ import annotations
import asyncio
import time
from typing import Dict, Tuple

from .types import RateLimitResult, enforce, result_for

# sweep expired windows every N checks
PURGE_EVERY = 1000


class MemoryRateLimiter:
    """Fixed window per key, process-local.

    One asyncio lock guards the table; rejected calls still count toward the
    window.
    """
    backend = "memory"

    def __init__(self, clock=time.time) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        # key -> (count, reset_at)
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._checks = 0

    async def check(self, key: str, limit: int,
                    window_seconds: float) -> RateLimitResult:
        now = self._clock()
        async with self._lock:
            self._checks += 1
            if self._checks % PURGE_EVERY == 0:
                self._purge(now)
            count, reset_at = self._windows.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_at)
        return enforce(key, result_for(count, limit, reset_at))

    async def status(self, key: str, limit: int) -> RateLimitResult:
        now = self._clock()
        async with self._lock:
            count, reset_at = self._windows.get(key, (0, now))
        if reset_at <= now:
            return result_for(0, limit, now)
        return result_for(count, limit, reset_at)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._windows.pop(key, None)

    def _purge(self, now: float) -> None:
        stale = [k for k, (_, r) in self._windows.items() if r <= now]
        for k in stale:
            del self._windows[k]
