# ratelimit/_redis.py
from __future__ import annotations
import time

import redis.asyncio as redis

from .types import RateLimitResult, enforce, result_for


def k_rl(key: str) -> str: return f"rl:{key}"


class RedisRateLimiter:
    """Fixed window shared across instances: INCR + PTTL in one
    transaction, PEXPIRE when the key was just created."""
    backend = "redis"

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def check(self, key: str, limit: int,
                    window_seconds: float) -> RateLimitResult:
        rk = k_rl(key)
        window_ms = int(window_seconds * 1000)
        pipe = self.r.pipeline(transaction=True)
        pipe.incr(rk)
        pipe.pttl(rk)
        count, ttl_ms = await pipe.execute()
        if ttl_ms is None or int(ttl_ms) < 0:
            # fresh window (or a key that lost its TTL)
            await self.r.pexpire(rk, window_ms)
            ttl_ms = window_ms
        reset_at = time.time() + int(ttl_ms) / 1000.0
        return enforce(key, result_for(int(count), limit, reset_at))

    async def status(self, key: str, limit: int) -> RateLimitResult:
        rk = k_rl(key)
        pipe = self.r.pipeline(transaction=True)
        pipe.get(rk)
        pipe.pttl(rk)
        raw, ttl_ms = await pipe.execute()
        now = time.time()
        if raw is None or ttl_ms is None or int(ttl_ms) < 0:
            return result_for(0, limit, now)
        return result_for(int(raw), limit, now + int(ttl_ms) / 1000.0)

    async def reset(self, key: str) -> None:
        await self.r.delete(k_rl(key))
