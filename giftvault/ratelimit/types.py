from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from ..errors import TooManyRequests


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds


class RateLimiter(Protocol):
    async def check(self, key: str, limit: int,
                    window_seconds: float) -> RateLimitResult: ...

    async def status(self, key: str, limit: int) -> RateLimitResult: ...

    async def reset(self, key: str) -> None: ...


def result_for(count: int, limit: int, reset_at: float) -> RateLimitResult:
    return RateLimitResult(
        allowed=count <= limit,
        limit=limit,
        remaining=max(0, limit - count),
        reset_at=reset_at,
    )


def enforce(key: str, result: RateLimitResult) -> RateLimitResult:
    if not result.allowed:
        raise TooManyRequests(
            f"Rate limit exceeded for {key.split(':', 1)[0]}",
            limit=result.limit,
            reset_at=result.reset_at,
        )
    return result


def headers(result: RateLimitResult,
            now: Optional[float] = None) -> Dict[str, str]:
    h = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(math.ceil(result.reset_at))),
    }
    if not result.allowed and now is not None:
        h["Retry-After"] = str(max(1, int(math.ceil(result.reset_at - now))))
    return h
