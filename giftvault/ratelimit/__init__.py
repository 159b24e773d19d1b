# ratelimit/__init__.py
import hashlib
import os
from typing import Optional

from .. import config
from .types import RateLimiter, RateLimitResult, headers, enforce

# 'memory' | 'redis'
BACKEND = os.getenv("RATELIMIT_BACKEND", "memory").lower()

MINUTE = 60
HOUR = 3600


# ---- keys
def api_key_scope(api_key: str) -> str:
    digest = hashlib.sha256(api_key.encode()).hexdigest()[:32]
    return f"api_key:{digest}"


def invitation_scope(company_id: str, user_id: str) -> str:
    return f"invitation:{company_id}:{user_id}"


def resend_scope(membership_id: str) -> str:
    return f"resend:{membership_id}"


# ---- guards
async def check_api_key(limiter: RateLimiter, api_key: str,
                        limit: int = config.API_RATE_LIMIT_PER_MINUTE):
    return await limiter.check(api_key_scope(api_key), limit, MINUTE)


async def check_invitation(limiter: RateLimiter, company_id: str,
                           user_id: str,
                           limit: int = config.INVITATION_LIMIT_PER_HOUR):
    return await limiter.check(
        invitation_scope(company_id, user_id), limit, HOUR
    )


async def check_resend(limiter: RateLimiter, membership_id: str,
                       limit: int = config.RESEND_LIMIT_PER_HOUR):
    return await limiter.check(resend_scope(membership_id), limit, HOUR)


def new_limiter(*, backend: Optional[str] = None, r=None) -> RateLimiter:
    backend = (backend or BACKEND).lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError("RedisRateLimiter requires a redis client")
        from ._redis import RedisRateLimiter
        return RedisRateLimiter(r)
    from ._memory import MemoryRateLimiter
    return MemoryRateLimiter()


__all__ = [
    "RateLimiter", "RateLimitResult", "headers", "enforce", "new_limiter",
    "api_key_scope", "invitation_scope", "resend_scope",
    "check_api_key", "check_invitation", "check_resend",
    "BACKEND", "MINUTE", "HOUR",
]
