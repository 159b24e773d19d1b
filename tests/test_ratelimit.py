import asyncio

import pytest
import pytest_asyncio
from fakeredis import aioredis as fakeaioredis

from giftvault.errors import TooManyRequests
from giftvault.ratelimit import (
    RateLimitResult, api_key_scope, check_invitation, check_resend, headers,
    new_limiter,
)
from giftvault.ratelimit._memory import MemoryRateLimiter


class FakeClock:
    def __init__(self, t=1_000.0):
        self.t = t

    def __call__(self):
        return self.t


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def redis_client():
    r = fakeaioredis.FakeRedis(decode_responses=True)
    yield r
    await r.aclose()


@pytest.mark.asyncio
async def test_memory_window_allows_limit_then_rejects(clock):
    rl = MemoryRateLimiter(clock=clock)

    results = [await rl.check("k", 3, 60) for _ in range(3)]
    assert [r.remaining for r in results] == [2, 1, 0]
    assert all(r.allowed for r in results)
    assert results[0].reset_at == 1_060.0

    with pytest.raises(TooManyRequests) as exc:
        await rl.check("k", 3, 60)
    assert exc.value.limit == 3
    assert exc.value.reset_at == 1_060.0

    clock.t += 60
    fresh = await rl.check("k", 3, 60)
    assert fresh.allowed and fresh.remaining == 2


@pytest.mark.asyncio
async def test_memory_keys_are_independent(clock):
    rl = MemoryRateLimiter(clock=clock)
    await rl.check("a", 1, 60)
    with pytest.raises(TooManyRequests):
        await rl.check("a", 1, 60)
    assert (await rl.check("b", 1, 60)).allowed


@pytest.mark.asyncio
async def test_memory_rejected_calls_still_count(clock):
    rl = MemoryRateLimiter(clock=clock)
    await rl.check("k", 1, 60)
    for _ in range(3):
        with pytest.raises(TooManyRequests):
            await rl.check("k", 1, 60)
    st = await rl.status("k", 1)
    assert st.allowed is False
    assert st.remaining == 0


@pytest.mark.asyncio
async def test_memory_concurrent_checks_share_one_window(clock):
    rl = MemoryRateLimiter(clock=clock)

    results = await asyncio.gather(
        *[rl.check("k", 5, 60) for _ in range(10)], return_exceptions=True
    )

    assert sum(isinstance(r, RateLimitResult) for r in results) == 5
    assert sum(isinstance(r, TooManyRequests) for r in results) == 5


@pytest.mark.asyncio
async def test_memory_check_waits_for_the_lock_without_blocking(clock):
    rl = MemoryRateLimiter(clock=clock)

    async with rl._lock:
        pending = asyncio.create_task(rl.check("k", 1, 60))
        await asyncio.sleep(0)
        assert not pending.done()

    assert (await pending).allowed


@pytest.mark.asyncio
async def test_memory_status_and_reset(clock):
    rl = MemoryRateLimiter(clock=clock)
    st = await rl.status("k", 5)
    assert st.remaining == 5 and st.allowed

    await rl.check("k", 5, 60)
    await rl.check("k", 5, 60)
    assert (await rl.status("k", 5)).remaining == 3

    await rl.reset("k")
    assert (await rl.status("k", 5)).remaining == 5

    await rl.check("k", 5, 60)
    clock.t += 61
    assert (await rl.status("k", 5)).remaining == 5


@pytest.mark.asyncio
async def test_redis_window_allows_limit_then_rejects(redis_client):
    rl = new_limiter(backend="redis", r=redis_client)

    for expected in (2, 1, 0):
        assert (await rl.check("k", 3, 60)).remaining == expected
    with pytest.raises(TooManyRequests):
        await rl.check("k", 3, 60)

    ttl = await redis_client.pttl("rl:k")
    assert 0 < ttl <= 60_000
    st = await rl.status("k", 3)
    assert st.remaining == 0
    assert st.allowed is False


@pytest.mark.asyncio
async def test_redis_expired_window_starts_over(redis_client):
    rl = new_limiter(backend="redis", r=redis_client)
    await rl.check("k", 1, 60)
    with pytest.raises(TooManyRequests):
        await rl.check("k", 1, 60)

    # simulate the window running out
    await redis_client.delete("rl:k")
    assert (await rl.check("k", 1, 60)).allowed


@pytest.mark.asyncio
async def test_redis_key_without_ttl_gets_one(redis_client):
    rl = new_limiter(backend="redis", r=redis_client)
    await redis_client.set("rl:k", 1)

    res = await rl.check("k", 5, 60)

    assert res.remaining == 3
    assert await redis_client.pttl("rl:k") > 0


@pytest.mark.asyncio
async def test_redis_reset(redis_client):
    rl = new_limiter(backend="redis", r=redis_client)
    await rl.check("k", 2, 60)
    await rl.reset("k")
    assert (await rl.status("k", 2)).remaining == 2
    assert await redis_client.exists("rl:k") == 0


@pytest.mark.asyncio
async def test_scoped_guards(clock):
    rl = MemoryRateLimiter(clock=clock)

    for _ in range(10):
        await check_invitation(rl, "co_1", "user_1")
    with pytest.raises(TooManyRequests):
        await check_invitation(rl, "co_1", "user_1")
    # another inviter has a separate budget
    await check_invitation(rl, "co_1", "user_2")

    for _ in range(3):
        await check_resend(rl, "mem_1")
    with pytest.raises(TooManyRequests):
        await check_resend(rl, "mem_1")


def test_api_key_scope_hides_the_key():
    scope = api_key_scope("sk_live_abc123")
    assert scope.startswith("api_key:")
    assert "sk_live_abc123" not in scope
    assert scope == api_key_scope("sk_live_abc123")


def test_new_limiter_defaults_to_memory():
    assert new_limiter(backend="memory").backend == "memory"
    with pytest.raises(RuntimeError):
        new_limiter(backend="redis")


def test_headers():
    ok = RateLimitResult(allowed=True, limit=100, remaining=42,
                         reset_at=1_060.2)
    assert headers(ok) == {
        "X-RateLimit-Limit": "100",
        "X-RateLimit-Remaining": "42",
        "X-RateLimit-Reset": "1061",
    }

    denied = RateLimitResult(allowed=False, limit=10, remaining=0,
                             reset_at=1_060.2)
    h = headers(denied, now=1_000.0)
    assert h["Retry-After"] == "61"
    assert h["X-RateLimit-Remaining"] == "0"
