"""Unit tests for the Redis rate-limit backend with the Lua scripts stubbed out."""

from unittest.mock import AsyncMock

import pytest

from authcore.service.rate_limit import RateLimiter
from authcore.storage.redis_cache import RedisCache


@pytest.fixture
def cache():
    # from_url does not connect until the first command
    return RedisCache("redis://localhost:6379/15", socket_timeout=0.5)


class TestRedisCache:
    async def test_increment_window_passes_limit_and_ttl(self, cache):
        cache._fixed_window = AsyncMock(return_value=[1, 2])

        assert await cache.increment_window("rate:login:abc:0", 3600, 3) == (True, 2)
        cache._fixed_window.assert_awaited_once_with(
            keys=["rate:login:abc:0"], args=[3, 3600000]
        )

    async def test_increment_window_denied(self, cache):
        cache._fixed_window = AsyncMock(return_value=[0, 3])

        assert await cache.increment_window("k", 3600, 3) == (False, 3)

    async def test_append_to_log_converts_milliseconds(self, cache):
        cache._sliding_log = AsyncMock(return_value=[1, 1, 1700000000500])

        allowed, count, oldest = await cache.append_to_log(
            "k", 1700000000.5, 3600, 3, retention_seconds=86400
        )

        assert (allowed, count, oldest) == (True, 1, 1700000000.5)
        args = cache._sliding_log.await_args.kwargs["args"]
        assert args[0] == 1700000000500
        assert args[1] == 3600000
        assert args[4] == 86400000

    async def test_log_entries_returns_seconds(self, cache):
        cache.client.zrevrange = AsyncMock(return_value=[("a", 2000.0), ("b", 1000.0)])

        assert await cache.log_entries("k", 5) == [2.0, 1.0]
        cache.client.zrevrange.assert_awaited_once_with("k", 0, 4, withscores=True)

    async def test_limiter_uses_cache_as_backend(self, cache, clock):
        cache._fixed_window = AsyncMock(return_value=[0, 3])
        limiter = RateLimiter(cache, clock=clock)

        decision = await limiter.check_and_increment("alice", "login", 3600, 3)

        assert not decision.allowed
        assert decision.remaining == 0
