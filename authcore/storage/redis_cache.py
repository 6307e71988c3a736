from __future__ import annotations

import uuid
from typing import List, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate-limit windows and attempt logs."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: compare, then INCR with expiry set on the first hit. Runs
    # atomically so concurrent callers cannot both pass the last free slot.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local ttl_ms = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
if current >= limit then
  return {0, current}
end
current = redis.call('INCR', key)
if current == 1 then
  redis.call('PEXPIRE', key, ttl_ms)
end
return {1, current}
"""

    # Sliding log over a sorted set scored by millisecond timestamps. Entries
    # older than the retention period are pruned; only entries inside the
    # window count toward the limit.
    _SLIDING_LOG_SCRIPT = """
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local retention_ms = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - retention_ms)
local floor = '(' .. tostring(now_ms - window_ms)
local count = redis.call('ZCOUNT', key, floor, '+inf')
local oldest = redis.call('ZRANGEBYSCORE', key, floor, '+inf', 'WITHSCORES', 'LIMIT', 0, 1)
local oldest_ms = now_ms
if oldest[2] ~= nil then
  oldest_ms = tonumber(oldest[2])
end
if count >= limit then
  return {0, count, oldest_ms}
end
redis.call('ZADD', key, now_ms, member)
redis.call('PEXPIRE', key, retention_ms)
return {1, count + 1, oldest_ms}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)
        self._sliding_log = self.client.register_script(self._SLIDING_LOG_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def increment_window(
        self, key: str, window_seconds: int, max_attempts: int
    ) -> Tuple[bool, int]:
        allowed, count = await self._fixed_window(
            keys=[key], args=[max_attempts, int(window_seconds * 1000)]
        )
        return bool(int(allowed)), int(count)

    async def append_to_log(
        self,
        key: str,
        now: float,
        window_seconds: int,
        max_attempts: int,
        *,
        retention_seconds: int,
    ) -> Tuple[bool, int, float]:
        now_ms = int(now * 1000)
        member = f"{now_ms}:{uuid.uuid4().hex[:8]}"
        allowed, count, oldest_ms = await self._sliding_log(
            keys=[key],
            args=[
                now_ms,
                int(window_seconds * 1000),
                max_attempts,
                member,
                int(max(retention_seconds, window_seconds) * 1000),
            ],
        )
        return bool(int(allowed)), int(count), int(oldest_ms) / 1000.0

    async def log_entries(self, key: str, limit: int) -> List[float]:
        entries = await self.client.zrevrange(key, 0, max(limit, 1) - 1, withscores=True)
        return [float(score) / 1000.0 for _member, score in entries]

    async def close(self) -> None:
        await self.client.aclose()

