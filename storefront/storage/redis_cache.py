from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis

# Fixed window: the first hit starts the window; returns {allowed, remaining, reset_after}
_FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])

local count = redis.call('INCRBY', key, cost)
local ttl = redis.call('TTL', key)
if ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end

if count > limit then
  return {0, 0, ttl}
end
return {1, limit - count, ttl}
"""


def _rate_key(key: str) -> str:
    # Hash so client-supplied parts (IP, identifier) cannot collide on delimiters
    return f"storefront:rate:{hashlib.sha256(key.encode()).hexdigest()}"


def _unpack_window(result) -> Tuple[bool, int, int]:
    allowed, remaining, reset_after = result
    return bool(int(allowed)), max(0, int(remaining)), max(0, int(reset_after))


class RedisCache:
    """Redis-backed rate limiter shared by every API worker."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(_FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Ping with a short-lived sync client so the async pool stays unbound."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        result = await self._fixed_window(
            keys=[_rate_key(key)], args=[window_seconds, limit, max(1, cost)]
        )
        return _unpack_window(result)

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Same interface as RedisCache over a blocking client.

    Used in test mode where each test may run on a fresh event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(_FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        result = self._fixed_window(
            keys=[_rate_key(key)], args=[window_seconds, limit, max(1, cost)]
        )
        return _unpack_window(result)

    async def close(self) -> None:
        self.client.close()
