from __future__ import annotations

import hashlib
import time
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

KEY_PREFIX = "salonauth"

# KEYS[1] bucket hash; ARGV: now, refill per second, capacity, cost.
# Returns {allowed, tokens left, seconds until cost is affordable}.
_CONSUME_TOKENS = """
local bucket = redis.call('HGET', KEYS[1], 'level')
local stamp = redis.call('HGET', KEYS[1], 'stamp')
local now, rate, capacity, cost = tonumber(ARGV[1]), tonumber(ARGV[2]), tonumber(ARGV[3]), tonumber(ARGV[4])

local level = capacity
if bucket and stamp then
  level = math.min(capacity, tonumber(bucket) + math.max(0, now - tonumber(stamp)) * rate)
end

local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / rate)
end

redis.call('HSET', KEYS[1], 'level', level, 'stamp', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(capacity / rate)))
return {allowed, tostring(level), wait}
"""


def _bucket_key(key: str) -> str:
    # rate keys embed client IPs and emails; hash them into a fixed keyspace
    return f"{KEY_PREFIX}:bucket:{hashlib.sha256(key.encode()).hexdigest()}"


def _denylist_key(jti: str) -> str:
    return f"{KEY_PREFIX}:revoked-access:{jti}"


class RedisCache:
    """Shared state for the API workers: rate-limit buckets and revoked access tokens."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(_CONSUME_TOKENS)

    def verify_connection(self) -> None:
        # sync ping so the async pool is not tied to a throwaway event loop
        with Redis.from_url(self.redis_url) as probe:
            probe.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        allowed, level, wait = await self._consume(
            keys=[_bucket_key(key)],
            args=[time.time(), limit / window_seconds, limit, max(1, cost)],
        )
        if not return_remaining:
            return allowed == 1
        return (allowed == 1, max(0, int(float(level))), int(wait))

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(_denylist_key(jti), "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return await self.client.exists(_denylist_key(jti)) > 0

    async def close(self) -> None:
        await self.client.aclose()
