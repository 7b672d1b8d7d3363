from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
from redis import Redis

# KEYS[1] bucket; ARGV now, capacity, window seconds.
# Returns {allowed, tokens left, seconds until one token is back}.
_BUCKET_SCRIPT = """
local state = redis.call('HMGET', KEYS[1], 'level', 'at')
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local level = tonumber(state[1]) or capacity
local at = tonumber(state[2]) or now

level = math.min(capacity, level + math.max(0, now - at) * capacity / window)
local allowed = 0
if level >= 1 then
  level = level - 1
  allowed = 1
end
redis.call('HSET', KEYS[1], 'level', level, 'at', now)
redis.call('EXPIRE', KEYS[1], math.ceil(window))

local retry = 0
if allowed == 0 then
  retry = math.ceil((1 - level) * window / capacity)
end
return {allowed, math.floor(level), retry}
"""


@dataclass
class BucketState:
    allowed: bool
    remaining: int
    retry_after: int


class RedisRateLimiter:
    """Token buckets for the auth endpoints, shared across app instances.

    Buckets are named ``<route>:<subject>`` (for example
    ``login:<email fingerprint>``); the subject is hashed before it reaches
    Redis so client-controlled text never becomes part of a key.
    """

    key_prefix = "tokenward:bucket:"

    def __init__(self, client: Any, *, redis_url: Optional[str] = None):
        self.client = client
        self.redis_url = redis_url
        self._take: Callable = client.register_script(_BUCKET_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = 5.0) -> "RedisRateLimiter":
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, redis_url=redis_url)

    def verify_connection(self) -> None:
        # Sync ping keeps the async client off whatever loop runs the check
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    def bucket_key(self, bucket: str) -> str:
        route, _, subject = bucket.partition(":")
        digest = hashlib.sha256(subject.encode()).hexdigest()
        return f"{self.key_prefix}{route}:{digest}"

    async def take(self, bucket: str, capacity: int, window_seconds: int) -> BucketState:
        allowed, remaining, retry_after = await self._take(
            keys=[self.bucket_key(bucket)],
            args=[time.time(), capacity, window_seconds],
        )
        return BucketState(
            allowed=bool(int(allowed)),
            remaining=max(0, int(remaining)),
            retry_after=int(retry_after or 0),
        )

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["BucketState", "RedisRateLimiter"]
