from __future__ import annotations

import hashlib
import time
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

from ethosync.logging import get_logger

logger = get_logger(__name__)


# KEYS[1] bucket hash; ARGV: now, tokens per second, capacity, cost.
# Returns {allowed, tokens_left, seconds_until_cost_available}.
_BUCKET_LUA = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local per_second = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', bucket, 'level', 'updated')
local level = tonumber(state[1]) or capacity
local updated = tonumber(state[2]) or now

level = math.min(capacity, level + math.max(0, now - updated) * per_second)

local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / per_second)
end

redis.call('HSET', bucket, 'level', level, 'updated', now)
redis.call('EXPIRE', bucket, math.max(1, math.ceil(capacity / per_second)))
return {allowed, tostring(level), wait}
"""


class RedisCache:
    """Redis-backed token buckets shared by every API worker.

    Keys are hashed so tenant ids never appear in Redis key names.
    """

    KEY_PREFIX = "ethosync:bucket:"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(_BUCKET_LUA)

    def verify_connection(self) -> None:
        """Ping synchronously at startup; raises when Redis is unreachable."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()
        logger.info("redis_connected")

    def bucket_key(self, key: str) -> str:
        return self.KEY_PREFIX + hashlib.sha256(key.encode()).hexdigest()

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
            keys=[self.bucket_key(key)],
            args=[time.time(), limit / window_seconds, limit, max(1, cost)],
        )
        granted = int(allowed) == 1
        if not return_remaining:
            return granted
        return granted, max(0, int(float(level))), int(wait or 0)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
