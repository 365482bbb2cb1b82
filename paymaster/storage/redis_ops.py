from __future__ import annotations

from typing import Any

from redis.asyncio.client import Redis

from .helpers import serialize_for_redis as _serialize_for_redis
from .helpers import to_epoch_ms as _to_epoch_ms

SET_IF_ABSENT_SCRIPT = """
local previous = redis.call('get', KEYS[1])
if previous then
  return previous
end
if tonumber(ARGV[2]) > 0 then
  redis.call('set', KEYS[1], ARGV[1], 'PX', ARGV[2])
else
  redis.call('set', KEYS[1], ARGV[1])
end
return false
"""

SWAP_IF_STALE_SCRIPT = """
local previous = redis.call('get', KEYS[1])
if previous and (tonumber(ARGV[1]) - tonumber(previous)) < tonumber(ARGV[2]) then
  return previous
end
redis.call('set', KEYS[1], ARGV[1], 'PX', ARGV[3])
return false
"""


class RedisStorageOps:
    """Cache primitives backed by Redis.

    ``set_if_absent`` and ``swap_if_stale`` run as Lua scripts so the read and
    the conditional write happen in one server-side step.
    """

    async def get(self, key: str) -> Any | None:
        redis_client = self._require_redis()
        return await redis_client.get(key)

    async def set(self, key: str, value: Any, *, ttl_ms: int | None = None) -> None:
        redis_client = self._require_redis()
        if ttl_ms is not None and ttl_ms > 0:
            await redis_client.set(key, _serialize_for_redis(value), px=ttl_ms)
            return
        await redis_client.set(key, _serialize_for_redis(value))

    async def set_if_absent(self, key: str, value: Any, *, ttl_ms: int | None = None) -> Any | None:
        redis_client = self._require_redis()
        previous = await redis_client.eval(
            SET_IF_ABSENT_SCRIPT,
            1,
            key,
            _serialize_for_redis(value),
            str(max(0, ttl_ms or 0)),
        )
        return previous

    async def swap_if_stale(self, key: str, *, now_ms: int, window_ms: int) -> int | None:
        redis_client = self._require_redis()
        previous = await redis_client.eval(
            SWAP_IF_STALE_SCRIPT,
            1,
            key,
            str(now_ms),
            str(max(0, window_ms)),
            str(max(1, window_ms)),
        )
        if previous is None:
            return None
        return _to_epoch_ms(previous)

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
