from typing import Any, Awaitable, TypeVar

import structlog
from redis.asyncio import Redis
from redis.commands.core import AsyncScript
from redis.exceptions import RedisError

from ratekeeper.core.errors import StoreUnavailable
from ratekeeper.core.storage.base import AtomicScript, StorageBackend

logger = structlog.get_logger()

T = TypeVar("T")

# INCR refuses non-integer values, so anything else under the key is
# dropped first and the counter starts over.
_INCR_SCRIPT = """
local key = KEYS[1]
local ttl = tonumber(ARGV[1])

local discarded = 0
local kind = redis.call('TYPE', key).ok
if kind ~= 'none' then
    local valid = false
    if kind == 'string' then
        valid = string.match(redis.call('GET', key), '^%-?%d+$') ~= nil
    end
    if not valid then
        redis.call('DEL', key)
        discarded = 1
    end
end

local count = redis.call('INCR', key)
if count == 1 then
    redis.call('EXPIRE', key, ttl)
end
return {count, discarded}
"""

_GLOB_SPECIAL = set("*?[]\\")


def _escape_glob(value: str) -> str:
    return "".join(f"\\{ch}" if ch in _GLOB_SPECIAL else ch for ch in value)


class RedisBackend(StorageBackend):
    """
    Redis implementation of StorageBackend.

    The client should be created with decode_responses=True. Every
    RedisError (timeouts, refused connections, script errors) is re-raised
    as StoreUnavailable.
    """

    def __init__(self, redis: Redis):
        self._redis = redis
        self._scripts: dict[str, AsyncScript] = {}
        self._incr = redis.register_script(_INCR_SCRIPT)

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except RedisError as exc:
            raise StoreUnavailable(f"redis call failed: {exc}") from exc

    async def type_of(self, key: str) -> str:
        kind = await self._call(self._redis.type(key))
        return kind.decode() if isinstance(kind, bytes) else kind

    async def get(self, key: str) -> str | None:
        return await self._call(self._redis.get(key))

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._call(self._redis.set(key, value, ex=ttl))

    async def incr(self, key: str, ttl: int) -> int:
        count, discarded = await self._call(self._incr(keys=[key], args=[ttl]))
        if int(discarded):
            logger.warning("malformed_state_reset", key=key)
        return int(count)

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._call(self._redis.hgetall(key))

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._call(self._redis.delete(*keys))

    async def expire(self, key: str, seconds: int) -> None:
        await self._call(self._redis.expire(key, seconds))

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        async def collect() -> list[str]:
            return [
                key
                async for key in self._redis.scan_iter(match=f"{_escape_glob(prefix)}*")
            ]

        return await self._call(collect())

    async def zcard(self, key: str) -> int:
        return await self._call(self._redis.zcard(key))

    async def zrange(self, key: str, start: int, stop: int) -> list[tuple[str, float]]:
        results = await self._call(self._redis.zrange(key, start, stop, withscores=True))
        return [
            (m.decode() if isinstance(m, bytes) else m, float(score))
            for m, score in results
        ]

    async def eval_script(
        self,
        script: AtomicScript,
        keys: list[str],
        args: list[str | int | float],
    ) -> list[Any]:
        # register_script caches the SHA and falls back to EVAL on NOSCRIPT
        registered = self._scripts.get(script.name)
        if registered is None:
            registered = self._redis.register_script(script.lua)
            self._scripts[script.name] = registered
        return await self._call(registered(keys=keys, args=args))
