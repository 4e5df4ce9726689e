import uuid
from typing import Any

from ratekeeper.core.errors import MalformedState
from ratekeeper.core.storage.base import AtomicScript, LocalStore
from ratekeeper.core.strategies.base import RateLimitResult, RateLimitStrategy, validate_quota

# LUA SCRIPT LOGIC:
# 1. Remove timestamps older than (now - window)
# 2. Count remaining timestamps (current usage)
# 3. If count < limit: Add current timestamp, Allow.
# 4. Else: Deny.
# 5. Refresh TTL and report the oldest surviving timestamp.
_LUA_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local now = ARGV[3]
local window_start = ARGV[4]
local member = ARGV[5]

local discarded = 0
local kind = redis.call('TYPE', key).ok
if kind ~= 'none' and kind ~= 'zset' then
    redis.call('DEL', key)
    discarded = 1
end

-- 1. Cleanup old requests (exclusive: an entry exactly window old survives)
redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. window_start)

-- 2. Check current usage
local current_count = redis.call('ZCARD', key)

local allowed = 0
if current_count < limit then
    -- 3. Allow: members carry a unique suffix so equal timestamps don't collide
    redis.call('ZADD', key, now, member)
    current_count = current_count + 1
    allowed = 1
end

redis.call('EXPIRE', key, window)

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
return {allowed, current_count, discarded, oldest[2] or false}
"""


def _sliding_log_local(store: LocalStore, keys: list[str], args: list[str]) -> list[Any]:
    key = keys[0]
    limit, window = int(args[0]), int(args[1])
    now, window_start = float(args[2]), float(args[3])
    member = args[4]

    discarded = 0
    if store.type_of(key) not in ("none", "zset"):
        store.delete(key)
        discarded = 1

    store.zremrange_before(key, window_start)
    current_count = store.zcard(key)

    allowed = 0
    if current_count < limit:
        store.zadd(key, now, member)
        current_count += 1
        allowed = 1

    store.expire(key, window)

    oldest = store.zrange(key, 0, 0)
    return [allowed, current_count, discarded, repr(oldest[0][1]) if oldest else None]


SLIDING_WINDOW_LOG_SCRIPT = AtomicScript(
    name="sliding_window_log",
    lua=_LUA_SCRIPT,
    local=_sliding_log_local,
)


class SlidingWindowStrategy(RateLimitStrategy):
    """
    Sliding Window Log algorithm.
    Precise but more expensive than Token Bucket (stores one entry per request).
    Uses a sorted set to track timestamps of recent requests.
    """

    tag = "swl"

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        validate_quota(limit, window_seconds)
        now = self.clock()
        member = f"{now!r}:{uuid.uuid4().hex}"

        # Atomic execution
        # Returns: [is_allowed (1/0), entries in window, discarded (1/0), oldest score or None]
        reply = await self.backend.eval_script(
            SLIDING_WINDOW_LOG_SCRIPT,
            keys=[self._redis_key(key)],
            args=[limit, window_seconds, now, now - window_seconds, member],
        )
        try:
            is_allowed = bool(int(reply[0]))
            count = int(reply[1])
            discarded = bool(int(reply[2]))
            oldest = float(reply[3]) if len(reply) > 3 and reply[3] is not None else None
        except (IndexError, TypeError, ValueError) as exc:
            raise MalformedState(f"unexpected sliding window reply: {reply!r}") from exc

        if discarded:
            self._log_discarded(key)

        # The window frees a slot when its oldest entry ages out
        reset_at = oldest + window_seconds if oldest is not None else now

        return RateLimitResult(
            allowed=is_allowed,
            remaining=max(0, limit - count) if is_allowed else 0,
            reset_at=reset_at,
            retry_after=None if is_allowed else max(0.0, reset_at - now),
        )

    async def status(self, key: str) -> dict[str, Any]:
        redis_key = self._redis_key(key)
        if await self.backend.type_of(redis_key) != "zset":
            return {}

        entries = await self.backend.zcard(redis_key)
        if not entries:
            return {}

        oldest = await self.backend.zrange(redis_key, 0, 0)
        newest = await self.backend.zrange(redis_key, -1, -1)
        return {
            "entries": entries,
            "oldest": oldest[0][1] if oldest else None,
            "newest": newest[0][1] if newest else None,
        }

    async def reset(self, key: str) -> None:
        await self.backend.delete(self._redis_key(key))
