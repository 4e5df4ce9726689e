import math
from typing import Any

from ratekeeper.core.errors import MalformedState
from ratekeeper.core.storage.base import AtomicScript, LocalStore
from ratekeeper.core.strategies.base import (
    RateLimitResult,
    RateLimitStrategy,
    ceil_tolerant,
    validate_quota,
)

_LUA_SCRIPT = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

-- Anything that isn't a well-formed bucket is treated as a new key
local discarded = 0
local tokens = nil
local last_refill = nil
local kind = redis.call('TYPE', key).ok
if kind == 'hash' then
    local data = redis.call('HMGET', key, 'tokens', 'last_refill')
    tokens = tonumber(data[1])
    last_refill = tonumber(data[2])
end
if kind ~= 'none' and (tokens == nil or last_refill == nil) then
    redis.call('DEL', key)
    discarded = 1
    tokens = nil
end

if tokens == nil then
    tokens = capacity
    last_refill = now
end

-- Lazy refill: calculate tokens gained since last visit
local delta = math.max(0, now - last_refill)
tokens = math.min(capacity, tokens + delta * rate)
last_refill = now

local allowed = 0
if tokens >= 1.0 then
    allowed = 1
    tokens = tokens - 1.0
end

local encoded = string.format('%.17g', tokens)
redis.call('HSET', key, 'tokens', encoded, 'last_refill', string.format('%.17g', last_refill))
redis.call('EXPIRE', key, ttl)

-- Lua numbers come back from Redis truncated to integers, so send text
return {allowed, encoded, discarded}
"""


def _encode(value: float) -> str:
    # Same text Lua's string.format('%.17g') produces
    return "%.17g" % value


def _decode_bucket(fields: dict[str, str]) -> tuple[float, float] | None:
    if not fields:
        return None
    try:
        return float(fields["tokens"]), float(fields["last_refill"])
    except (KeyError, ValueError) as exc:
        raise MalformedState(f"unreadable token bucket: {fields!r}") from exc


def _token_bucket_local(store: LocalStore, keys: list[str], args: list[str]) -> list[Any]:
    key = keys[0]
    capacity, rate, now = float(args[0]), float(args[1]), float(args[2])
    ttl = int(args[3])

    state = None
    discarded = 0
    kind = store.type_of(key)
    try:
        if kind not in ("none", "hash"):
            raise MalformedState(f"token bucket stored as {kind}")
        state = _decode_bucket(store.hgetall(key))
    except MalformedState:
        store.delete(key)
        discarded = 1

    tokens, last_refill = state if state is not None else (capacity, now)

    delta = max(0.0, now - last_refill)
    tokens = min(capacity, tokens + delta * rate)

    allowed = 0
    if tokens >= 1.0:
        allowed = 1
        tokens -= 1.0

    encoded = _encode(tokens)
    store.hset(key, {"tokens": encoded, "last_refill": _encode(now)})
    store.expire(key, ttl)
    return [allowed, encoded, discarded]


TOKEN_BUCKET_SCRIPT = AtomicScript(
    name="token_bucket",
    lua=_LUA_SCRIPT,
    local=_token_bucket_local,
)


class TokenBucketStrategy(RateLimitStrategy):
    """
    Lazy Token Bucket implementation.
    Tokens are refilled only when the key is accessed.

    The bucket holds `limit` tokens and refills at `limit / window_seconds`
    tokens per second. Bursts up to the full capacity are allowed.
    """

    tag = "tb"

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        validate_quota(limit, window_seconds)
        now = self.clock()
        rate = limit / window_seconds

        # Returns: [is_allowed (1/0), remaining_tokens (float as text), discarded (1/0)]
        reply = await self.backend.eval_script(
            TOKEN_BUCKET_SCRIPT,
            keys=[self._redis_key(key)],
            args=[limit, rate, now, window_seconds],
        )
        try:
            is_allowed = bool(int(reply[0]))
            tokens = float(reply[1])
            discarded = len(reply) > 2 and bool(int(reply[2]))
        except (IndexError, TypeError, ValueError) as exc:
            raise MalformedState(f"unexpected token bucket reply: {reply!r}") from exc

        if discarded:
            self._log_discarded(key)

        retry_after = None
        if not is_allowed:
            retry_after = float(ceil_tolerant(1 / rate))

        return RateLimitResult(
            allowed=is_allowed,
            remaining=max(0, math.floor(tokens)),
            reset_at=now + ceil_tolerant((limit - tokens) / rate),
            retry_after=retry_after,
        )

    async def status(self, key: str) -> dict[str, Any]:
        redis_key = self._redis_key(key)
        if await self.backend.type_of(redis_key) != "hash":
            return {}

        fields = await self.backend.hgetall(redis_key)
        try:
            _decode_bucket(fields)
        except MalformedState:
            # The next check starts this bucket over
            return {}
        return fields

    async def reset(self, key: str) -> None:
        await self.backend.delete(self._redis_key(key))
