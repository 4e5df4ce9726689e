import math
from typing import Any

from ratekeeper.core.errors import MalformedState
from ratekeeper.core.storage.base import AtomicScript, LocalStore, is_integer_text
from ratekeeper.core.strategies.base import (
    RateLimitResult,
    RateLimitStrategy,
    ceil_tolerant,
    validate_quota,
)

_LUA_SCRIPT = """
local current_key = KEYS[1]
local previous_key = KEYS[2]
local limit = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
local elapsed_fraction = tonumber(ARGV[3])

-- Read a counter, discarding anything that isn't a whole number
local discarded = 0
local function read_counter(key)
    local kind = redis.call('TYPE', key).ok
    if kind == 'none' then
        return 0
    end
    if kind == 'string' then
        local raw = redis.call('GET', key)
        if string.match(raw, '^%-?%d+$') then
            return tonumber(raw)
        end
    end
    redis.call('DEL', key)
    discarded = 1
    return 0
end

local current = read_counter(current_key)
local previous = read_counter(previous_key)

local estimated = previous * (1 - elapsed_fraction) + current

local allowed = 0
if estimated < limit then
    redis.call('INCR', current_key)
    redis.call('EXPIRE', current_key, ttl)
    allowed = 1
end

return {allowed, previous, current, discarded}
"""


def _read_counter(store: LocalStore, key: str) -> int | None:
    """Counter value, 0 for a missing key, None if garbage was deleted."""
    kind = store.type_of(key)
    if kind == "none":
        return 0
    if kind == "string":
        value = store.get(key)
        if is_integer_text(value):
            return int(value)
    store.delete(key)
    return None


def _sliding_counter_local(store: LocalStore, keys: list[str], args: list[str]) -> list[Any]:
    current_key, previous_key = keys
    limit, ttl = int(args[0]), int(args[1])
    elapsed_fraction = float(args[2])

    current = _read_counter(store, current_key)
    previous = _read_counter(store, previous_key)
    discarded = int(current is None or previous is None)
    current, previous = current or 0, previous or 0

    estimated = previous * (1 - elapsed_fraction) + current

    allowed = 0
    if estimated < limit:
        store.incr(current_key)
        store.expire(current_key, ttl)
        allowed = 1

    return [allowed, previous, current, discarded]


SLIDING_WINDOW_COUNTER_SCRIPT = AtomicScript(
    name="sliding_window_counter",
    lua=_LUA_SCRIPT,
    local=_sliding_counter_local,
)


class SlidingWindowCounterStrategy(RateLimitStrategy):
    """
    Sliding Window Counter algorithm.

    Approximates the sliding log with two fixed-window counters: the
    previous window's count is weighted by how much of it still overlaps
    the sliding window. Memory is constant per key, but the estimate
    assumes the previous window's requests were spread uniformly.
    """

    tag = "swc"

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        validate_quota(limit, window_seconds)
        now = self.clock()
        window_id = math.floor(now / window_seconds)
        elapsed_fraction = (now % window_seconds) / window_seconds

        # Counters must outlive their window to be read back as "previous"
        reply = await self.backend.eval_script(
            SLIDING_WINDOW_COUNTER_SCRIPT,
            keys=[
                self._redis_key(key, window_id),
                self._redis_key(key, window_id - 1),
            ],
            args=[limit, 2 * window_seconds, elapsed_fraction],
        )
        try:
            is_allowed = bool(int(reply[0]))
            previous = int(reply[1])
            current = int(reply[2])
            discarded = len(reply) > 3 and bool(int(reply[3]))
        except (IndexError, TypeError, ValueError) as exc:
            raise MalformedState(f"unexpected sliding counter reply: {reply!r}") from exc

        if discarded:
            self._log_discarded(key)

        # Estimate as of the decision, before this request was counted
        estimated = previous * (1 - elapsed_fraction) + current

        reset_at = float((window_id + 1) * window_seconds)

        return RateLimitResult(
            allowed=is_allowed,
            remaining=max(0, limit - ceil_tolerant(estimated)),
            reset_at=reset_at,
            retry_after=None if is_allowed else max(0.0, reset_at - now),
        )

    async def status(self, key: str) -> dict[str, Any]:
        return await self._window_counts(key)
