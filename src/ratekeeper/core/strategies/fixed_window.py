import math
from typing import Any

from ratekeeper.core.strategies.base import RateLimitResult, RateLimitStrategy, validate_quota


class FixedWindowStrategy(RateLimitStrategy):
    """
    Fixed Window Counter algorithm.

    Time is cut into windows of `window_seconds` aligned to the epoch, and
    each window gets its own counter. Cheapest algorithm (one INCR per
    request), at the cost of a boundary burst: up to 2 * limit requests can
    pass in a short span straddling two windows.
    """

    tag = "fw"

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        validate_quota(limit, window_seconds)
        now = self.clock()
        window_id = math.floor(now / window_seconds)

        # Atomic INCR, TTL set on the first hit of the window
        count = await self.backend.incr(self._redis_key(key, window_id), ttl=window_seconds)

        reset_at = float((window_id + 1) * window_seconds)
        is_allowed = count <= limit

        return RateLimitResult(
            allowed=is_allowed,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            retry_after=None if is_allowed else max(0.0, reset_at - now),
        )

    async def status(self, key: str) -> dict[str, Any]:
        return await self._window_counts(key)
