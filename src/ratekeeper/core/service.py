"""
Rate limiter service: the single entry point callers use.

Resolves the algorithm, runs the check, and applies the failure policy.
Availability wins over enforcement: if the store fails, the request is
allowed (fail-open) and the failure is logged and counted.
Configuration mistakes always reach the caller.
"""

import math
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Mapping

import structlog

from ratekeeper.config import AlgorithmType
from ratekeeper.core.errors import ConfigurationError
from ratekeeper.core.metrics import RateLimitMetrics
from ratekeeper.core.strategies.base import (
    Clock,
    RateLimitResult,
    RateLimitStrategy,
    validate_quota,
)

logger = structlog.get_logger()


class RateLimitStatus(StrEnum):
    ALLOWED = "allowed"
    DENIED = "denied"


@dataclass(frozen=True)
class RateLimitResponse:
    """
    Immutable response from a rate limit check.

    Attributes:
        status: Whether the request is ALLOWED or DENIED.
        limit: Maximum number of requests allowed in the window.
        remaining: Number of requests remaining.
        reset_at: Unix timestamp when the limit resets.
        retry_after: Seconds until the client can retry (only if denied).
        algorithm: Algorithm that produced the decision.
        fail_open: True when the store failed and the request was let through.

    Example headers this maps to:
        X-RateLimit-Limit: {limit}
        X-RateLimit-Remaining: {remaining}
        X-RateLimit-Reset: {reset_at}
        Retry-After: {retry_after}  (only on 429 responses)
    """

    status: RateLimitStatus
    limit: int
    remaining: int
    reset_at: float
    algorithm: AlgorithmType
    retry_after: float | None = None
    fail_open: bool = False

    @property
    def is_allowed(self) -> bool:
        """Convenience property to check if request should proceed."""
        return self.status == RateLimitStatus.ALLOWED

    @classmethod
    def from_result(
        cls, result: RateLimitResult, limit: int, algorithm: AlgorithmType
    ) -> "RateLimitResponse":
        return cls(
            status=RateLimitStatus.ALLOWED if result.allowed else RateLimitStatus.DENIED,
            limit=limit,
            remaining=result.remaining,
            reset_at=result.reset_at,
            algorithm=algorithm,
            retry_after=result.retry_after,
        )

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(math.ceil(self.retry_after))
        return headers


class RateLimiterService:
    """
    Dispatches checks to the registered strategies.

    Args:
        strategies: Algorithm -> strategy mapping, built once at startup
            (see build_strategies).
        metrics: Outcome recorder; a private one is created if omitted.
        clock: Time source for fail-open responses.
    """

    def __init__(
        self,
        strategies: Mapping[AlgorithmType, RateLimitStrategy],
        metrics: RateLimitMetrics | None = None,
        clock: Clock = time.time,
    ):
        self._strategies = dict(strategies)
        self.metrics = metrics or RateLimitMetrics()
        self._clock = clock

    def _resolve(self, algorithm: AlgorithmType | str) -> tuple[AlgorithmType, RateLimitStrategy]:
        try:
            algorithm = AlgorithmType(algorithm)
        except ValueError:
            raise ConfigurationError(f"unknown algorithm: {algorithm!r}") from None

        strategy = self._strategies.get(algorithm)
        if strategy is None:
            raise ConfigurationError(f"algorithm not registered: {algorithm.value}")
        return algorithm, strategy

    async def check_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        algorithm: AlgorithmType | str = AlgorithmType.TOKEN_BUCKET,
    ) -> RateLimitResponse:
        """
        Decide whether a request for `key` may proceed.

        Raises:
            ConfigurationError: unknown algorithm or non-positive quota.
                Nothing else escapes; store failures fail open.
        """
        algorithm, strategy = self._resolve(algorithm)
        validate_quota(limit, window_seconds)

        started = time.perf_counter()
        try:
            result = await strategy.check(key, limit, window_seconds)
        except ConfigurationError:
            raise
        except Exception:
            logger.exception(
                "rate_limit_fail_open",
                key=key,
                algorithm=algorithm.value,
            )
            self.metrics.record_failure(algorithm.value)
            return RateLimitResponse(
                status=RateLimitStatus.ALLOWED,
                limit=limit,
                remaining=limit,
                reset_at=self._clock() + window_seconds,
                algorithm=algorithm,
                fail_open=True,
            )

        self.metrics.record(algorithm.value, result.allowed, time.perf_counter() - started)

        if not result.allowed:
            logger.warning(
                "rate_limit_denied",
                key=key,
                algorithm=algorithm.value,
                limit=limit,
                retry_after=result.retry_after,
            )

        return RateLimitResponse.from_result(result, limit, algorithm)

    async def get_status(self, key: str, algorithm: AlgorithmType | str) -> dict[str, Any]:
        """Read-only view of what the store holds for `key` under one algorithm."""
        algorithm, strategy = self._resolve(algorithm)
        fields = await strategy.status(key)
        return {"key": key, "algorithm": algorithm.value, **fields}

    async def reset(self, key: str) -> None:
        """Forget `key` under every algorithm. Safe to repeat."""
        for strategy in self._strategies.values():
            await strategy.reset(key)
        logger.info("rate_limit_reset", key=key)
