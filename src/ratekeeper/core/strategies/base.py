"""
Abstract base classes for rate limiting strategies.

This module defines the contract that all rate limiting algorithms must follow.
Using the Strategy Pattern allows swapping algorithms at runtime without
changing the client code.
"""

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

import structlog

from ratekeeper.core.errors import ConfigurationError
from ratekeeper.core.storage.base import StorageBackend, is_integer_text

logger = structlog.get_logger()

Clock = Callable[[], float]

# Float refill math can land a hair above an exact integer
_CEIL_TOLERANCE = 1e-9


def ceil_tolerant(value: float) -> int:
    """Round up, ignoring float noise just above an integer."""
    return max(0, math.ceil(value - _CEIL_TOLERANCE))


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_quota(limit: int, window_seconds: int) -> None:
    """Reject quotas that are not positive whole numbers."""
    if not _is_integer(limit):
        raise ConfigurationError(f"limit must be an integer, got {limit!r}")
    if not _is_integer(window_seconds):
        raise ConfigurationError(f"window_seconds must be an integer, got {window_seconds!r}")
    if limit <= 0:
        raise ConfigurationError(f"limit must be positive, got {limit}")
    if window_seconds <= 0:
        raise ConfigurationError(f"window_seconds must be positive, got {window_seconds}")


@dataclass(frozen=True)
class RateLimitResult:
    """
    Immutable outcome of a single strategy check.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Requests still available, never negative.
        reset_at: Unix timestamp when the quota is replenished.
        retry_after: Seconds until a retry can succeed. Present only when
            the request was denied.
    """

    allowed: bool
    remaining: int
    reset_at: float
    retry_after: float | None = None

    def __post_init__(self) -> None:
        if self.remaining < 0:
            raise ValueError(f"remaining must not be negative, got {self.remaining}")
        if self.allowed and self.retry_after is not None:
            raise ValueError("retry_after must be absent on an allowed result")
        if not self.allowed and (self.retry_after is None or self.retry_after < 0):
            raise ValueError("a denied result needs a non-negative retry_after")


class RateLimitStrategy(ABC):
    """
    Abstract base class for rate limiting algorithms.

    Each strategy owns its slice of the key space in the store:
    `{prefix}:{tag}:{<key>}`, optionally followed by `:<window_id>`. The braces
    are a Redis Cluster hash tag, so every sub-key of one caller maps to the
    same slot and multi-key scripts stay legal.

    Subclasses set `tag` and implement `check` and `status`.
    """

    tag: str

    def __init__(
        self,
        backend: StorageBackend,
        clock: Clock = time.time,
        key_prefix: str = "ratekeeper",
    ):
        self.backend = backend
        self.clock = clock
        self.key_prefix = key_prefix

    def _redis_key(self, key: str, window_id: int | None = None) -> str:
        base = f"{self.key_prefix}:{self.tag}:{{{key}}}"
        if window_id is None:
            return base
        return f"{base}:{window_id}"

    def _log_discarded(self, key: str) -> None:
        logger.warning("malformed_state_reset", key=key, strategy=self.tag)

    async def _window_keys(self, key: str) -> dict[int, str]:
        """
        Find this key's per-window counters, keyed by window id.

        Costs a keyspace scan on Redis (see keys_with_prefix).
        """
        prefix = f"{self._redis_key(key)}:"
        found = {}
        for redis_key in await self.backend.keys_with_prefix(prefix):
            suffix = redis_key[len(prefix):]
            # Another caller's key may share our prefix; window ids are bare digits
            if suffix.isdigit():
                found[int(suffix)] = redis_key
        return found

    async def _window_counts(self, key: str) -> dict[str, str]:
        fields = {}
        for window_id, redis_key in sorted((await self._window_keys(key)).items()):
            # Foreign data reads as an unseen window, like check treats it
            if await self.backend.type_of(redis_key) != "string":
                continue
            count = await self.backend.get(redis_key)
            if is_integer_text(count):
                fields[f"window:{window_id}"] = count
        return fields

    @abstractmethod
    async def check(
        self,
        key: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """
        Check if a request should be allowed, consuming quota if it is.

        This method is called for every incoming request that needs
        rate limiting. It performs exactly one atomic round trip to the store.

        Args:
            key: Unique identifier for the rate limit bucket.
                 Examples: "user:123", "api_key:abc123"
            limit: Maximum number of requests allowed within the window.
            window_seconds: Duration of the time window in seconds.

        Raises:
            ConfigurationError: limit or window_seconds is not a positive integer.
            StoreUnavailable: the store could not be reached.
        """
        pass

    @abstractmethod
    async def status(self, key: str) -> dict[str, Any]:
        """
        Return the raw persisted fields for a key.

        Read-only: neither mutates state nor refreshes TTLs.
        """
        pass

    async def reset(self, key: str) -> None:
        """
        Delete all state this strategy keeps for a key.

        Idempotent: resetting an unknown key is not an error.
        """
        window_keys = await self._window_keys(key)
        await self.backend.delete(self._redis_key(key), *window_keys.values())
