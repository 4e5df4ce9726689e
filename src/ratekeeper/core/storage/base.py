"""
Abstract contract for rate limit state storage.

Strategies never talk to Redis directly. They depend on this contract,
which offers:
- Key-value state with TTL (get/set, incr with first-write expiry)
- Sorted set reads (used by the sliding window log)
- Atomic scripts: a read-modify-write transaction executed as one
  indivisible unit, so concurrent callers only ever observe the state
  before or after it, never in between.

An AtomicScript carries two renditions of the same transaction: Lua source
for Redis and a Python twin run by the in-memory backend under a lock.
Both receive the same stringified arguments and return the same reply shape.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Protocol

# What Redis INCR accepts, and what the Lua scripts match with '^%-?%d+$'
_INTEGER_TEXT = re.compile(r"-?[0-9]+")


def is_integer_text(value: str | None) -> bool:
    return value is not None and _INTEGER_TEXT.fullmatch(value) is not None


class LocalStore(Protocol):
    """
    Synchronous primitives available to the Python twin of a script.

    They mirror the Redis commands the Lua scripts call, and are only ever
    invoked while the in-memory backend holds its lock.
    """

    def type_of(self, key: str) -> str: ...

    def get(self, key: str) -> str | None: ...

    def incr(self, key: str) -> int: ...

    def hgetall(self, key: str) -> dict[str, str]: ...

    def hset(self, key: str, mapping: dict[str, str]) -> None: ...

    def zadd(self, key: str, score: float, member: str) -> None: ...

    def zremrange_before(self, key: str, cutoff: float) -> int: ...

    def zcard(self, key: str) -> int: ...

    def zrange(self, key: str, start: int, stop: int) -> list[tuple[str, float]]: ...

    def expire(self, key: str, seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...


@dataclass(frozen=True)
class AtomicScript:
    """
    A store-side transaction.

    Attributes:
        name: Identifier used to cache the registered script.
        lua: Source executed by Redis (EVALSHA, loaded on first use).
        local: Python twin executed by InMemoryBackend.
    """

    name: str
    lua: str
    local: Callable[[LocalStore, list[str], list[str]], list[Any]]


class StorageBackend(ABC):
    """
    Abstract base class for rate limit state storage.

    Available implementations:
    - InMemoryBackend: for testing and development (single process)
    - RedisBackend: for production (distributed, shared by every instance)

    Failures talking to the store surface as StoreUnavailable.

    Example:
        >>> backend = InMemoryBackend()  # for testing
        >>> strategy = TokenBucketStrategy(backend)

        >>> backend = RedisBackend(redis_client)  # for production
        >>> strategy = TokenBucketStrategy(backend)
    """

    # =========================================================================
    # Key-Value Operations
    # =========================================================================

    @abstractmethod
    async def type_of(self, key: str) -> str:
        """
        Redis type name of the value under `key`.

        Returns:
            "string", "hash", "zset", or "none" if the key doesn't exist.
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """
        Retrieve a string value by key.

        Returns:
            The stored value, or None if the key doesn't exist or expired.
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        """
        Store a string value that auto-deletes after `ttl` seconds.

        Example:
            >>> await backend.set("ratekeeper:fw:{user:1}:28333", "3", ttl=60)
        """
        pass

    @abstractmethod
    async def incr(self, key: str, ttl: int) -> int:
        """
        Atomically increment an integer counter.

        The TTL is applied only when the post-increment value is 1, so a
        counter expires `ttl` seconds after its first write. A value that is
        not an integer is discarded (and logged as malformed_state_reset)
        and counting restarts from zero.

        Returns:
            The counter value after the increment.
        """
        pass

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]:
        """Return every field of a hash, or {} if the key doesn't exist."""
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        """
        Delete keys. No error if a key doesn't exist.

        Example:
            >>> await backend.delete("ratekeeper:tb:{user:123}")
        """
        pass

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> None:
        """Set a timeout on an existing key."""
        pass

    @abstractmethod
    async def keys_with_prefix(self, prefix: str) -> list[str]:
        """
        List live keys starting with `prefix`.

        Used by status inspection and reset to find window counters,
        whose names embed a window id the caller doesn't know.

        On Redis this is SCAN MATCH, which walks the whole keyspace: the
        cost grows with the total number of keys, not with the matches.
        Keep it off the per-request path.
        """
        pass

    # =========================================================================
    # Sorted Set Operations (used by Sliding Window Log)
    # =========================================================================

    @abstractmethod
    async def zcard(self, key: str) -> int:
        """Count members in a sorted set, 0 if the key doesn't exist."""
        pass

    @abstractmethod
    async def zrange(
        self,
        key: str,
        start: int,
        stop: int,
    ) -> list[tuple[str, float]]:
        """
        Get (member, score) pairs by index range, sorted by score ascending.

        Args:
            key: The sorted set key.
            start: Start index (0-based, inclusive).
            stop: Stop index (inclusive, use -1 for last element).

        Example:
            >>> # Get the oldest request timestamp
            >>> oldest = await backend.zrange("ratekeeper:swl:{user:123}", 0, 0)
            >>> if oldest:
            ...     oldest_timestamp = oldest[0][1]
        """
        pass

    # =========================================================================
    # Atomic Transactions
    # =========================================================================

    @abstractmethod
    async def eval_script(
        self,
        script: AtomicScript,
        keys: list[str],
        args: list[str | int | float],
    ) -> list[Any]:
        """
        Run a script as one atomic transaction.

        Args:
            script: The transaction to run.
            keys: Store keys the script touches (KEYS in Lua).
            args: Scalar arguments (ARGV in Lua), passed as strings.

        Returns:
            The script's reply list.
        """
        pass
