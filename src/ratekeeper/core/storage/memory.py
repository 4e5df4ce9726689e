"""
In-memory storage backend for testing and development.

This backend stores all data in Python dictionaries, making it:
- Fast: No network calls, no serialization
- Simple: No Redis server to run
- Isolated: Each instance is independent

Atomic scripts run their Python twin while holding a lock, which gives the
same all-or-nothing visibility Redis gives Lua scripts, but only within a
single process.

WARNING: Not suitable for production!
- No persistence (data lost on restart)
- No distribution (single process only)

Use RedisBackend for production deployments.
"""

import threading
import time
from typing import Any, Callable

import structlog

from ratekeeper.core.storage.base import AtomicScript, StorageBackend, is_integer_text

logger = structlog.get_logger()


class MemoryStore:
    """
    Synchronous data structures behind InMemoryBackend.

    Implements the LocalStore protocol with Redis-like semantics:
    strings, hashes and sorted sets, with TTL checked on access.
    Callers are responsible for locking.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

        # Key-value storage: key -> string value
        self._strings: dict[str, str] = {}

        # Hashes: key -> field dict
        self._hashes: dict[str, dict[str, str]] = {}

        # Sorted sets: key -> {member: score}
        self._sorted_sets: dict[str, dict[str, float]] = {}

        # Expiration times: key -> unix timestamp when key expires
        self._expiry: dict[str, float] = {}

    def _is_expired(self, key: str) -> bool:
        if key in self._expiry:
            return self._clock() > self._expiry[key]
        return False

    def _cleanup_if_expired(self, key: str) -> None:
        if self._is_expired(key):
            self.delete(key)

    def type_of(self, key: str) -> str:
        self._cleanup_if_expired(key)
        if key in self._strings:
            return "string"
        if key in self._hashes:
            return "hash"
        if key in self._sorted_sets:
            return "zset"
        return "none"

    # =========================================================================
    # Strings and Hashes
    # =========================================================================

    def get(self, key: str) -> str | None:
        self._cleanup_if_expired(key)
        return self._strings.get(key)

    def set(self, key: str, value: str, ttl: int) -> None:
        self.delete(key)
        self._strings[key] = value
        self._expiry[key] = self._clock() + ttl

    def incr(self, key: str) -> int:
        """Increment like Redis INCR; raises ValueError on non-integers."""
        self._cleanup_if_expired(key)
        count = int(self._strings.get(key, "0")) + 1
        self._strings[key] = str(count)
        return count

    def hgetall(self, key: str) -> dict[str, str]:
        self._cleanup_if_expired(key)
        return dict(self._hashes.get(key, {}))

    def hset(self, key: str, mapping: dict[str, str]) -> None:
        self._cleanup_if_expired(key)
        self._hashes.setdefault(key, {}).update(mapping)

    # =========================================================================
    # Sorted Set Operations
    # =========================================================================

    def zadd(self, key: str, score: float, member: str) -> None:
        self._cleanup_if_expired(key)
        self._sorted_sets.setdefault(key, {})[member] = score

    def zremrange_before(self, key: str, cutoff: float) -> int:
        """Remove members scored strictly below `cutoff`."""
        self._cleanup_if_expired(key)
        members = self._sorted_sets.get(key)
        if not members:
            return 0

        stale = [member for member, score in members.items() if score < cutoff]
        for member in stale:
            del members[member]
        if not members:
            self.delete(key)
        return len(stale)

    def zcard(self, key: str) -> int:
        self._cleanup_if_expired(key)
        return len(self._sorted_sets.get(key, {}))

    def zrange(self, key: str, start: int, stop: int) -> list[tuple[str, float]]:
        """Follows Redis convention: stop is inclusive, negatives count from the end."""
        self._cleanup_if_expired(key)
        items = sorted(
            self._sorted_sets.get(key, {}).items(),
            key=lambda item: (item[1], item[0]),
        )
        if not items:
            return []

        length = len(items)
        if start < 0:
            start = max(0, length + start)
        if stop < 0:
            stop = length + stop

        # Redis stop is inclusive, Python slice is exclusive
        return items[start:stop + 1]

    # =========================================================================
    # Key Management
    # =========================================================================

    def expire(self, key: str, seconds: int) -> None:
        # Only set expiry if key exists
        if self.type_of(key) != "none":
            self._expiry[key] = self._clock() + seconds

    def delete(self, key: str) -> None:
        self._strings.pop(key, None)
        self._hashes.pop(key, None)
        self._sorted_sets.pop(key, None)
        self._expiry.pop(key, None)

    def keys(self) -> list[str]:
        """Get all non-expired keys."""
        all_keys = set(self._strings) | set(self._hashes) | set(self._sorted_sets)
        return sorted(k for k in all_keys if not self._is_expired(k))

    def clear(self) -> None:
        self._strings.clear()
        self._hashes.clear()
        self._sorted_sets.clear()
        self._expiry.clear()


class InMemoryBackend(StorageBackend):
    """
    In-memory implementation of StorageBackend.

    Every operation takes the same lock, so scripts are atomic with respect
    to each other and to plain reads, including across threads.

    Example:
        >>> backend = InMemoryBackend()
        >>> await backend.set("key", "42", ttl=60)
        >>> await backend.get("key")
        '42'
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._store = MemoryStore(clock)
        self._lock = threading.Lock()

    async def type_of(self, key: str) -> str:
        with self._lock:
            return self._store.type_of(key)

    async def get(self, key: str) -> str | None:
        with self._lock:
            return self._store.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._store.set(key, value, ttl)

    async def incr(self, key: str, ttl: int) -> int:
        with self._lock:
            kind = self._store.type_of(key)
            if kind != "none" and not is_integer_text(self._store.get(key)):
                self._store.delete(key)
                logger.warning("malformed_state_reset", key=key)

            count = self._store.incr(key)
            if count == 1:
                self._store.expire(key, ttl)
            return count

    async def hgetall(self, key: str) -> dict[str, str]:
        with self._lock:
            return self._store.hgetall(key)

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._store.delete(key)

    async def expire(self, key: str, seconds: int) -> None:
        with self._lock:
            self._store.expire(key, seconds)

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        with self._lock:
            return [key for key in self._store.keys() if key.startswith(prefix)]

    async def zcard(self, key: str) -> int:
        with self._lock:
            return self._store.zcard(key)

    async def zrange(self, key: str, start: int, stop: int) -> list[tuple[str, float]]:
        with self._lock:
            return self._store.zrange(key, start, stop)

    async def eval_script(
        self,
        script: AtomicScript,
        keys: list[str],
        args: list[str | int | float],
    ) -> list[Any]:
        # Redis hands ARGV to Lua as strings; the twin sees the same
        with self._lock:
            return script.local(self._store, list(keys), [str(arg) for arg in args])

    # =========================================================================
    # Utility Methods (not part of interface, useful for testing)
    # =========================================================================

    def clear(self) -> None:
        """Clear all stored data."""
        with self._lock:
            self._store.clear()

    def keys(self) -> list[str]:
        """Get all non-expired keys."""
        with self._lock:
            return self._store.keys()
