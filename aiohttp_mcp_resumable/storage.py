"""
Key-value storage backing the session store and the event log.

Both backends expose the same async interface: point reads and writes with
optional per-key expiry, an atomic counter, and a key-ordered range scan that
starts directly after a given key.
"""

import bisect
import heapq
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis

__all__ = ["InMemoryKeyValueStore", "KeyValueStore", "RedisKeyValueStore"]

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Number of keys fetched per round trip during a scan
SCAN_PAGE_SIZE = 100


class KeyValueStore(ABC):
    """Interface of the storage collaborator."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value stored at ``key`` or None if absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float | None = None, only_if_exists: bool = False) -> bool:
        """
        Store ``value`` at ``key``.

        Args:
            key: The key to write
            value: A JSON-serializable value
            ttl: Optional time-to-live in seconds
            only_if_exists: Only overwrite an existing key, never create one

        Returns:
            True if the value was written
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete ``key``. Deleting an absent key is a no-op."""

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every scannable key starting with ``prefix`` and return how many were removed."""

    @abstractmethod
    async def increment(self, key: str, ttl: float | None = None) -> int:
        """Atomically increment the counter at ``key`` and return the new value."""

    @abstractmethod
    def scan(
        self, prefix: str, start_after: str | None = None, limit: int | None = None
    ) -> AsyncIterator[tuple[str, Any]]:
        """Yield ``(key, value)`` pairs under ``prefix`` in ascending key order, strictly after ``start_after``."""

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class InMemoryKeyValueStore(KeyValueStore):
    """
    Process-local store for development and tests.

    Keys are kept in a sorted list so scans start with a binary search instead of
    walking the whole keyspace. Counters live apart from regular keys and are not
    visible to scans, matching the Redis backend.

    Expiring keys are also queued by deadline. Every write reaps the ones that
    are due, so keys nobody reads again do not pile up.
    """

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, _Entry] = {}
        self._keys: list[str] = []
        self._counters: dict[str, _Entry] = {}
        # (expires_at, is_counter, key), may hold stale deadlines of rewritten keys
        self._deadlines: list[tuple[float, bool, str]] = []

    def _expires_at(self, ttl: float | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    def _remove(self, key: str) -> None:
        if self._data.pop(key, None) is None:
            return
        index = bisect.bisect_left(self._keys, key)
        if index < len(self._keys) and self._keys[index] == key:
            del self._keys[index]

    def _schedule(self, expires_at: float | None, key: str, is_counter: bool = False) -> None:
        if expires_at is not None:
            heapq.heappush(self._deadlines, (expires_at, is_counter, key))

    def _reap(self) -> int:
        """Drop every key whose deadline has passed."""
        now = self._clock()
        reaped = 0
        while self._deadlines and self._deadlines[0][0] <= now:
            _, is_counter, key = heapq.heappop(self._deadlines)
            entries = self._counters if is_counter else self._data
            entry = entries.get(key)
            # Rewritten keys carry a later deadline, or none
            if entry is None or not entry.is_expired(now):
                continue
            if is_counter:
                del self._counters[key]
            else:
                self._remove(key)
            reaped += 1
        return reaped

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._remove(key)
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        entry = self._live(key)
        return None if entry is None else entry.value

    async def set(self, key: str, value: Any, ttl: float | None = None, only_if_exists: bool = False) -> bool:
        self._reap()
        if only_if_exists and self._live(key) is None:
            return False
        if key not in self._data:
            bisect.insort(self._keys, key)
        entry = _Entry(value, self._expires_at(ttl))
        self._data[key] = entry
        self._schedule(entry.expires_at, key)
        return True

    async def delete(self, key: str) -> None:
        self._remove(key)
        self._counters.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        start = bisect.bisect_left(self._keys, prefix)
        end = start
        while end < len(self._keys) and self._keys[end].startswith(prefix):
            end += 1
        doomed = self._keys[start:end]
        del self._keys[start:end]
        for key in doomed:
            self._data.pop(key, None)
        return len(doomed)

    async def increment(self, key: str, ttl: float | None = None) -> int:
        self._reap()
        entry = self._counters.get(key)
        if entry is None or entry.is_expired(self._clock()):
            entry = _Entry(0)
            self._counters[key] = entry
        entry.value += 1
        if ttl is not None:
            entry.expires_at = self._expires_at(ttl)
            self._schedule(entry.expires_at, key, is_counter=True)
        return int(entry.value)

    async def scan(
        self, prefix: str, start_after: str | None = None, limit: int | None = None
    ) -> AsyncIterator[tuple[str, Any]]:
        position = start_after if start_after is not None and start_after >= prefix else None
        emitted = 0
        while limit is None or emitted < limit:
            # Re-locate on every step so writes between yields never invalidate the cursor
            if position is None:
                index = bisect.bisect_left(self._keys, prefix)
            else:
                index = bisect.bisect_right(self._keys, position)
            if index >= len(self._keys) or not self._keys[index].startswith(prefix):
                return
            key = self._keys[index]
            position = key
            entry = self._live(key)
            if entry is None:
                continue
            emitted += 1
            yield key, entry.value


class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store.

    - Values are JSON strings at ``{prefix}:{key}``
    - Scannable keys are indexed in a sorted set at ``{prefix}:index`` with score 0,
      so ``ZRANGEBYLEX`` gives ordered range scans starting at any key
    - Expired values drop out of the index lazily when a scan meets them
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "mcp",
        client: Redis | None = None,
    ) -> None:
        self._prefix = prefix.rstrip(":")
        self._redis = client if client is not None else Redis.from_url(url, decode_responses=True)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def _index_key(self) -> str:
        return f"{self._prefix}:index"

    @staticmethod
    def _ttl_ms(ttl: float | None) -> int | None:
        return None if ttl is None else max(1, int(ttl * 1000))

    async def get(self, key: str) -> Any | None:
        raw = await self._redis.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: float | None = None, only_if_exists: bool = False) -> bool:
        written = await self._redis.set(self._key(key), json.dumps(value), px=self._ttl_ms(ttl), xx=only_if_exists)
        if not written:
            return False
        if not only_if_exists:
            await self._redis.zadd(self._index_key(), {key: 0})
        return True

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))
        await self._redis.zrem(self._index_key(), key)

    async def delete_prefix(self, prefix: str) -> int:
        removed = 0
        while True:
            members = await self._redis.zrangebylex(
                self._index_key(), f"[{prefix}", f"[{prefix}\uffff", start=0, num=SCAN_PAGE_SIZE
            )
            if not members:
                return removed
            await self._redis.delete(*(self._key(member) for member in members))
            await self._redis.zrem(self._index_key(), *members)
            removed += len(members)

    async def increment(self, key: str, ttl: float | None = None) -> int:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(self._key(key))
            if ttl is not None:
                pipe.pexpire(self._key(key), self._ttl_ms(ttl))
            results = await pipe.execute()
        return int(results[0])

    async def scan(
        self, prefix: str, start_after: str | None = None, limit: int | None = None
    ) -> AsyncIterator[tuple[str, Any]]:
        lower = f"({start_after}" if start_after is not None and start_after >= prefix else f"[{prefix}"
        upper = f"[{prefix}\uffff"
        emitted = 0
        while limit is None or emitted < limit:
            members = await self._redis.zrangebylex(self._index_key(), lower, upper, start=0, num=SCAN_PAGE_SIZE)
            if not members:
                return
            for member in members:
                value = await self.get(member)
                if value is None:
                    # Expired by Redis, drop it from the index
                    await self._redis.zrem(self._index_key(), member)
                    logger.debug("Dropped expired key %s from index", member)
                    continue
                emitted += 1
                yield member, value
                if limit is not None and emitted >= limit:
                    return
            lower = f"({members[-1]}"

    async def close(self) -> None:
        await self._redis.aclose()
