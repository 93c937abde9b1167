"""
Coalescing Cache

In-memory, key-addressed, TTL-bound cache with at most one concurrent fetch
per key.

Features:
    - get_or_fetch(key, producer, ttl): serve live entries, attach concurrent
      callers to the in-flight fetch, otherwise run the producer once
    - Failures are never cached; every waiter of a failed fetch sees the
      same exception and the next access retries
    - Per-call TTL, so each query shape chooses its own lifetime
    - Lazy eviction of expired entries on access, plus a sweep of every
      expired entry whenever a store pushes the size past max_entries
      (time-bucketed keys are never looked up again once their bucket ends)
    - Hit/miss/coalesced/error counters

Usage:
    cache = CoalescingCache()
    key = CoalescingCache.bucket_key("observation:binance:BTCUSDT", time.time(), 600)
    obs = await cache.get_or_fetch(key, lambda: adapter.fetch_observation("BTCUSDT"), ttl=600)

Notes:
    The in-flight task is the only synchronization device. A caller that is
    cancelled or times out stops waiting, but the shared fetch keeps running
    for the remaining waiters and still populates the cache on success.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from core.logging import get_logger
from core.utils.time import time_bucket


logger = get_logger(__name__)

Producer = Callable[[], Awaitable[Any]]


@dataclass
class CacheEntry:
    """A settled value and its expiry on the cache clock."""

    key: str
    value: Any
    expires_at: float

    def is_live(self, now: float) -> bool:
        return now < self.expires_at


class CoalescingCache:
    """
    TTL cache that coalesces concurrent fetches of the same key.

    Attributes:
        clock: Zero-argument callable returning seconds (monotonic by default;
               tests inject a fake clock)
        max_entries: Size above which a store sweeps expired entries

    Example:
        >>> cache = CoalescingCache()
        >>> value = await cache.get_or_fetch("basis:BTCUSDT", fetch_basis, ttl=600)
        >>> cache.metrics()["hits"]
        0
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None, max_entries: int = 1000):
        self.clock = clock or time.monotonic
        self.max_entries = max_entries
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._hits = 0
        self._misses = 0
        self._coalesced = 0
        self._errors = 0

    # ============================================
    # Coalesced Access
    # ============================================

    async def get_or_fetch(self, key: str, producer: Producer, ttl: float) -> Any:
        """
        Return the cached value for key, fetching it at most once concurrently.

        Args:
            key: Cache key
            producer: Zero-argument coroutine function producing the value
            ttl: Lifetime in seconds of the value once produced

        Returns:
            The live cached value, the in-flight fetch's result, or a fresh one

        Raises:
            Exception: Whatever the producer raised (shared by all waiters)
        """
        value = self._lookup(key)
        if value is not _MISSING:
            self._hits += 1
            return value

        task = self._inflight.get(key)
        if task is not None:
            self._coalesced += 1
            logger.debug(f"Cache coalesced: {key}")
        else:
            self._misses += 1
            task = asyncio.ensure_future(self._fetch(key, producer, ttl))
            task.add_done_callback(_retrieve_exception)
            self._inflight[key] = task

        return await asyncio.shield(task)

    async def _fetch(self, key: str, producer: Producer, ttl: float) -> Any:
        try:
            value = await producer()
        except Exception as e:
            self._errors += 1
            logger.debug(f"Cache fetch failed for {key}: {e}")
            raise
        else:
            self._store(key, value, ttl)
            return value
        finally:
            self._inflight.pop(key, None)

    # ============================================
    # Direct Access
    # ============================================

    def get(self, key: str) -> Optional[Any]:
        """Live value for key, or None."""
        value = self._lookup(key)
        if value is _MISSING:
            self._misses += 1
            return None
        self._hits += 1
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        """Store a value directly (no coalescing)."""
        self._store(key, value, ttl)

    def invalidate(self, key: str) -> bool:
        """Drop a settled entry. In-flight fetches are left alone."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        """Evict every expired entry; returns how many were removed."""
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if not entry.is_live(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _store(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = CacheEntry(key=key, value=value, expires_at=self.clock() + ttl)
        if len(self._entries) > self.max_entries:
            removed = self.cleanup()
            logger.debug(f"Cache sweep evicted {removed} expired entries ({len(self._entries)} left)")

    def _lookup(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        if not entry.is_live(self.clock()):
            del self._entries[key]
            return _MISSING
        return entry.value

    # ============================================
    # Helpers
    # ============================================

    @staticmethod
    def bucket_key(prefix: str, timestamp: float, window_seconds: float) -> str:
        """
        Build a key that changes once per fixed time window.

        Example:
            >>> CoalescingCache.bucket_key("observation:binance:BTCUSDT", 1704110999, 600)
            'observation:binance:BTCUSDT:2840184'
        """
        return f"{prefix}:{time_bucket(timestamp, window_seconds)}"

    def metrics(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "coalesced": self._coalesced,
            "errors": self._errors,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            "entries": len(self._entries),
            "in_flight": len(self._inflight),
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self._lookup(key) is not _MISSING


_MISSING = object()


def _retrieve_exception(task: asyncio.Task) -> None:
    # Marks a failure as retrieved when every waiter was cancelled before it settled
    if not task.cancelled():
        task.exception()
