"""
Bounded TTL + LRU cache.

Two instances back the pipeline: the raw-fetch cache (keyed by URL) and
the entity cache (keyed by entity id). Expired entries are evicted when
read; the least recently used entry is evicted when a write would exceed
capacity. Every operation holds the instance lock, so fetch workers can
share one cache.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    stored_at: float


class TTLCache(Generic[T]):
    """Thread-safe cache with per-entry TTL and LRU eviction."""

    def __init__(
        self,
        max_size: int = 100,
        ttl: float = 300.0,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_size: Maximum number of live entries (must be >= 1)
            ttl:      Seconds an entry stays fresh; ``0`` or less disables expiry
            name:     Label used in log lines
            clock:    Time source, injectable for tests
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._entries: "OrderedDict[Hashable, CacheEntry[T]]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _is_expired(self, entry: CacheEntry[T], now: float) -> bool:
        return self.ttl > 0 and (now - entry.stored_at) > self.ttl

    def get(self, key: Hashable) -> Optional[T]:
        """Return the cached value, or None on a miss (absent or expired)."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._is_expired(entry, self._clock()):
                del self._entries[key]
                self._misses += 1
                logger.debug(f"[CACHE] {self.name}: expired {key}")
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def peek(self, key: Hashable) -> Optional[T]:
        """Like ``get`` but leaves recency and hit counters untouched."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._is_expired(entry, self._clock()):
                return None
            return entry.value

    def set(self, key: Hashable, value: T) -> None:
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = CacheEntry(value=value, stored_at=self._clock())
            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"[CACHE] {self.name}: evicted LRU entry {evicted}")

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Drop every entry and reset hit/miss counters."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def purge_expired(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            stale = [k for k, e in self._entries.items() if self._is_expired(e, now)]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug(f"[CACHE] {self.name}: purged {len(stale)} expired entries")
        return len(stale)

    def keys(self) -> List[Hashable]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries.keys())

    def values(self) -> List[T]:
        with self._lock:
            now = self._clock()
            return [e.value for e in self._entries.values() if not self._is_expired(e, now)]

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def hit_rate(self) -> float:
        with self._lock:
            total = self._hits + self._misses
            return self._hits / total if total else 0.0

    def __contains__(self, key: Hashable) -> bool:
        return self.peek(key) is not None

    def __len__(self) -> int:
        return self.size

    def stats(self) -> Dict[str, float]:
        with self._lock:
            total = self._hits + self._misses
            return {
                'size': len(self._entries),
                'max_size': self.max_size,
                'hits': self._hits,
                'misses': self._misses,
                'evictions': self._evictions,
                'hit_rate': self._hits / total if total else 0.0,
            }
