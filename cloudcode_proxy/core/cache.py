"""Bounded in-memory cache with LRU and TTL eviction.

Shared by the signature cache, the token and project caches, and the
session affinity map.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Generic, Iterator, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class BoundedTTLCache(Generic[K, V]):
    """LRU map bounded by entry count and, optionally, by entry age.

    Args:
        max_entries: Capacity; inserting beyond it evicts the least recently
            used entry. ``None`` means unbounded.
        ttl_seconds: Maximum entry age. ``None`` disables expiry.
        clock: Monotonic clock returning seconds (injectable for tests).
    """

    def __init__(
        self,
        max_entries: Optional[int] = 1024,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._max_entries = max(1, int(max_entries)) if max_entries else None
        self._ttl = float(ttl_seconds) if ttl_seconds else None
        self._clock = clock or time.monotonic
        self._data: OrderedDict[K, tuple[V, float]] = OrderedDict()

    def _expired(self, stored_at: float, now: float) -> bool:
        return self._ttl is not None and now - stored_at >= self._ttl

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        entry = self._data.get(key)
        if entry is None:
            return default
        value, stored_at = entry
        if self._expired(stored_at, self._clock()):
            del self._data[key]
            return default
        self._data.move_to_end(key)
        return value

    def put(self, key: K, value: V) -> None:
        self._data[key] = (value, self._clock())
        self._data.move_to_end(key)
        self.evict()

    def evict(self) -> int:
        """Drop expired entries, then LRU entries beyond capacity."""
        removed = 0
        if self._ttl is not None:
            now = self._clock()
            for key in [k for k, (_, ts) in self._data.items() if self._expired(ts, now)]:
                del self._data[key]
                removed += 1
        if self._max_entries is not None:
            while len(self._data) > self._max_entries:
                self._data.popitem(last=False)
                removed += 1
        return removed

    def pop(self, key: K, default: Optional[V] = None) -> Optional[V]:
        entry = self._data.pop(key, None)
        return entry[0] if entry is not None else default

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._data)

    def keys(self) -> Iterator[K]:
        return iter(list(self._data.keys()))
