from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Generic, TypeVar

V = TypeVar("V")


@dataclass(frozen=True)
class DistanceCacheEntry(Generic[V]):
    key: str
    value: V
    inserted_at: float


class DistanceCacheStore(Generic[V]):
    """TTL + LRU key/value store. Entries are replaced, never mutated in place."""

    def __init__(self, *, ttl_s: int, max_entries: int, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_s = max(1, int(ttl_s))
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = Lock()
        self._items: OrderedDict[str, DistanceCacheEntry[V]] = OrderedDict()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _is_expired(self, entry: DistanceCacheEntry[V]) -> bool:
        return (self._clock() - entry.inserted_at) > self._ttl_s

    def get(self, key: str) -> V | None:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                self._misses += 1
                return None

            if self._is_expired(entry):
                self._items.pop(key, None)
                self._evictions += 1
                self._misses += 1
                return None

            self._items.move_to_end(key)
            self._hits += 1
            return entry.value

    def put(self, key: str, value: V) -> None:
        with self._lock:
            if key in self._items:
                self._items.move_to_end(key)
            self._items[key] = DistanceCacheEntry(key=key, value=value, inserted_at=self._clock())

            while len(self._items) > self._max_entries:
                self._items.popitem(last=False)
                self._evictions += 1

    def evict(self, key: str) -> bool:
        with self._lock:
            removed = self._items.pop(key, None) is not None
            if removed:
                self._evictions += 1
            return removed

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._items),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "ttl_s": self._ttl_s,
                "max_entries": self._max_entries,
            }
