from __future__ import annotations

"""
Bounded, thread-safe LRU cache.

Injected into the classifier, consent resolver and compliance engine instead of
module-level state, so each owner controls size, lifetime and invalidation.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0
    size: int = 0
    max_entries: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "size": self.size,
            "max_entries": self.max_entries,
            "hit_rate": round(self.hit_rate, 4),
        }


class BoundedCache(Generic[K, V]):
    def __init__(self, *, max_entries: int = 10_000, name: str = "cache"):
        if int(max_entries) < 1:
            raise ValueError("max_entries must be >= 1")
        self.name = name
        self.max_entries = int(max_entries)
        self._data: "OrderedDict[K, V]" = OrderedDict()
        self._lock = threading.RLock()
        self._stats = CacheStats(max_entries=self.max_entries)
        # invalidation generations; a computed value is only stored when no
        # invalidation touched its key while compute() ran
        self._epoch = 0
        self._inflight: Dict[K, int] = {}
        self._gens: Dict[K, int] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            value = self._data.get(key, _MISSING)
            if value is _MISSING:
                self._stats.misses += 1
                return default
            self._data.move_to_end(key)
            self._stats.hits += 1
            return value  # type: ignore[return-value]

    def put(self, key: K, value: V) -> None:
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
            self._data[key] = value
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)
                self._stats.evictions += 1

    def get_or_compute(self, key: K, compute: Callable[[], V], *, should_store: Optional[Callable[[V], bool]] = None) -> V:
        """
        Return the cached value or compute, store and return it.

        compute() runs outside the lock, so two threads missing on the same key
        may both compute. A result is dropped instead of stored when the key
        was invalidated (or the cache cleared) while it was being computed, or
        when should_store rejects it.
        """
        with self._lock:
            cached = self._data.get(key, _MISSING)
            if cached is not _MISSING:
                self._data.move_to_end(key)
                self._stats.hits += 1
                return cached  # type: ignore[return-value]
            self._stats.misses += 1
            token = (self._epoch, self._gens.get(key, 0))
            self._inflight[key] = self._inflight.get(key, 0) + 1
        try:
            value = compute()
        except BaseException:
            with self._lock:
                self._release(key)
            raise
        with self._lock:
            fresh = token == (self._epoch, self._gens.get(key, 0))
            self._release(key)
            if fresh and (should_store is None or should_store(value)):
                self.put(key, value)
        return value

    def _release(self, key: K) -> None:
        left = self._inflight.get(key, 1) - 1
        if left > 0:
            self._inflight[key] = left
        else:
            self._inflight.pop(key, None)
            self._gens.pop(key, None)

    def _bump(self, key: K) -> None:
        if key in self._inflight:
            self._gens[key] = self._gens.get(key, 0) + 1

    def invalidate(self, key: K) -> bool:
        with self._lock:
            self._bump(key)
            if key in self._data:
                del self._data[key]
                self._stats.invalidations += 1
                return True
            return False

    def invalidate_where(self, predicate: Callable[[K], bool]) -> int:
        with self._lock:
            for k in [k for k in self._inflight if predicate(k)]:
                self._bump(k)
            doomed = [k for k in self._data if predicate(k)]
            for k in doomed:
                del self._data[k]
            self._stats.invalidations += len(doomed)
            return len(doomed)

    def clear(self) -> int:
        with self._lock:
            self._epoch += 1
            n = len(self._data)
            self._data.clear()
            self._stats.invalidations += n
            return n

    def stats(self) -> CacheStats:
        with self._lock:
            s = self._stats
            return CacheStats(
                hits=s.hits,
                misses=s.misses,
                evictions=s.evictions,
                invalidations=s.invalidations,
                size=len(self._data),
                max_entries=self.max_entries,
            )
