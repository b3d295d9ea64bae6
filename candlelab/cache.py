"""
cache.py — Small TTL cache with hit/miss statistics.

Used for session metrics, extracted feature sets and ensemble predictions.
Entries expire after `ttl` seconds (None disables expiry); when the cache is
full the least recently used entry is evicted.

Usage:
    cache = TTLCache(max_size=500, ttl=300)
    cache.set("k", value)
    cache.get("k")          # value, counted as a hit
    cache.stats().hit_rate
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Optional


@dataclass
class CacheEntry:
    value: Any
    cached_at: float = field(default_factory=time.time)

    def is_fresh(self, ttl: Optional[float], now: Optional[float] = None) -> bool:
        if ttl is None:
            return True
        return ((now if now is not None else time.time()) - self.cached_at) < ttl


@dataclass
class CacheStats:
    size: int
    max_size: int
    hits: int
    misses: int
    evictions: int
    expirations: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": round(self.hit_rate, 4),
        }


class TTLCache:
    """LRU cache; a hit or an overwrite makes the entry newest."""

    def __init__(
        self,
        max_size: int = 1000,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._data: "OrderedDict[Hashable, CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._data.get(key)
        if entry is None:
            self._misses += 1
            return default
        if not entry.is_fresh(self.ttl, self._clock()):
            del self._data[key]
            self._expirations += 1
            self._misses += 1
            return default
        self._data.move_to_end(key)
        self._hits += 1
        return entry.value

    def set(self, key: Hashable, value: Any) -> None:
        if key in self._data:
            del self._data[key]
        elif len(self._data) >= self.max_size:
            self._data.popitem(last=False)
            self._evictions += 1
        self._data[key] = CacheEntry(value=value, cached_at=self._clock())

    def delete(self, key: Hashable) -> bool:
        return self._data.pop(key, None) is not None

    def delete_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every key matching predicate; returns how many were removed."""
        doomed = [k for k in self._data if predicate(k)]
        for k in doomed:
            del self._data[k]
        return len(doomed)

    def clear(self) -> None:
        self._data.clear()

    def reset_stats(self) -> None:
        self._hits = self._misses = self._evictions = self._expirations = 0

    def stats(self) -> CacheStats:
        return CacheStats(
            size=len(self._data),
            max_size=self.max_size,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            expirations=self._expirations,
        )

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        entry = self._data.get(key)
        return entry is not None and entry.is_fresh(self.ttl, self._clock())
