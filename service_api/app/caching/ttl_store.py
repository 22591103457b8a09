"""
In-process TTL store backing a single cache namespace.
"""

import math
import time
from typing import Any, Callable, Dict, NamedTuple

from cachetools import TLRUCache

from shared.errors import CacheError


class _Entry(NamedTuple):
    value: Any
    ttl: float


def _time_to_use(key: str, entry: _Entry, now: float) -> float:
    """Absolute expiry for an entry; a non-positive TTL never expires."""
    if entry.ttl <= 0:
        return math.inf
    return now + entry.ttl


class NamespaceStore:
    """Key/value store with per-entry TTL and heap-ordered expiry.

    Entries are held by reference. Expired entries are invisible to ``get``
    as soon as their deadline passes and are physically removed by ``sweep``,
    whose cost is proportional to the number of expired entries.
    """

    def __init__(self, name: str, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self._clock = clock
        self._cache = self._new_cache()
        self._stats: Dict[str, int] = {"hits": 0, "misses": 0, "expired": 0}

    def _new_cache(self) -> TLRUCache:
        return TLRUCache(maxsize=math.inf, ttu=_time_to_use, timer=self._clock)

    @staticmethod
    def _check_key(key: str) -> None:
        if not isinstance(key, str) or not key:
            raise CacheError("Cache keys must be non-empty strings", {"key": repr(key)})

    def get(self, key: str) -> Any:
        """Return the live value for ``key``; raise ``KeyError`` if absent or expired."""
        self._check_key(key)
        try:
            entry = self._cache[key]
        except KeyError:
            self._stats["misses"] += 1
            raise
        self._stats["hits"] += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: float) -> bool:
        self._check_key(key)
        self._cache[key] = _Entry(value, ttl)
        return True

    def delete(self, key: str) -> bool:
        self._check_key(key)
        try:
            del self._cache[key]
        except KeyError:
            return False
        return True

    def clear(self) -> int:
        """Drop every entry and return how many were live."""
        count = self.keys_count()
        self._cache = self._new_cache()
        return count

    def sweep(self) -> int:
        """Remove expired entries now; returns the number removed."""
        expired = self._cache.expire()
        removed = len(expired) if expired else 0
        self._stats["expired"] += removed
        return removed

    def keys_count(self) -> int:
        return sum(1 for key in list(self._cache.keys()) if key in self._cache)

    def stats(self) -> Dict[str, int]:
        return {**self._stats, "keys": self.keys_count()}
