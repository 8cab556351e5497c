"""
In-memory result cache for guarded reads.

Entries live for `ttl` seconds; past that they are never returned. When
the cache is full the least recently used entry is evicted. Backed by
cachetools.TTLCache behind a lock, since the executor may be shared by
threads (sync FastAPI dependencies run in a threadpool).
"""

import threading
import time
from typing import Any, Callable, Dict, Hashable

from cachetools import TTLCache

_MISSING = object()


class ResultCache:
    def __init__(
        self,
        maxsize: int = 1000,
        ttl: float = 300.0,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.maxsize = maxsize
        self.ttl = ttl
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @classmethod
    def from_settings(cls) -> "ResultCache":
        from billing_resilience.core.config import settings

        return cls(maxsize=settings.CACHE_MAX_ENTRIES, ttl=settings.CACHE_TTL_SECONDS)

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Return a fresh cached value or `default`. Reading counts as a use for LRU."""
        with self._lock:
            value = self._cache.get(key, _MISSING)
            if value is _MISSING:
                self._misses += 1
                return default
            self._hits += 1
            return value

    def set(self, key: Hashable, value: Any) -> None:
        # None is never cached
        if value is None:
            return
        with self._lock:
            self._cache[key] = value

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._cache

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._cache.expire()
            return {
                "size": len(self._cache),
                "max_size": self.maxsize,
                "ttl_seconds": self.ttl,
                "hits": self._hits,
                "misses": self._misses,
            }


def make_cache_key(name: str, *parts: Any, **params: Any) -> str:
    """Build a stable key like 'revenue:2024-01:plan=pro'."""
    pieces = [name, *(str(p) for p in parts)]
    pieces.extend(f"{k}={params[k]}" for k in sorted(params))
    return ":".join(pieces)
