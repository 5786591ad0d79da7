"""
Entity Cache
============
Short-lived key/value cache for purchase and product lookups on the client
side. One instance per client context; there is no module-level instance.

Entries expire after a TTL (5 minutes by default) and the cache holds at
most `max_entries`, evicting the least recently used entry first.

The cache is synchronous and unlocked: it is only touched from a single
event loop, and no method awaits. Callers that mutate the underlying data
must invalidate before they return, so no later read sees the stale value.
"""

import time
from collections import OrderedDict
from typing import Any, Callable, Optional

import structlog

from config import settings


class _Miss:
    """Sentinel for a cache miss (None is a valid cached value)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


class EntityCache:
    """TTL + LRU cache with an injectable clock."""

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = settings.CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.max_entries = settings.CACHE_MAX_ENTRIES if max_entries is None else max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._logger = structlog.get_logger().bind(component="entity_cache")

    def get(self, key: str) -> Any:
        """Return the cached value, or MISS if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return MISS

        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self._misses += 1
            return MISS

        self._entries.move_to_end(key)
        self._hits += 1
        return value

    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl is None else ttl
        self._entries[key] = (value, self._clock() + ttl)
        self._entries.move_to_end(key)

        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._evictions += 1
            self._logger.debug("cache_evicted", key=evicted)

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not MISS

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "ttl_seconds": self.ttl_seconds,
            "max_entries": self.max_entries,
        }
