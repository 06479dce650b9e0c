# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
In-memory, time-expiring response cache placed in front of provider adapters.

One instance is created per adapter concern at process start and injected
where needed. Values are provider responses and are treated as immutable.
"""

import hashlib
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from .text_normalizer import normalize

_MISSING = object()


def text_key(*parts: Any) -> str:
    """Cache key for free-text lookups (normalized query plus modifiers)."""
    return ":".join(normalize(p) if isinstance(p, str) else str(p) for p in parts)


def coordinate_key(latitude: float, longitude: float, precision: Any, digits: int = 4) -> str:
    """Cache key for reverse lookups: rounded coordinates plus precision."""
    return f"{round(latitude, digits):.{digits}f},{round(longitude, digits):.{digits}f}:{precision}"


class LocationCache:
    """In-memory cache with TTL and oldest-entry eviction"""

    def __init__(
        self,
        name: str,
        ttl_seconds: float,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}
        self.hits = 0
        self.misses = 0
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _generate_key(key: str) -> str:
        return hashlib.md5(key.encode("utf-8")).hexdigest()

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value for ``key`` or ``default`` when absent/expired."""
        hashed = self._generate_key(key)
        entry = self._entries.get(hashed)
        if entry is None:
            self.misses += 1
            return default

        if self._clock() - entry["timestamp"] >= self.ttl_seconds:
            del self._entries[hashed]
            self.misses += 1
            self.logger.debug(f"Cache expired [{self.name}] {key}")
            return default

        self.hits += 1
        self.logger.debug(f"Cache hit [{self.name}] {key}")
        return entry["value"]

    def set(self, key: str, value: Any) -> None:
        """Store ``value``; evicts expired entries, then the oldest, when full."""
        hashed = self._generate_key(key)
        if hashed not in self._entries and len(self._entries) >= self.max_entries:
            self._evict()
        self._entries[hashed] = {"value": value, "timestamp": self._clock()}

    def _evict(self) -> None:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e["timestamp"] >= self.ttl_seconds]
        for hashed in expired:
            del self._entries[hashed]
        if len(self._entries) >= self.max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k]["timestamp"])
            del self._entries[oldest]

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        should_cache: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Read-through lookup: return the cached value or fetch, store and return it."""
        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            return cached
        value = await fetch()
        if should_cache is None or should_cache(value):
            self.set(key, value)
        return value

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses,
                "ttl_seconds": self.ttl_seconds}
