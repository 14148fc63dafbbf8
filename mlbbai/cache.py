"""
cache.py
--------

In-memory key/value cache with per-entry expiry. Hero detail lookups and
generated analyses are stored here and dropped in bulk whenever a refresh
publishes a new snapshot.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

DEFAULT_TTL_SECONDS = 3600


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    expires_at: float


class TTLCache:
    """Dictionary-backed cache; expired entries are evicted lazily on read."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self.generation = 0

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self._entries.pop(key, None)
            return None
        return entry.value

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """
        Store `value` under `key`.

        With `generation`, the write is dropped if the cache was flushed after
        that generation was read.
        """
        if generation is not None and generation != self.generation:
            return False
        lifetime = self.default_ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(key, value, self._clock() + lifetime)
        return True

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def flush_all(self) -> int:
        """Drop every entry and return how many were removed."""
        removed = len(self._entries)
        self._entries = {}
        self.generation += 1
        return removed

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
