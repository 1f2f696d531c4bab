"""
optiroute/features/geocoding/cache.py

Process-wide geocode cache.

Bounded (LRU eviction past `max_entries`) and time-bounded (entries expire
after `ttl_seconds` regardless of capacity). One instance is built in the
application lifespan and injected; there is no module-level instance.
"""

import threading
import time
from typing import Callable, Optional

from cachetools import TTLCache
from pydantic import BaseModel, ConfigDict

DEFAULT_MAX_ENTRIES = 500
DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60


def normalize_address(address: str) -> str:
    """Cache key for an address: lowercased and trimmed."""
    return address.lower().strip()


class GeocodeCacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float
    canonical_address: str
    cached_at: float


class GeocodeCache:
    """Thread-safe LRU + TTL map from normalized address to coordinates."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._entries: TTLCache = TTLCache(maxsize=max_entries, ttl=ttl_seconds, timer=timer)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[GeocodeCacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, entry: GeocodeCacheEntry) -> None:
        with self._lock:
            self._entries[key] = entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)
