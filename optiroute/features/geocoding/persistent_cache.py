"""
optiroute/features/geocoding/persistent_cache.py

File-backed geocode cache for API clients.

Same TTL policy as the server cache, but entries survive restarts. Expired
entries are pruned when the file is loaded; an unreadable file starts empty.
"""

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from optiroute.features.geocoding.cache import DEFAULT_TTL_SECONDS, GeocodeCacheEntry

logger = logging.getLogger("optiroute")


class PersistentGeocodeCache:
    def __init__(
        self,
        path: Union[str, Path],
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, GeocodeCacheEntry] = self._load()

    def _is_expired(self, entry: GeocodeCacheEntry) -> bool:
        return self._clock() - entry.cached_at >= self.ttl_seconds

    def _load(self) -> Dict[str, GeocodeCacheEntry]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"[geocode-cache] ignoring unreadable cache file {self.path}: {e}")
            return {}

        entries: Dict[str, GeocodeCacheEntry] = {}
        if not isinstance(raw, dict):
            return entries
        for key, value in raw.items():
            try:
                entry = GeocodeCacheEntry.model_validate(value)
            except PydanticValidationError:
                continue
            if not self._is_expired(entry):
                entries[key] = entry

        if len(entries) != len(raw):
            try:
                self._write(entries)
            except OSError as e:
                logger.warning(f"[geocode-cache] failed to prune {self.path}: {e}")
        return entries

    def _write(self, entries: Dict[str, GeocodeCacheEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {key: entry.model_dump() for key, entry in entries.items()}
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".geocode-cache-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh)
            os.replace(tmp_path, self.path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Optional[GeocodeCacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._is_expired(entry):
                del self._entries[key]
                return None
            return entry

    def set(self, key: str, entry: GeocodeCacheEntry) -> None:
        with self._lock:
            self._entries[key] = entry
            try:
                self._write(self._entries)
            except OSError as e:
                logger.warning(f"[geocode-cache] failed to persist {self.path}: {e}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
