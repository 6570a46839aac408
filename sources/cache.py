#!/usr/bin/env python3
"""
Per-run release cache in front of a catalog source.

Concurrent requests for the same release id share a single fetch. The optional
disk directory is advisory: unreadable entries are ignored and refetched.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .base import CatalogRelease, DataSource, ReleaseSummary


logger = logging.getLogger("reorganizer.cache")


class CatalogCache:
    """Thread-safe, single-flight release cache"""

    def __init__(self, source: DataSource, cache_dir: Optional[str] = None):
        self.source = source
        self.cache_dir = Path(cache_dir) / source.name if cache_dir else None
        self._releases: Dict[str, CatalogRelease] = {}
        self._lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self.hits = 0
        self.misses = 0

    @property
    def name(self) -> str:
        return self.source.name

    def search(self, artist: Optional[str], album: str, year: Optional[int] = None) -> List[ReleaseSummary]:
        return self.source.search(artist, album, year)

    def fetch_cover_art(self, ref: str) -> bytes:
        return self.source.fetch_cover_art(ref)

    def fetch_release(self, release_id: str) -> CatalogRelease:
        release_id = str(release_id)
        with self._key_lock(release_id):
            release = self._releases.get(release_id)
            if release is not None:
                self.hits += 1
                return release

            release = self._load(release_id)
            if release is None:
                self.misses += 1
                release = self.source.fetch_release(release_id)
                self._store(release_id, release)

            self._releases[release_id] = release
            return release

    def _key_lock(self, release_id: str) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault(release_id, threading.Lock())

    # ==================== Disk ====================

    def _path(self, release_id: str) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        return self.cache_dir / f"{release_id}.json"

    def _load(self, release_id: str) -> Optional[CatalogRelease]:
        path = self._path(release_id)
        if path is None or not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                release = CatalogRelease.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, TypeError, OSError) as e:
            logger.warning(f"Ignoring unreadable cache entry {path}: {e}")
            return None
        self.hits += 1
        return release

    def _store(self, release_id: str, release: CatalogRelease) -> None:
        path = self._path(release_id)
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(release.to_dict(), f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.warning(f"Could not write cache entry {path}: {e}")
