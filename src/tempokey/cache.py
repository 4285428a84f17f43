"""
In-memory result cache keyed by file identity.

Lookup key: "<name>_<size>_<mtime ms>". Each entry also stores a SHA-256
over the first and last chunks of the file; a lookup whose current hash
differs (or cannot be computed) is a miss. Entries expire after
max_age_hours and the oldest entry is evicted when the cache is full.

Reads and writes are serialized by one lock; file hashing happens outside
it so a slow disk never blocks other lookups.
"""

import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

from tempokey.analyze.models import AnalysisResult

logger = logging.getLogger(__name__)

# Rough per-entry overhead beyond the serialized result (bytes)
_ENTRY_OVERHEAD = 200


@dataclass(frozen=True)
class FileIdentity:
    """Name/size/mtime of a source file, plus its path for content hashing."""

    name: str
    size: int
    modified_at: float
    path: Optional[str] = None

    @classmethod
    def from_path(cls, file_path: str) -> "FileIdentity":
        path_obj = Path(file_path)
        stat = path_obj.stat()
        return cls(name=path_obj.name, size=stat.st_size, modified_at=stat.st_mtime, path=str(path_obj))

    @property
    def cache_key(self) -> str:
        return f"{self.name}_{self.size}_{int(self.modified_at * 1000)}"

    def content_hash(self, chunk_bytes: int = 8192) -> str:
        """
        Hash the first and last chunk_bytes of the file.

        Raises:
            OSError: If the file cannot be read.
            ValueError: If the identity has no path.
        """
        if not self.path:
            raise ValueError(f"No path to hash for {self.name}")

        digest = hashlib.sha256()
        with open(self.path, "rb") as f:
            size = os.fstat(f.fileno()).st_size
            digest.update(f.read(min(chunk_bytes, size)))
            if size > chunk_bytes:
                f.seek(max(0, size - chunk_bytes))
                digest.update(f.read(chunk_bytes))
        return digest.hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    result: AnalysisResult
    created_at: float
    content_hash: str
    file_size: int
    file_modified_at: float
    size_estimate: int = 0


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    total_entries: int
    memory_bytes_estimate: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class ResultCache:
    """
    Thread-safe TTL + capacity bounded cache of AnalysisResult.

    Args:
        max_entries: Capacity; the oldest entry is evicted beyond it
        max_age_hours: Time-to-live of an entry
        sweep_interval_seconds: Period of the background expiry sweep
        hash_chunk_bytes: Bytes hashed at each end of the file
        clock: Time source (seconds)
    """

    def __init__(
        self,
        max_entries: int = 50,
        max_age_hours: float = 24,
        sweep_interval_seconds: float = 300,
        hash_chunk_bytes: int = 8192,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.max_age_seconds = max_age_hours * 3600.0
        self.sweep_interval_seconds = sweep_interval_seconds
        self.hash_chunk_bytes = hash_chunk_bytes
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweep = threading.Event()

    @classmethod
    def from_config(cls, section: dict) -> "ResultCache":
        return cls(
            max_entries=section.get("max_entries", 50),
            max_age_hours=section.get("max_age_hours", 24),
            sweep_interval_seconds=section.get("sweep_interval_seconds", 300),
            hash_chunk_bytes=section.get("hash_chunk_bytes", 8192),
        )

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.max_age_seconds

    def _drop(self, key: str, entry: CacheEntry) -> None:
        # Only remove the entry we inspected; a concurrent put may have replaced it
        if self._entries.get(key) is entry:
            del self._entries[key]

    def get(self, identity: FileIdentity) -> Optional[AnalysisResult]:
        """
        Look up a cached result.

        Args:
            identity: Source file identity

        Returns:
            The cached AnalysisResult, or None on miss/expiry/content change
        """
        key = identity.cache_key
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._expired(entry, self._clock()):
                self._drop(key, entry)
                self._misses += 1
                logger.debug(f"Cache entry expired: {key}")
                return None

        try:
            current_hash = identity.content_hash(self.hash_chunk_bytes)
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot verify cached content for {identity.name}: {e}")
            current_hash = None

        with self._lock:
            if current_hash != entry.content_hash:
                self._drop(key, entry)
                self._misses += 1
                logger.debug(f"Cache entry invalidated by content change: {key}")
                return None
            self._hits += 1

        logger.debug(f"Cache hit: {key}")
        return entry.result

    def put(self, identity: FileIdentity, result: AnalysisResult) -> bool:
        """
        Store a result. Failures are logged, never raised.

        Returns:
            True if the result was stored
        """
        try:
            content_hash = identity.content_hash(self.hash_chunk_bytes)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to cache analysis result for {identity.name}: {e}")
            return False

        entry = CacheEntry(
            result=result,
            created_at=self._clock(),
            content_hash=content_hash,
            file_size=identity.size,
            file_modified_at=identity.modified_at,
            size_estimate=len(json.dumps(result.to_dict())) * 2 + _ENTRY_OVERHEAD,
        )

        key = identity.cache_key
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_oldest()
            self._entries[key] = entry
        logger.debug(f"Cached result: {key}")
        return True

    def has(self, identity: FileIdentity) -> bool:
        """True if a live entry exists for identity (stats unchanged, content not re-hashed)."""
        with self._lock:
            entry = self._entries.get(identity.cache_key)
            return entry is not None and not self._expired(entry, self._clock())

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest_key = min(self._entries, key=lambda k: self._entries[k].created_at)
        del self._entries[oldest_key]
        logger.debug(f"Evicted oldest cache entry: {oldest_key}")

    def clear(self) -> None:
        """Drop all entries and reset hit/miss counters."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def cleanup(self) -> int:
        """
        Remove expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if self._expired(e, now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                total_entries=len(self._entries),
                memory_bytes_estimate=sum(e.size_estimate for e in self._entries.values()),
            )

    def hit_rate(self) -> float:
        return self.stats().hit_rate

    def start_sweeper(self) -> None:
        """Start the background expiry sweep (idempotent)."""
        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._stop_sweep.clear()
            self._sweeper = threading.Thread(target=self._sweep_loop, name="tempokey-cache-sweeper", daemon=True)
            self._sweeper.start()
        logger.debug(f"Cache sweeper started (every {self.sweep_interval_seconds}s)")

    def stop_sweeper(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_sweep.set()
        sweeper = self._sweeper
        if sweeper is not None:
            sweeper.join(timeout)
        self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop_sweep.wait(self.sweep_interval_seconds):
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Cache sweep failed: {e}", exc_info=True)
