"""
File cache tier.

One JSON file per key, ``<cache_dir>/<prefix><key>.json``, holding
``{"data": ..., "timestamp": <ms>}`` pretty-printed with two-space indent.
The files survive process restarts, which is what backend handlers rely on
to avoid recomputing LLM analyses.

The directory is created on demand before each write. That is the one
failure reported to callers (``save_to_cache`` returns ``False``); every
other read, parse or delete failure is confined to the file concerned.
Blocking file I/O runs in a worker thread.

The directory is not locked. Two processes writing the same key race and
the last ``os.replace`` wins.
"""

import asyncio
import os
import uuid
from pathlib import Path
from typing import Any, List, Optional, Union

from shared.errors import CacheDirectoryError, CacheStorageError, InvalidCacheKeyError, MalformedEntryError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .entry import (
    CacheEntry,
    CacheResult,
    Clock,
    Hit,
    Miss,
    MISS_ABSENT,
    MISS_EXPIRED,
    MISS_MALFORMED,
    StorageFailure,
    now_ms,
    unwrap,
)
from .namespaces import CacheNamespace, DEFAULT_NAMESPACE

TIER = "file"
FILE_SUFFIX = ".json"
JSON_INDENT = 2


class FileCache:
    """Namespaced TTL cache storing one JSON file per key."""

    def __init__(
        self,
        cache_dir: Union[str, Path] = "data/cache",
        namespace: CacheNamespace = DEFAULT_NAMESPACE,
        *,
        clock: Clock = now_ms,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.cache_dir = Path(cache_dir)
        self.namespace = namespace
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger(f"cache.file.{namespace.name}")

    @property
    def ttl_ms(self) -> int:
        return self.namespace.ttl_ms

    def path_for(self, key: str) -> Path:
        """Path of the file backing ``key``; rejects keys that would leave the directory."""
        if not key or "\x00" in key or ".." in key or "/" in key or "\\" in key:
            raise InvalidCacheKeyError(key, "Cache key cannot be used as a file name")
        return self.cache_dir / f"{self.namespace.storage_key(key)}{FILE_SUFFIX}"

    def ensure_cache_directory(self) -> bool:
        try:
            if not self.cache_dir.is_dir():
                self.cache_dir.mkdir(parents=True, exist_ok=True)
                self.logger.info("Cache directory created", path=str(self.cache_dir))
            return True
        except OSError as e:
            self.logger.error("Error creating cache directory", path=str(self.cache_dir), error=str(e))
            return False

    async def get_from_cache(self, key: str) -> Any:
        """Fresh payload for ``key`` or ``None``."""
        return unwrap(await self.lookup(key))

    async def lookup(self, key: str) -> CacheResult:
        try:
            path = self.path_for(key)
        except InvalidCacheKeyError as e:
            self.logger.warning("Rejected cache key", key=key, error=e.message)
            return StorageFailure(CacheStorageError(e.message, e.details, code=e.code))
        return await asyncio.to_thread(self._read, key, path)

    async def save_to_cache(self, key: str, payload: Any) -> bool:
        """Write ``payload`` stamped with the current time; ``False`` on any failure."""
        try:
            path = self.path_for(key)
            document = CacheEntry(key=key, payload=payload, timestamp=self.clock()).encode(indent=JSON_INDENT)
        except (InvalidCacheKeyError, CacheStorageError) as e:
            self.logger.error("Error saving to cache", key=key, error=e.message)
            self._record("cache_writes_total", result="error")
            return False

        saved = await asyncio.to_thread(self._write, key, path, document)
        self._record("cache_writes_total", result="ok" if saved else "error")
        return saved

    async def invalidate(self, key: str) -> bool:
        try:
            path = self.path_for(key)
        except InvalidCacheKeyError:
            return False
        return await asyncio.to_thread(self._unlink, path, None)

    async def clean_cache(self) -> bool:
        """Delete expired and corrupted files belonging to this namespace.

        Files outside the ``<prefix>*.json`` pattern are skipped. Returns
        ``False`` only when the directory exists but cannot be listed.
        """
        if self.metrics:
            with self.metrics.time_operation("cache_cleanup_duration_seconds", tier=TIER):
                return await asyncio.to_thread(self._sweep)
        return await asyncio.to_thread(self._sweep)

    def entry_files(self) -> List[Path]:
        """Files in the cache directory owned by this namespace."""
        return [
            path for path in sorted(self.cache_dir.iterdir())
            if path.is_file() and path.name.endswith(FILE_SUFFIX)
            and self.namespace.owns(path.name[:-len(FILE_SUFFIX)])
        ]

    def _read(self, key: str, path: Path) -> CacheResult:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return self._miss(MISS_ABSENT)
        except OSError as e:
            self.logger.error("Error reading cache", key=key, error=str(e))
            self._record("cache_misses_total", reason="storage_error")
            return StorageFailure(CacheStorageError("Cache file unreadable", {"key": key, "error": str(e)}))

        try:
            entry = CacheEntry.decode(key, raw)
        except MalformedEntryError:
            self.logger.warning("Discarding corrupted cache file", key=key, path=str(path))
            self._unlink(path, "corrupted")
            return self._miss(MISS_MALFORMED)

        if entry.is_expired(self.ttl_ms, self.clock()):
            self._unlink(path, "expired")
            return self._miss(MISS_EXPIRED)

        self.logger.debug("Using server cache", key=key)
        self._record("cache_hits_total")
        return Hit(entry.payload)

    def _write(self, key: str, path: Path, document: str) -> bool:
        if not self.ensure_cache_directory():
            error = CacheDirectoryError(str(self.cache_dir))
            self.logger.error("Error saving to cache", key=key, error=error.message)
            return False

        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_text(document, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            self.logger.error("Error saving to cache", key=key, error=str(e))
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError as cleanup_error:
                self.logger.debug("Temporary cache file left behind", path=str(tmp_path), error=str(cleanup_error))
            return False

        self.logger.info("Saved to server cache", key=key, path=str(path))
        return True

    def _unlink(self, path: Path, cause: Optional[str]) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return True
        except OSError as e:
            self.logger.error("Error deleting cache file", path=str(path), error=str(e))
            return False
        if cause:
            self._record("cache_evictions_total", cause=cause)
        return True

    def _sweep(self) -> bool:
        if not self.cache_dir.exists():
            return True

        try:
            paths = self.entry_files()
        except OSError as e:
            self.logger.error("Error cleaning up cache", path=str(self.cache_dir), error=str(e))
            return False

        now = self.clock()
        for path in paths:
            key = self.namespace.strip(path.name[:-len(FILE_SUFFIX)])
            try:
                entry = CacheEntry.decode(key, path.read_bytes())
            except FileNotFoundError:
                continue
            except OSError as e:
                self.logger.warning("Skipping unreadable cache file", path=str(path), error=str(e))
                continue
            except MalformedEntryError:
                if self._unlink(path, "corrupted"):
                    self.logger.info("Deleted corrupted cache file", path=str(path))
                continue

            if entry.is_expired(self.ttl_ms, now) and self._unlink(path, "expired"):
                self.logger.info("Deleted expired cache file", path=str(path))

        return True

    def _miss(self, reason: str) -> Miss:
        self._record("cache_misses_total", reason=reason)
        return Miss(reason)

    def _record(self, metric_name: str, **labels) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, tier=TIER, **labels)
