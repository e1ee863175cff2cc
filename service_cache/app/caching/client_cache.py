"""
Key-value cache tier.

Serves fetch-or-serve decisions for identity keys (channel ids, composite
trend query keys) out of a persistent key-value store. Entries live under
``<namespace prefix><key>``; expired and unreadable entries are deleted
whenever an operation comes across them.

No operation raises past this class: store failures are logged and turned
into misses or ``False``.
"""

from typing import Any, Optional

from shared.errors import CacheStorageError, InvalidCacheKeyError, MalformedEntryError
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
    MISS_PENDING,
    StorageFailure,
    now_ms,
    unwrap,
)
from .namespaces import CacheNamespace, DEFAULT_NAMESPACE
from .pending import PendingRequestRegistry
from .stores import KeyValueStore

TIER = "kv"


class ClientCache:
    """Namespaced TTL cache over a ``KeyValueStore``."""

    def __init__(
        self,
        store: KeyValueStore,
        pending: Optional[PendingRequestRegistry] = None,
        namespace: CacheNamespace = DEFAULT_NAMESPACE,
        *,
        clock: Clock = now_ms,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.pending = pending if pending is not None else PendingRequestRegistry()
        self.namespace = namespace
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger(f"cache.kv.{namespace.name}")

    @property
    def ttl_ms(self) -> int:
        return self.namespace.ttl_ms

    async def is_cached(self, key: str) -> bool:
        """True if a fetch for ``key`` is in flight or a fresh entry exists."""
        if key in self.pending:
            return True
        return isinstance(await self._read(key), Hit)

    async def get_cached_data(self, key: str) -> Any:
        """Fresh payload for ``key`` or ``None``."""
        return unwrap(await self._read(key))

    async def lookup(self, key: str) -> CacheResult:
        """Typed read: ``Hit``, ``Miss`` (with reason) or ``StorageFailure``."""
        result = await self._read(key)
        if isinstance(result, Miss) and key in self.pending:
            return Miss(MISS_PENDING)
        return result

    async def save_to_cache(self, key: str, payload: Any) -> bool:
        """Store ``payload`` stamped with the current time.

        The pending marker for ``key`` is released whether or not the write
        succeeds, so a failed write never blocks a retry.
        """
        try:
            storage_key = self.namespace.storage_key(key)
            entry = CacheEntry(key=key, payload=payload, timestamp=self.clock())
            await self.store.set_item(storage_key, entry.encode())
        except (InvalidCacheKeyError, CacheStorageError) as e:
            self.logger.error("Error saving to cache", key=key, code=e.code, error=e.message)
            self._record("cache_writes_total", result="error")
            return False
        finally:
            self.pending.release(key)

        self.logger.info("Saved to cache", key=key)
        self._record("cache_writes_total", result="ok")
        return True

    async def invalidate(self, key: str) -> bool:
        try:
            await self.store.remove_item(self.namespace.storage_key(key))
        except (InvalidCacheKeyError, CacheStorageError) as e:
            self.logger.error("Error invalidating cache entry", key=key, error=e.message)
            return False
        return True

    async def cleanup_old_cache(self) -> bool:
        """Delete every expired or unreadable entry in this namespace.

        A failure on one entry is logged and the sweep moves on. Returns
        ``False`` only when the store cannot list its keys.
        """
        try:
            storage_keys = await self.store.keys()
        except CacheStorageError as e:
            self.logger.error("Error cleaning up cache", error=e.message)
            return False

        now = self.clock()
        removed = 0
        for storage_key in storage_keys:
            if not self.namespace.owns(storage_key):
                continue
            key = self.namespace.strip(storage_key)
            try:
                raw = await self.store.get_item(storage_key)
                if raw is None:
                    continue
                try:
                    entry = CacheEntry.decode(key, raw)
                except MalformedEntryError:
                    await self._evict(storage_key, "corrupted")
                    removed += 1
                    continue
                if entry.is_expired(self.ttl_ms, now):
                    await self._evict(storage_key, "expired")
                    removed += 1
            except CacheStorageError as e:
                self.logger.warning("Skipping cache entry during cleanup", key=key, error=e.message)

        if removed:
            self.logger.info("Cache cleanup removed entries", namespace=self.namespace.name, removed=removed)
        return True

    async def _read(self, key: str) -> CacheResult:
        try:
            storage_key = self.namespace.storage_key(key)
        except InvalidCacheKeyError as e:
            self.logger.warning("Rejected cache key", key=key, error=e.message)
            return StorageFailure(CacheStorageError(e.message, e.details, code=e.code))

        try:
            raw = await self.store.get_item(storage_key)
            if raw is None:
                return self._miss(MISS_ABSENT)

            try:
                entry = CacheEntry.decode(key, raw)
            except MalformedEntryError:
                self.logger.warning("Discarding malformed cache entry", key=key)
                await self._evict(storage_key, "corrupted")
                return self._miss(MISS_MALFORMED)

            if entry.is_expired(self.ttl_ms, self.clock()):
                await self._evict(storage_key, "expired")
                return self._miss(MISS_EXPIRED)
        except CacheStorageError as e:
            self.logger.error("Error reading cache", key=key, error=e.message)
            self._record("cache_misses_total", reason="storage_error")
            return StorageFailure(e)

        self.logger.debug("Using cached data", key=key)
        self._record("cache_hits_total")
        return Hit(entry.payload)

    async def _evict(self, storage_key: str, cause: str) -> None:
        await self.store.remove_item(storage_key)
        self._record("cache_evictions_total", cause=cause)

    def _miss(self, reason: str) -> Miss:
        self._record("cache_misses_total", reason=reason)
        return Miss(reason)

    def _record(self, metric_name: str, **labels) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, tier=TIER, **labels)
