"""
Pending-request coordination.

A ``PendingRequestRegistry`` records which keys have a fetch in flight so
overlapping requests for the same key share one external call instead of
each spending API quota. The registry is an ordinary object owned by a
``CacheCoordinator`` and handed to the caches that need it; there is no
module-level instance.

Everything here runs on one event loop. "Concurrent" means interleaved
coroutines, so no locking is needed: the check-and-mark sequence in
``fetch_or_serve`` contains no ``await`` between the check and the mark.

There is no timeout. A fetcher that never settles leaves its marker set and
every later request for that key waits on it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .entry import CacheResult, Hit


class CacheTier(Protocol):
    """What the coordinator needs from a cache tier."""

    async def lookup(self, key: str) -> CacheResult: ...

    async def save_to_cache(self, key: str, payload: Any) -> bool: ...


Fetcher = Callable[[], Awaitable[Any]]


class PendingRequestRegistry:
    """Keys with a fetch in flight, each mapped to the future that will carry its outcome."""

    def __init__(self):
        self._pending: Dict[str, asyncio.Future] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def keys(self) -> List[str]:
        return list(self._pending)

    def get(self, key: str) -> Optional[asyncio.Future]:
        return self._pending.get(key)

    def mark(self, key: str) -> asyncio.Future:
        """Register an in-flight fetch for ``key``."""
        if key in self._pending:
            raise RuntimeError(f"fetch already in flight for {key!r}")
        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        return future

    def release(self, key: str, future: Optional[asyncio.Future] = None) -> None:
        """Drop the marker for ``key``.

        With ``future`` given, only that registration is dropped, so a
        late release cannot clear a newer fetch for the same key.
        """
        current = self._pending.get(key)
        if current is None:
            return
        if future is not None and current is not future:
            return
        del self._pending[key]

    @asynccontextmanager
    async def track(self, key: str) -> AsyncIterator[asyncio.Future]:
        """Mark ``key`` for the duration of the block; the marker is always released."""
        future = self.mark(key)
        try:
            yield future
        finally:
            if not future.done():
                future.set_result(None)
            self.release(key, future)


class CacheCoordinator:
    """Fetch-or-serve with request coalescing over a single cache tier."""

    def __init__(
        self,
        cache: CacheTier,
        pending: Optional[PendingRequestRegistry] = None,
        *,
        tier: str = "kv",
        metrics: Optional[MetricsCollector] = None,
    ):
        self.cache = cache
        if pending is None:
            # share the tier's registry so its is_cached() sees our markers
            pending = getattr(cache, "pending", None)
        self.pending = pending if pending is not None else PendingRequestRegistry()
        self.tier = tier
        self.metrics = metrics
        self.logger = get_logger(f"cache.coordinator.{tier}")
        self.coalesced = 0
        self.fetches = 0

    async def fetch_or_serve(self, key: str, fetcher: Fetcher) -> Any:
        """Return fresh cached data for ``key``, fetching and storing it on a miss.

        While a fetch for ``key`` is in flight, other callers wait for it and
        receive the same value instead of calling ``fetcher`` themselves.
        A fetcher returning ``None`` means "not found": nothing is stored.
        If the fetcher raises, the error propagates to the caller that ran
        it and the waiting callers receive ``None``.
        """
        inflight = self.pending.get(key)
        if inflight is not None:
            return await self._join(key, inflight)

        result = await self.cache.lookup(key)
        if isinstance(result, Hit):
            return result.value

        # the lookup may have suspended long enough for another caller to start
        inflight = self.pending.get(key)
        if inflight is not None:
            return await self._join(key, inflight)

        return await self._fetch(key, fetcher)

    async def _join(self, key: str, inflight: asyncio.Future) -> Any:
        self.coalesced += 1
        self._record("cache_coalesced_total")
        self.logger.debug("Joining in-flight fetch", key=key)
        return await asyncio.shield(inflight)

    async def _fetch(self, key: str, fetcher: Fetcher) -> Any:
        future = self.pending.mark(key)
        self.fetches += 1
        self._set_pending_gauge()
        value = None
        try:
            value = await fetcher()
            if value is not None:
                saved = await self.cache.save_to_cache(key, value)
                if not saved:
                    self.logger.warning("Fetched value could not be cached", key=key)
            else:
                self.logger.info("Fetch found nothing to cache", key=key)
            return value
        except Exception as e:
            self.logger.error("Fetch failed", key=key, error=str(e))
            value = None
            raise
        finally:
            if not future.done():
                future.set_result(value)
            self.pending.release(key, future)
            self._set_pending_gauge()

    def _record(self, metric_name: str) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, tier=self.tier)

    def _set_pending_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("cache_pending_requests", len(self.pending), tier=self.tier)

    def stats(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "pending": self.pending.keys(),
            "fetches": self.fetches,
            "coalesced": self.coalesced,
        }
