"""
Unit tests for pending-request coordination.
"""

import asyncio
import pytest

from service_cache.app.caching.client_cache import ClientCache
from service_cache.app.caching.file_cache import FileCache
from service_cache.app.caching.pending import CacheCoordinator, PendingRequestRegistry
from service_cache.app.caching.stores import MemoryStore
from shared.metrics import MetricsCollector
from shared.test_helpers import CountingFetcher, FakeClock, TestDataFactory


class TestPendingRequestRegistry:
    """Test cases for PendingRequestRegistry."""

    @pytest.mark.asyncio
    async def test_mark_and_release(self):
        """Test that markers exist only between mark and release."""
        registry = PendingRequestRegistry()

        registry.mark("UCabc123")
        assert "UCabc123" in registry
        assert len(registry) == 1

        registry.release("UCabc123")
        assert "UCabc123" not in registry
        registry.release("UCabc123")

    @pytest.mark.asyncio
    async def test_double_mark_is_rejected(self):
        """Test that a second fetch for the same key cannot register."""
        registry = PendingRequestRegistry()
        registry.mark("UCabc123")

        with pytest.raises(RuntimeError):
            registry.mark("UCabc123")

    @pytest.mark.asyncio
    async def test_release_with_stale_future_keeps_newer_marker(self):
        """Test that a late release does not clear a newer registration."""
        registry = PendingRequestRegistry()
        stale = registry.mark("UCabc123")
        registry.release("UCabc123")
        registry.mark("UCabc123")

        registry.release("UCabc123", stale)

        assert "UCabc123" in registry

    @pytest.mark.asyncio
    async def test_track_releases_on_error(self):
        """Test that track() releases the marker when the block raises."""
        registry = PendingRequestRegistry()

        with pytest.raises(ValueError):
            async with registry.track("UCabc123"):
                assert "UCabc123" in registry
                raise ValueError("upstream failed")

        assert "UCabc123" not in registry

    @pytest.mark.asyncio
    async def test_track_resolves_waiters(self):
        """Test that a tracked block resolves its future on exit."""
        registry = PendingRequestRegistry()

        async with registry.track("UCabc123") as future:
            pass

        assert future.done()
        assert future.result() is None


class TestCacheCoordinator:
    """Test cases for CacheCoordinator.fetch_or_serve."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("cache-test")

    @pytest.fixture
    def cache(self, clock):
        return ClientCache(MemoryStore(), clock=clock)

    @pytest.fixture
    def coordinator(self, cache, metrics):
        return CacheCoordinator(cache, metrics=metrics)

    @pytest.mark.asyncio
    async def test_shares_registry_with_cache(self, cache, coordinator):
        """Test that the coordinator uses the cache's registry by default."""
        assert coordinator.pending is cache.pending

    @pytest.mark.asyncio
    async def test_miss_fetches_and_stores(self, coordinator, cache):
        """Test the basic fetch-or-serve flow."""
        payload = TestDataFactory.channel_stats()
        fetcher = CountingFetcher(value=payload)

        assert await coordinator.fetch_or_serve("UCabc123", fetcher) == payload
        assert await coordinator.fetch_or_serve("UCabc123", fetcher) == payload

        assert fetcher.calls == 1
        assert await cache.get_cached_data("UCabc123") == payload

    @pytest.mark.asyncio
    async def test_concurrent_requests_coalesce(self, coordinator, cache, metrics):
        """Test that overlapping requests trigger one fetch and share its value."""
        gate = asyncio.Event()
        fetcher = CountingFetcher(value={"views": 1000}, gate=gate)

        first = asyncio.create_task(coordinator.fetch_or_serve("UCabc123", fetcher))
        second = asyncio.create_task(coordinator.fetch_or_serve("UCabc123", fetcher))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert await cache.is_cached("UCabc123") is True
        gate.set()
        results = await asyncio.gather(first, second)

        assert results == [{"views": 1000}, {"views": 1000}]
        assert fetcher.calls == 1
        assert coordinator.coalesced == 1
        assert "UCabc123" not in coordinator.pending
        assert metrics.sample("cache_coalesced_total", tier="kv") == 1

    @pytest.mark.asyncio
    async def test_many_concurrent_requests_one_fetch(self, coordinator):
        """Test that a burst of identical requests costs one external call."""
        gate = asyncio.Event()
        fetcher = CountingFetcher(value=["trend"], gate=gate)

        tasks = [asyncio.create_task(coordinator.fetch_or_serve("realtime_trends_ai_all", fetcher)) for _ in range(10)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert fetcher.calls == 1
        assert all(result == ["trend"] for result in results)

    @pytest.mark.asyncio
    async def test_failure_propagates_and_waiters_get_none(self, coordinator):
        """Test that a failed fetch releases the key and waiters see a miss."""
        gate = asyncio.Event()
        fetcher = CountingFetcher(error=RuntimeError("quota exceeded"), gate=gate)

        leader = asyncio.create_task(coordinator.fetch_or_serve("UCabc123", fetcher))
        waiter = asyncio.create_task(coordinator.fetch_or_serve("UCabc123", fetcher))
        await asyncio.sleep(0)
        gate.set()

        with pytest.raises(RuntimeError):
            await leader
        assert await waiter is None
        assert "UCabc123" not in coordinator.pending
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_retry_after_failure_fetches_again(self, coordinator):
        """Test that a failure does not leave the key blocked."""
        failing = CountingFetcher(error=RuntimeError("timeout"))
        with pytest.raises(RuntimeError):
            await coordinator.fetch_or_serve("UCabc123", failing)

        working = CountingFetcher(value={"views": 5})
        assert await coordinator.fetch_or_serve("UCabc123", working) == {"views": 5}
        assert working.calls == 1

    @pytest.mark.asyncio
    async def test_not_found_is_not_cached(self, coordinator, cache):
        """Test that a fetcher returning None stores nothing."""
        fetcher = CountingFetcher(value=None)

        assert await coordinator.fetch_or_serve("UCmissing", fetcher) is None
        assert await coordinator.fetch_or_serve("UCmissing", fetcher) is None

        assert fetcher.calls == 2
        assert "UCmissing" not in coordinator.pending
        assert await cache.is_cached("UCmissing") is False

    @pytest.mark.asyncio
    async def test_storage_failure_still_returns_value(self, clock):
        """Test that a full store does not fail the request."""
        cache = ClientCache(MemoryStore(max_bytes=16), clock=clock)
        coordinator = CacheCoordinator(cache)
        fetcher = CountingFetcher(value={"views": "a long payload that will not fit"})

        assert await coordinator.fetch_or_serve("UCabc123", fetcher) == fetcher.value
        assert "UCabc123" not in coordinator.pending

    @pytest.mark.asyncio
    async def test_expired_entry_is_refetched(self, coordinator, clock):
        """Test that an expired entry triggers a new fetch."""
        fetcher = CountingFetcher(value={"views": 1})
        await coordinator.fetch_or_serve("UCabc123", fetcher)

        clock.advance_hours(25)
        await coordinator.fetch_or_serve("UCabc123", fetcher)

        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_coalescing_over_file_tier(self, tmp_path, clock):
        """Test that the file tier gains coalescing when wrapped."""
        coordinator = CacheCoordinator(FileCache(tmp_path / "cache", clock=clock), tier="file")
        gate = asyncio.Event()
        fetcher = CountingFetcher(value={"summary": "LLM analysis"}, gate=gate)

        tasks = [asyncio.create_task(coordinator.fetch_or_serve("UCabc123", fetcher)) for _ in range(3)]
        for _ in range(500):
            if coordinator.coalesced == 2:
                break
            await asyncio.sleep(0.01)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert fetcher.calls == 1
        assert results == [{"summary": "LLM analysis"}] * 3
        assert (tmp_path / "cache" / "yt_analyzer_UCabc123.json").is_file()

    @pytest.mark.asyncio
    async def test_cancelled_fetch_releases_marker(self, coordinator):
        """Test that cancelling the fetching task clears its marker."""
        gate = asyncio.Event()
        fetcher = CountingFetcher(value={"views": 1}, gate=gate)

        task = asyncio.create_task(coordinator.fetch_or_serve("UCabc123", fetcher))
        await asyncio.sleep(0)
        assert "UCabc123" in coordinator.pending

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert "UCabc123" not in coordinator.pending
