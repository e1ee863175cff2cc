"""
Integration tests for the two-tier fetch-or-serve flow.
"""

import asyncio
import pytest

from service_cache.app.caching import (
    CacheCoordinator,
    ClientCache,
    FileCache,
    MemoryStore,
    NAMESPACES,
)
from service_cache.app.caching.namespaces import topic_score_key
from shared.metrics import MetricsCollector
from shared.test_helpers import CountingFetcher, FakeClock, TestDataFactory


class TestCacheFlow:
    """Dashboard request flow across the key-value and file tiers."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("cache-flow")

    @pytest.fixture
    def kv(self, clock, metrics):
        return CacheCoordinator(
            ClientCache(MemoryStore(), namespace=NAMESPACES["topic_score"], clock=clock, metrics=metrics),
            metrics=metrics,
        )

    @pytest.fixture
    def files(self, tmp_path, clock, metrics):
        return CacheCoordinator(
            FileCache(tmp_path / "cache", NAMESPACES["topic_score"], clock=clock, metrics=metrics),
            tier="file",
            metrics=metrics,
        )

    @pytest.mark.asyncio
    async def test_browser_tier_backed_by_file_tier(self, kv, files, clock):
        """Test that a browser miss falls through to the server cache once."""
        upstream = CountingFetcher(value=TestDataFactory.topic_score())
        key = topic_score_key("cats")

        async def from_server():
            return await files.fetch_or_serve(key, upstream)

        first = await asyncio.gather(*(kv.fetch_or_serve(key, from_server) for _ in range(5)))
        assert upstream.calls == 1
        assert all(result == TestDataFactory.topic_score() for result in first)

        clock.advance(30 * 60 * 1000)
        assert await kv.fetch_or_serve(key, from_server) == TestDataFactory.topic_score()
        assert upstream.calls == 1

        clock.advance(31 * 60 * 1000)
        await kv.fetch_or_serve(key, from_server)
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_browser_cache_cleared_uses_file_tier(self, kv, files):
        """Test that losing the browser store re-reads from the file tier."""
        upstream = CountingFetcher(value={"score": 10})
        key = topic_score_key("dogs")

        async def from_server():
            return await files.fetch_or_serve(key, upstream)

        await kv.fetch_or_serve(key, from_server)
        await kv.cache.store.clear()

        assert await kv.fetch_or_serve(key, from_server) == {"score": 10}
        assert upstream.calls == 1

    @pytest.mark.asyncio
    async def test_sweeps_leave_fresh_entries(self, kv, files, clock):
        """Test that periodic sweeps on both tiers drop only stale data."""
        await kv.fetch_or_serve("stale", CountingFetcher(value=1))
        await files.fetch_or_serve("stale", CountingFetcher(value=1))
        clock.advance_hours(2)
        await kv.fetch_or_serve("fresh", CountingFetcher(value=2))
        await files.fetch_or_serve("fresh", CountingFetcher(value=2))

        assert await kv.cache.cleanup_old_cache() is True
        assert await files.cache.clean_cache() is True

        assert await kv.cache.store.keys() == ["yt_analyzer_topic_score.fresh"]
        assert [p.name for p in files.cache.entry_files()] == ["yt_analyzer_topic_score.fresh.json"]
