"""
Unit tests for key-value store backends.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError, ResponseError

from service_cache.app.caching.stores import MemoryStore, RedisStore, create_store
from shared.config import BaseConfig
from shared.errors import CacheStorageError, StorageQuotaExceededError


class TestMemoryStore:
    """Test cases for MemoryStore."""

    @pytest.mark.asyncio
    async def test_basic_operations(self):
        """Test get, set, remove, keys and clear."""
        store = MemoryStore()

        assert await store.get_item("a") is None
        await store.set_item("a", "1")
        await store.set_item("b", "2")
        assert await store.get_item("a") == "1"
        assert sorted(await store.keys()) == ["a", "b"]

        await store.remove_item("a")
        await store.remove_item("missing")
        assert await store.keys() == ["b"]

        await store.clear()
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_quota_rejects_oversized_write(self):
        """Test that exceeding the quota raises and leaves the store unchanged."""
        store = MemoryStore(max_bytes=10)
        await store.set_item("k", "12345")

        with pytest.raises(StorageQuotaExceededError) as exc_info:
            await store.set_item("other", "123456")

        assert exc_info.value.code == "CACHE_QUOTA_EXCEEDED"
        assert await store.keys() == ["k"]
        assert store.used_bytes == 6

    @pytest.mark.asyncio
    async def test_quota_counts_replacement_once(self):
        """Test that overwriting a key is measured against its new size only."""
        store = MemoryStore(max_bytes=10)
        await store.set_item("k", "123456789")

        await store.set_item("k", "987654321")

        assert await store.get_item("k") == "987654321"

    @pytest.mark.asyncio
    async def test_zero_quota_means_unbounded(self):
        """Test that a zero quota disables the limit."""
        store = MemoryStore(max_bytes=0)

        await store.set_item("k", "x" * 10_000)

        assert store.max_bytes is None


class TestRedisStore:
    """Test cases for RedisStore."""

    @pytest.fixture
    def mock_redis(self):
        """Mock Redis client."""
        client = MagicMock()
        client.get = AsyncMock(return_value=None)
        client.set = AsyncMock(return_value=True)
        client.delete = AsyncMock(return_value=1)
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        return client

    @pytest.fixture
    def store(self, mock_redis):
        store = RedisStore("redis://localhost:6379/0", key_pattern="yt_analyzer_*")
        with patch.object(store, "_get_redis", AsyncMock(return_value=mock_redis)):
            yield store

    @pytest.mark.asyncio
    async def test_get_and_set(self, store, mock_redis):
        """Test reads and writes pass through."""
        mock_redis.get.return_value = '{"data": 1, "timestamp": 0}'

        await store.set_item("yt_analyzer_UCabc123", "value")

        assert await store.get_item("yt_analyzer_UCabc123") == '{"data": 1, "timestamp": 0}'
        mock_redis.set.assert_called_once_with("yt_analyzer_UCabc123", "value")

    @pytest.mark.asyncio
    async def test_keys_uses_scan_with_pattern(self, store, mock_redis):
        """Test that key listing scans with the configured pattern."""
        async def scan_iter(match=None):
            assert match == "yt_analyzer_*"
            for key in ["yt_analyzer_a", "yt_analyzer_b"]:
                yield key

        mock_redis.scan_iter = scan_iter

        assert await store.keys() == ["yt_analyzer_a", "yt_analyzer_b"]

    @pytest.mark.asyncio
    async def test_clear_deletes_scanned_keys(self, store, mock_redis):
        """Test that clear removes only the scanned keys."""
        async def scan_iter(match=None):
            yield "yt_analyzer_a"

        mock_redis.scan_iter = scan_iter

        await store.clear()

        mock_redis.delete.assert_called_once_with("yt_analyzer_a")

    @pytest.mark.asyncio
    async def test_connection_error_becomes_storage_error(self, store, mock_redis):
        """Test that Redis failures surface as CacheStorageError."""
        mock_redis.get.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(CacheStorageError) as exc_info:
            await store.get_item("yt_analyzer_UCabc123")

        assert exc_info.value.code == "CACHE_STORAGE_ERROR"

    @pytest.mark.asyncio
    async def test_oom_becomes_quota_error(self, store, mock_redis):
        """Test that a maxmemory rejection maps to the quota error."""
        mock_redis.set.side_effect = ResponseError("OOM command not allowed when used memory > 'maxmemory'.")

        with pytest.raises(StorageQuotaExceededError):
            await store.set_item("yt_analyzer_UCabc123", "value")

    @pytest.mark.asyncio
    async def test_ping_failure_returns_false(self, store, mock_redis):
        """Test that ping reports unreachable Redis as False."""
        mock_redis.ping.side_effect = RedisConnectionError("down")

        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_close_releases_connection(self, mock_redis):
        """Test that close() closes an open client."""
        store = RedisStore("redis://localhost:6379/0")
        store._redis = mock_redis

        await store.close()

        mock_redis.aclose.assert_called_once()
        assert store._redis is None


class TestCreateStore:
    """Test cases for create_store."""

    def test_memory_backend(self):
        store = create_store(BaseConfig(cache_backend="memory", kv_max_bytes=1024))

        assert isinstance(store, MemoryStore)
        assert store.max_bytes == 1024

    def test_redis_backend_scans_cache_prefix(self):
        store = create_store(BaseConfig(cache_backend="redis", redis_url="redis://cache:6379/1"))

        assert isinstance(store, RedisStore)
        assert store.redis_url == "redis://cache:6379/1"
        assert store.key_pattern == "yt_analyzer_*"
