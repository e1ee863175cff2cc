"""
Key-value store backends for the key-value cache tier.

The tier is written against a small string-to-string interface modelled on
browser storage: get, set, remove, list keys, clear. Backends raise
``CacheStorageError`` (or its quota subclass) on failure; the cache above
them converts those into misses.
"""

from typing import Dict, List, Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.config import BaseConfig
from shared.errors import CacheStorageError, StorageQuotaExceededError
from shared.logging import get_logger


class KeyValueStore(Protocol):
    """Persistent string store used by ``ClientCache``."""

    async def get_item(self, key: str) -> Optional[str]: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...

    async def keys(self) -> List[str]: ...

    async def clear(self) -> None: ...


class MemoryStore:
    """Process-resident store with an optional size quota.

    Size is measured as the character count of keys plus values, the way
    browser storage accounts for its quota.
    """

    def __init__(self, max_bytes: Optional[int] = None):
        self.max_bytes = max_bytes or None
        self._items: Dict[str, str] = {}

    def _size_with(self, key: str, value: str) -> int:
        size = sum(len(k) + len(v) for k, v in self._items.items() if k != key)
        return size + len(key) + len(value)

    @property
    def used_bytes(self) -> int:
        return sum(len(k) + len(v) for k, v in self._items.items())

    async def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        if self.max_bytes is not None and self._size_with(key, value) > self.max_bytes:
            raise StorageQuotaExceededError(details={"key": key, "max_bytes": self.max_bytes})
        self._items[key] = value

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    async def keys(self) -> List[str]:
        return list(self._items)

    async def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class RedisStore:
    """Redis-backed store; keys are listed with SCAN restricted to ``key_pattern``."""

    def __init__(self, redis_url: str, key_pattern: str = "*"):
        self.redis_url = redis_url
        self.key_pattern = key_pattern
        self.logger = get_logger("cache.store.redis")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
        return self._redis

    async def get_item(self, key: str) -> Optional[str]:
        try:
            client = await self._get_redis()
            return await client.get(key)
        except (RedisError, OSError) as e:
            raise CacheStorageError("Redis read failed", {"key": key, "error": str(e)}) from e

    async def set_item(self, key: str, value: str) -> None:
        try:
            client = await self._get_redis()
            await client.set(key, value)
        except (RedisError, OSError) as e:
            if "OOM" in str(e):
                raise StorageQuotaExceededError(details={"key": key, "error": str(e)}) from e
            raise CacheStorageError("Redis write failed", {"key": key, "error": str(e)}) from e

    async def remove_item(self, key: str) -> None:
        try:
            client = await self._get_redis()
            await client.delete(key)
        except (RedisError, OSError) as e:
            raise CacheStorageError("Redis delete failed", {"key": key, "error": str(e)}) from e

    async def keys(self) -> List[str]:
        try:
            client = await self._get_redis()
            return [key async for key in client.scan_iter(match=self.key_pattern)]
        except (RedisError, OSError) as e:
            raise CacheStorageError("Redis key scan failed", {"error": str(e)}) from e

    async def clear(self) -> None:
        keys = await self.keys()
        if not keys:
            return
        try:
            client = await self._get_redis()
            await client.delete(*keys)
        except (RedisError, OSError) as e:
            raise CacheStorageError("Redis clear failed", {"error": str(e)}) from e

    async def ping(self) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.ping())
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis store closed")


def create_store(config: BaseConfig) -> KeyValueStore:
    """Build the key-value backend selected by ``cache_backend``."""
    if config.cache_backend == "redis":
        return RedisStore(config.redis_url, key_pattern=f"{config.cache_prefix}*")
    return MemoryStore(max_bytes=config.kv_max_bytes)
