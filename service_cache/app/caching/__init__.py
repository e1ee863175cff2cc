"""
Caching package for the Cache Service.

Two tiers share one entry format and TTL semantics: a key-value tier with
in-flight request coalescing and a file tier that persists one JSON file per
key. ``CacheCoordinator`` wraps either tier with fetch-or-serve.
"""

from .client_cache import ClientCache
from .entry import CacheEntry, CacheResult, Hit, Miss, StorageFailure, now_ms
from .file_cache import FileCache
from .namespaces import CacheNamespace, DEFAULT_NAMESPACE, NAMESPACES, build_namespaces, get_namespace
from .pending import CacheCoordinator, PendingRequestRegistry
from .stores import KeyValueStore, MemoryStore, RedisStore, create_store

__all__ = [
    "CacheCoordinator",
    "CacheEntry",
    "CacheNamespace",
    "CacheResult",
    "ClientCache",
    "DEFAULT_NAMESPACE",
    "FileCache",
    "Hit",
    "KeyValueStore",
    "MemoryStore",
    "Miss",
    "NAMESPACES",
    "PendingRequestRegistry",
    "RedisStore",
    "StorageFailure",
    "build_namespaces",
    "create_store",
    "get_namespace",
    "now_ms",
]
