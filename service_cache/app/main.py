"""
Cache service for the YouTube Analyzer.

Exposes both cache tiers over HTTP for maintenance and for handlers that
live in other processes: read, write and invalidate single entries, run a
sweep, and inspect in-flight fetches. A background task sweeps every
namespace on both tiers at a fixed interval.
"""

import asyncio
from typing import Any, Dict, Optional, Tuple

from fastapi import HTTPException, Query
from pydantic import BaseModel

from shared.base_service import BaseService
from shared.errors import ValidationError
from .caching.client_cache import ClientCache
from .caching.entry import Hit, Miss
from .caching.file_cache import FileCache
from .caching.namespaces import CacheNamespace, build_namespaces, get_namespace
from .caching.pending import CacheCoordinator, PendingRequestRegistry
from .caching.stores import KeyValueStore, RedisStore, create_store

TIERS = ("kv", "file")


class CachePayload(BaseModel):
    """Body of a cache write."""

    data: Any


class CacheService(BaseService):
    """Cache service implementation."""

    def __init__(self, store: Optional[KeyValueStore] = None, **config_overrides):
        super().__init__("cache", 8020, **config_overrides)

        self.namespaces: Dict[str, CacheNamespace] = build_namespaces(
            self.config.cache_prefix,
            self.config.cache_ttl_seconds * 1000,
        )
        self.pending: Dict[str, PendingRequestRegistry] = {
            name: PendingRequestRegistry() for name in self.namespaces
        }
        self.store = store if store is not None else create_store(self.config)

        self.kv_caches: Dict[str, ClientCache] = {
            name: ClientCache(self.store, self.pending[name], namespace, metrics=self.metrics)
            for name, namespace in self.namespaces.items()
        }
        self.file_caches: Dict[str, FileCache] = {
            name: FileCache(self.config.cache_dir, namespace, metrics=self.metrics)
            for name, namespace in self.namespaces.items()
        }
        self._coordinators: Dict[Tuple[str, str], CacheCoordinator] = {}

        self.cleanup_task: Optional[asyncio.Task] = None

        @self.app.on_event("startup")
        async def _startup():
            await self.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.stop()

        self._setup_cache_routes()

        self.app.state.cache_service = self

    def get_cache(self, tier: str, namespace: str = "default"):
        """Resolve a tier/namespace pair to its cache instance."""
        if tier not in TIERS:
            raise ValidationError(f"Unknown cache tier: {tier}", {"tier": tier, "allowed": list(TIERS)})
        get_namespace(namespace, self.namespaces)
        caches = self.kv_caches if tier == "kv" else self.file_caches
        return caches[namespace]

    def get_coordinator(self, tier: str, namespace: str = "default") -> CacheCoordinator:
        """Fetch-or-serve coordinator for a tier/namespace, created on first use."""
        cache = self.get_cache(tier, namespace)
        coordinator = self._coordinators.get((tier, namespace))
        if coordinator is None:
            coordinator = CacheCoordinator(cache, tier=tier, metrics=self.metrics)
            self._coordinators[(tier, namespace)] = coordinator
        return coordinator

    async def cleanup_all(self) -> Dict[str, Any]:
        """Sweep every namespace on both tiers."""
        kv_ok = True
        file_ok = True
        for name in self.namespaces:
            kv_ok = await self.kv_caches[name].cleanup_old_cache() and kv_ok
            file_ok = await self.file_caches[name].clean_cache() and file_ok

        self.logger.info("Cache sweep finished", kv=kv_ok, file=file_ok)
        return {"kv": kv_ok, "file": file_ok, "namespaces": list(self.namespaces)}

    def _setup_cache_routes(self):
        """Set up cache-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "cache",
                "message": "YouTube Analyzer - Cache Service",
                "version": "1.0.0",
                "tiers": list(TIERS),
                "namespaces": list(self.namespaces),
            }

        @self.app.get("/cache/stats")
        async def cache_stats():
            """In-flight fetches, coalescing counters and namespace TTLs."""
            coordinators = [coordinator.stats() for coordinator in self._coordinators.values()]
            return {
                "pending": {name: registry.keys() for name, registry in self.pending.items() if len(registry)},
                "coalesced": sum(stat["coalesced"] for stat in coordinators),
                "fetches": sum(stat["fetches"] for stat in coordinators),
                "cache_dir": str(self.config.cache_dir),
                "backend": self.config.cache_backend,
                "namespaces": {
                    name: {"prefix": ns.prefix, "ttl_seconds": ns.ttl_ms // 1000}
                    for name, ns in self.namespaces.items()
                },
            }

        @self.app.post("/cache/cleanup")
        async def cache_cleanup():
            """Remove expired and corrupted entries from both tiers."""
            return await self.cleanup_all()

        @self.app.get("/cache/{tier}/{key}")
        async def read_entry(tier: str, key: str, namespace: str = Query("default")):
            """Read a fresh entry."""
            result = await self.get_cache(tier, namespace).lookup(key)
            if isinstance(result, Hit):
                return {"key": key, "tier": tier, "namespace": namespace, "data": result.value}
            if isinstance(result, Miss):
                raise HTTPException(
                    status_code=404,
                    detail={"message": "Cache entry not found", "reason": result.reason}
                )
            raise HTTPException(
                status_code=503,
                detail={"message": "Cache storage unavailable", "code": result.error.code}
            )

        @self.app.put("/cache/{tier}/{key}")
        async def write_entry(tier: str, key: str, payload: CachePayload, namespace: str = Query("default")):
            """Write an entry stamped with the current time."""
            saved = await self.get_cache(tier, namespace).save_to_cache(key, payload.data)
            if not saved:
                raise HTTPException(status_code=503, detail="Failed to save cache entry")
            return {"key": key, "tier": tier, "namespace": namespace, "saved": True}

        @self.app.delete("/cache/{tier}/{key}")
        async def delete_entry(tier: str, key: str, namespace: str = Query("default")):
            """Invalidate a single entry."""
            deleted = await self.get_cache(tier, namespace).invalidate(key)
            return {"key": key, "tier": tier, "namespace": namespace, "deleted": deleted}

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check cache storage reachability."""
        dependencies = {}
        if isinstance(self.store, RedisStore):
            dependencies["redis"] = "ok" if await self.store.ping() else "error"
        else:
            dependencies["memory_store"] = "ok"

        cache_dir_ok = self.file_caches["default"].ensure_cache_directory()
        dependencies["cache_dir"] = "ok" if cache_dir_ok else "error"
        return dependencies

    async def start(self):
        """Start the periodic sweep."""
        if self.config.cleanup_interval_seconds > 0 and self.cleanup_task is None:
            self.cleanup_task = asyncio.create_task(self._cleanup_loop())
            self.logger.info("Cache sweep scheduled", interval_seconds=self.config.cleanup_interval_seconds)

    async def stop(self):
        """Stop the periodic sweep and release the store connection."""
        if self.cleanup_task:
            self.cleanup_task.cancel()
            try:
                await self.cleanup_task
            except asyncio.CancelledError:
                pass
            self.cleanup_task = None

        if isinstance(self.store, RedisStore):
            await self.store.close()

        self.logger.info("Cache service stopped")

    async def _cleanup_loop(self):
        """Sweep both tiers every ``cleanup_interval_seconds``."""
        while True:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            try:
                await self.cleanup_all()
            except Exception as e:
                self.logger.error("Scheduled cache sweep failed", error=str(e))


def create_app(**config_overrides):
    """Create cache service application."""
    service = CacheService(**config_overrides)
    return service.app


if __name__ == "__main__":
    service = CacheService()
    service.run()
