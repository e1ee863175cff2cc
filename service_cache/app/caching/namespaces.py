"""
Cache key namespaces.

Call sites that need a shorter lifetime than the 24 hour default get their
own namespace rather than a per-entry TTL, so the stored entry format never
changes. Each namespace owns a distinct prefix so a sweep run with one TTL
never touches entries governed by another.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Tuple

from shared.errors import InvalidCacheKeyError, UnknownNamespaceError
from .entry import DEFAULT_TTL_MS, HOUR_MS, MINUTE_MS

DEFAULT_PREFIX = "yt_analyzer_"


@dataclass(frozen=True)
class CacheNamespace:
    """A key prefix paired with the TTL that governs it."""

    name: str
    prefix: str
    ttl_ms: int
    # prefixes claimed by narrower namespaces nested under this one
    excludes: Tuple[str, ...] = ()

    def storage_key(self, key: str) -> str:
        """Stored form of ``key``; keys that would land under a narrower namespace are rejected."""
        storage_key = f"{self.prefix}{key}"
        if not self.owns(storage_key):
            raise InvalidCacheKeyError(key, "Cache key falls under another namespace's prefix")
        return storage_key

    def owns(self, storage_key: str) -> bool:
        if not storage_key.startswith(self.prefix):
            return False
        return not any(storage_key.startswith(prefix) for prefix in self.excludes)

    def strip(self, storage_key: str) -> str:
        return storage_key[len(self.prefix):]


def build_namespaces(base_prefix: str = DEFAULT_PREFIX, default_ttl_ms: int = DEFAULT_TTL_MS) -> Dict[str, CacheNamespace]:
    """Build the namespace table for a deployment's base prefix."""

    def scoped(name: str, ttl_ms: int) -> CacheNamespace:
        return CacheNamespace(name=name, prefix=f"{base_prefix}{name}.", ttl_ms=ttl_ms)

    scoped_namespaces = [
        scoped("realtime_trends", 30 * MINUTE_MS),
        scoped("trending_topics", HOUR_MS),
        scoped("topic_score", HOUR_MS),
        scoped("video_optimization", HOUR_MS),
        scoped("competitor_topics", default_ttl_ms),
    ]
    default = CacheNamespace(
        name="default",
        prefix=base_prefix,
        ttl_ms=default_ttl_ms,
        excludes=tuple(ns.prefix for ns in scoped_namespaces),
    )
    return {ns.name: ns for ns in [default, *scoped_namespaces]}


NAMESPACES = build_namespaces()
DEFAULT_NAMESPACE = NAMESPACES["default"]


def get_namespace(name: str, namespaces: Dict[str, CacheNamespace] = NAMESPACES) -> CacheNamespace:
    try:
        return namespaces[name]
    except KeyError:
        raise UnknownNamespaceError(name) from None


# Key builders for the dashboard call sites.

def channel_key(channel_id: str) -> str:
    return channel_id


def realtime_trends_key(topic: str, category: str = "all") -> str:
    return f"realtime_trends_{topic}_{category}"


def trending_topics_key(time_range: str = "24h") -> str:
    return f"youtube_trending_topics_{time_range}"


def topic_score_key(topic: str, time_range: str = "24h") -> str:
    return f"topic_score_{topic}_{time_range}"


def video_optimization_key(topic: str, time_range: str = "24h") -> str:
    return f"video_optimization_{topic}_{time_range}"


def competitor_topics_key(channel_ids: Iterable[str]) -> str:
    return "competitor_topics_" + "_".join(channel_ids)
