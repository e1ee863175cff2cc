"""
Cache entry model shared by the key-value and file tiers.

An entry is a payload stamped with the wall-clock time (epoch milliseconds)
at which it was written. Both tiers serialize it the same way::

    {"data": <payload>, "timestamp": <int ms>}

Expiry is lazy: nothing is removed on a timer, entries are judged against
the TTL when a read or a sweep encounters them. Clock changes are not
compensated for, so a clock jump can expire entries early or late.
"""

import json
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from shared.errors import CacheStorageError, MalformedEntryError

Clock = Callable[[], int]

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DEFAULT_TTL_MS = 24 * HOUR_MS

# Payload field names accepted on read, in order of preference.
PAYLOAD_FIELDS = ("data", "payload")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CacheEntry:
    """Timestamped payload stored under a single key."""

    key: str
    payload: Any
    timestamp: int

    def age_ms(self, now: int) -> int:
        return now - self.timestamp

    def is_fresh(self, ttl_ms: int, now: int) -> bool:
        """An entry exactly ``ttl_ms`` old is still fresh."""
        return self.age_ms(now) <= ttl_ms

    def is_expired(self, ttl_ms: int, now: int) -> bool:
        return not self.is_fresh(ttl_ms, now)

    def to_document(self) -> dict:
        return {"data": self.payload, "timestamp": self.timestamp}

    def encode(self, indent: Optional[int] = None) -> str:
        """Serialize to JSON text; raises ``CacheStorageError`` for unserializable payloads."""
        try:
            return json.dumps(self.to_document(), indent=indent, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise CacheStorageError(
                "Payload is not JSON serializable",
                {"key": self.key, "error": str(exc)},
            ) from exc

    @classmethod
    def decode(cls, key: str, raw: Union[str, bytes]) -> "CacheEntry":
        """Parse stored JSON text back into an entry.

        Raises ``MalformedEntryError`` when the text is not UTF-8 JSON, is not
        an object, lacks the payload, or lacks a finite numeric timestamp.
        """
        try:
            document = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MalformedEntryError("Cache entry is not valid JSON", {"key": key, "error": str(exc)}) from exc

        if not isinstance(document, dict):
            raise MalformedEntryError("Cache entry is not a JSON object", {"key": key})

        timestamp = document.get("timestamp")
        # bool is an int subclass but never a valid timestamp
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise MalformedEntryError("Cache entry has no numeric timestamp", {"key": key})
        # json accepts NaN, Infinity and out-of-range literals such as 1e400
        if isinstance(timestamp, float) and not math.isfinite(timestamp):
            raise MalformedEntryError("Cache entry timestamp is not finite", {"key": key})

        for field in PAYLOAD_FIELDS:
            if field in document:
                return cls(key=key, payload=document[field], timestamp=int(timestamp))

        raise MalformedEntryError("Cache entry has no payload", {"key": key})


@dataclass(frozen=True)
class Hit:
    """A fresh entry was found."""

    value: Any

    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Miss:
    """No usable entry; ``reason`` is one of ``MISS_REASONS``."""

    reason: str = "absent"

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class StorageFailure:
    """The backing store could not be used; the cache degraded to a miss."""

    error: CacheStorageError

    def __bool__(self) -> bool:
        return False


CacheResult = Union[Hit, Miss, StorageFailure]

MISS_ABSENT = "absent"
MISS_EXPIRED = "expired"
MISS_MALFORMED = "malformed"
MISS_PENDING = "pending"
MISS_REASONS = (MISS_ABSENT, MISS_EXPIRED, MISS_MALFORMED, MISS_PENDING)


def unwrap(result: CacheResult) -> Any:
    """Collapse a typed result to the sentinel form: the payload or ``None``."""
    return result.value if isinstance(result, Hit) else None
