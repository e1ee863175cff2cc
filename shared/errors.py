"""
Shared error handling for the YouTube Analyzer cache layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import get_request_id


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AnalyzerCacheException(Exception):
    """Base exception for the cache layer and its services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=get_request_id(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(AnalyzerCacheException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class CacheStorageError(AnalyzerCacheException):
    """The backing store could not be read or written."""

    def __init__(self, message: str = "Cache storage error", details: Optional[Dict[str, Any]] = None, code: str = "CACHE_STORAGE_ERROR"):
        super().__init__(code, message, details)


class StorageQuotaExceededError(CacheStorageError):
    """The backing store refused a write because it is full."""

    def __init__(self, message: str = "Cache storage quota exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="CACHE_QUOTA_EXCEEDED")


class CacheDirectoryError(CacheStorageError):
    """The cache directory is missing and could not be created."""

    def __init__(self, path: str, message: str = "Cache directory unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{message}: {path}", details, code="CACHE_DIRECTORY_ERROR")


class MalformedEntryError(AnalyzerCacheException):
    """A stored entry could not be decoded."""

    def __init__(self, message: str = "Malformed cache entry", details: Optional[Dict[str, Any]] = None):
        super().__init__("MALFORMED_CACHE_ENTRY", message, details)


class InvalidCacheKeyError(ValidationError):
    """A cache key cannot be mapped onto the store."""

    def __init__(self, key: str, reason: str = "Invalid cache key"):
        super().__init__(reason, {"key": key})
        self.code = "INVALID_CACHE_KEY"


class UnknownNamespaceError(ValidationError, KeyError):
    """No cache namespace is registered under the requested name."""

    def __init__(self, name: str):
        ValidationError.__init__(self, f"Unknown cache namespace: {name}", {"namespace": name})
        self.code = "UNKNOWN_NAMESPACE"

    def __str__(self) -> str:
        return self.message
