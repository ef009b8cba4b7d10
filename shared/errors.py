"""
Shared error handling for the route cache.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RouteCacheException(Exception):
    """Base exception for route cache errors."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(RouteCacheException):
    """Invalid cache binding. Raised synchronously at bind time."""

    def __init__(self, message: str = "Invalid cache configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class FingerprintError(RouteCacheException):
    """Request projection or hashing failed."""

    def __init__(self, message: str = "Unable to fingerprint request", details: Optional[Dict[str, Any]] = None):
        super().__init__("FINGERPRINT_ERROR", message, details)


class BackendReadError(RouteCacheException):
    """Cache lookup failed."""

    def __init__(self, message: str = "Cache lookup failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("BACKEND_READ_ERROR", message, details)


class BackendWriteError(RouteCacheException):
    """Persisting a freshly computed response failed."""

    def __init__(self, message: str = "Cache write failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("BACKEND_WRITE_ERROR", message, details)


class InvalidationError(RouteCacheException):
    """Tag index load or fingerprint delete failed during invalidation."""

    def __init__(self, message: str = "Cache invalidation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALIDATION_ERROR", message, details)


class CachePolicyError(RouteCacheException):
    """A caching predicate, tag or etag hook raised while capturing a response."""

    def __init__(self, message: str = "Cache policy hook failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_POLICY_ERROR", message, details)
