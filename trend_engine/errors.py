"""Error taxonomy for the comparison engine.

Upstream errors are raised by source adapters and classified by the gateway;
they never escape the gateway. Refresh errors are raised by the refresh
coordinator and surface to callers as typed outcomes.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Failure categories recorded for observability."""
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"
    RATE_LIMITED = "rate_limited"
    NO_DATA = "no_data"
    NORMALIZATION = "normalization"
    CONCURRENCY_REFUSED = "concurrency_refused"
    DUPLICATE_REFRESH = "duplicate_refresh"


class EngineError(Exception):
    """Base class for all engine errors."""
    kind: Optional[ErrorKind] = None


class ConfigError(EngineError):
    """Raised when engine configuration fails validation."""
    pass


class SourceError(EngineError):
    """Exception raised when an upstream source cannot produce a result."""

    def __init__(self, source_id: str, message: str, original_error: Optional[Exception] = None):
        self.source_id = source_id
        self.message = message
        self.original_error = original_error
        super().__init__(f"{source_id}: {message}")


class UpstreamTimeout(SourceError):
    """Upstream did not answer in time. Retryable."""
    kind = ErrorKind.TIMEOUT


class UpstreamRejected(SourceError):
    """Upstream answered with an error (bad request, auth, quota). Not retryable."""
    kind = ErrorKind.REJECTED


class UpstreamUnavailable(SourceError):
    """Source is disabled or missing credentials. Never attempted."""
    kind = ErrorKind.UNAVAILABLE


class RateLimited(UpstreamUnavailable):
    """Per-source request budget exhausted for the current window. Never attempted."""
    kind = ErrorKind.RATE_LIMITED


class RefreshError(EngineError):
    """Base class for refresh admission failures."""

    def __init__(self, key: str, message: str, details: Optional[Any] = None):
        self.key = key
        self.message = message
        self.details = details
        super().__init__(f"{key}: {message}")


class ConcurrencyRefused(RefreshError):
    """Refresh admission denied by the global in-flight ceiling."""
    kind = ErrorKind.CONCURRENCY_REFUSED


class DuplicateRefresh(RefreshError):
    """A refresh is already in flight (or cooling down) for this key."""
    kind = ErrorKind.DUPLICATE_REFRESH


def classify(error: BaseException) -> ErrorKind:
    """Map an exception to its ErrorKind, defaulting to REJECTED."""
    kind = getattr(error, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind
    return ErrorKind.REJECTED
