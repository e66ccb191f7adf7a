"""
Shared error handling for the Tenancy Isolation Layer.

Errors are a single payload type tagged with an ``ErrorKind``. The named
subclasses only pin the kind so callers can still ``except`` them directly.
"""

from enum import Enum
from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    """Error kinds with their machine code and transport status."""
    INVALID_CONTEXT = "INVALID_CONTEXT"
    CROSS_BOUNDARY_ACCESS = "CROSS_BOUNDARY_ACCESS"
    AUDIT_WRITE = "AUDIT_WRITE"
    ANOMALY_DETECTED = "ANOMALY_DETECTED"
    CACHE_KEY = "CACHE_KEY"
    SERVICE = "SERVICE"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    ErrorKind.INVALID_CONTEXT: 400,
    ErrorKind.CROSS_BOUNDARY_ACCESS: 403,
    ErrorKind.AUDIT_WRITE: 500,
    ErrorKind.ANOMALY_DETECTED: 403,
    ErrorKind.CACHE_KEY: 400,
    ErrorKind.SERVICE: 500,
}


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    status_code: int
    details: Dict[str, Any] = Field(default_factory=dict)


class IsolationLayerException(Exception):
    """Base exception for the isolation layer."""

    def __init__(self, kind: ErrorKind, message: str, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.code = kind.value
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            status_code=self.status_code,
            details=self.details
        )


class InvalidContextError(IsolationLayerException):
    """Context construction or integrity violation."""

    def __init__(self, message: str = "Invalid isolation context", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.INVALID_CONTEXT, message, details)

    @property
    def violation(self) -> Optional[str]:
        """Machine code of the violated invariant."""
        return self.details.get("violation")


class CrossBoundaryAccessError(IsolationLayerException):
    """Containment check failed."""

    def __init__(self, message: str = "Cross-boundary access denied", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.CROSS_BOUNDARY_ACCESS, message, details)


class AuditWriteError(IsolationLayerException):
    """Audit persistence failed."""

    def __init__(self, message: str = "Audit write failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.AUDIT_WRITE, message, details)


class AnomalyDetectedError(IsolationLayerException):
    """Access attempt flagged as anomalous."""

    def __init__(self, message: str = "Anomalous access detected", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.ANOMALY_DETECTED, message, details)


class CacheKeyError(IsolationLayerException):
    """Cache key inputs rejected."""

    def __init__(self, message: str = "Invalid cache key", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.CACHE_KEY, message, details)


class ServiceError(IsolationLayerException):
    """Service-related errors."""

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorKind.SERVICE, message, details)
