"""
Shared error handling for the cacher package.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class CacherException(Exception):
    """Base exception for cache coordination errors."""

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


class ValidationError(CacherException):
    """Invalid arguments passed to a cache operation."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class StoreError(CacherException):
    """Backing store unreachable or returned a failure."""

    def __init__(self, operation: str, message: str = "Store error", details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        super().__init__("STORE_ERROR", f"{operation}: {message}", {"operation": operation, **(details or {})})


class SerializationError(CacherException):
    """Value could not be encoded, or stored bytes could not be decoded."""

    def __init__(self, message: str = "Serialization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERIALIZATION_ERROR", message, details)


class WaitTimeoutError(CacherException):
    """Gave up waiting for another caller to populate the cache."""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(
            "WAIT_TIMEOUT",
            "timeout waiting for cache",
            {"key": key, "timeout": timeout}
        )


class FetchFailedError(CacherException):
    """The lock holder finished without writing a value."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            "FETCH_FAILED",
            "fetch operation failed or cache not populated",
            {"key": key}
        )


class DeadlineExceededError(CacherException):
    """The caller-supplied timeout elapsed before the operation finished."""

    def __init__(self, operation: str, timeout: float, deleted: Optional[int] = None):
        self.operation = operation
        self.timeout = timeout
        self.deleted = deleted
        details: Dict[str, Any] = {"operation": operation, "timeout": timeout}
        if deleted is not None:
            details["deleted"] = deleted
        super().__init__("DEADLINE_EXCEEDED", f"{operation}: deadline exceeded", details)
