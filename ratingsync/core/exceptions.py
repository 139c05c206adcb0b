"""Custom exception hierarchy."""

from __future__ import annotations

from typing import Any


class AppException(Exception):
    """Base application exception with structured error payload."""

    error_code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a problem+json style dictionary."""
        return {
            "error": self.error_code,
            "message": self.message,
            **({"details": self.details} if self.details else {}),
        }


class NotFoundError(AppException):
    """Resource not found."""

    error_code = "NOT_FOUND"
    message = "Resource not found"


class ValidationError(AppException):
    """Validation failed.

    All field violations are aggregated into ``details["fields"]`` as a
    mapping of field name to message.
    """

    error_code = "VALIDATION_ERROR"
    message = "Validation failed"

    @property
    def fields(self) -> dict[str, str]:
        return self.details.get("fields", {})


class ExternalServiceError(AppException):
    """External service error."""

    error_code = "EXTERNAL_SERVICE_ERROR"
    message = "External service temporarily unavailable"


class ConflictError(AppException):
    """Resource conflict."""

    error_code = "CONFLICT"
    message = "Resource conflict"


class CacheError(AppException):
    """Cache operation failed."""

    error_code = "CACHE_ERROR"
    message = "Cache operation failed"

    def __init__(self, operation: str, key: str = "", message: str | None = None):
        self.operation = operation
        self.key = key
        super().__init__(
            message=f"cache {operation} failed for key '{key}': {message or self.message}",
            details={"operation": operation, "key": key},
        )


class TransientStoreError(AppException):
    """Store failure that is expected to succeed on retry."""

    error_code = "TRANSIENT_STORE_ERROR"
    message = "Temporary store failure"


class PermanentStoreError(AppException):
    """Store failure that will not succeed on retry (constraints, bad data)."""

    error_code = "PERMANENT_STORE_ERROR"
    message = "Store operation rejected"


class IngestionAborted(AppException):
    """Ingestion run stopped before the provider was exhausted."""

    error_code = "INGESTION_ABORTED"
    message = "Ingestion run aborted"


class EventTimeError(AppException):
    """Event time parsed but falls outside the accepted window."""

    error_code = "INVALID_EVENT_TIME"
    message = "Event time out of range"
