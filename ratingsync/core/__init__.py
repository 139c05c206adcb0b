"""Core infrastructure: settings, logging, exceptions."""

from .config import settings
from .exceptions import (
    AppException,
    CacheError,
    EventTimeError,
    ExternalServiceError,
    IngestionAborted,
    NotFoundError,
    PermanentStoreError,
    TransientStoreError,
    ValidationError,
)


__all__ = [
    "AppException",
    "CacheError",
    "EventTimeError",
    "ExternalServiceError",
    "IngestionAborted",
    "NotFoundError",
    "PermanentStoreError",
    "TransientStoreError",
    "ValidationError",
    "settings",
]
