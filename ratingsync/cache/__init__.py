"""Two-tier cache: local memory backend over optional Valkey."""

from .client import (
    close_valkey_client,
    connect_distributed_backend,
    get_valkey_client,
    valkey_healthcheck,
)
from .keys import CacheKind, normalize_key
from .layer import CacheLayer, CacheLookup, CacheResult, CacheStats, CacheTTLs
from .memory import MemoryCacheBackend
from .valkey import ValkeyCacheBackend


__all__ = [
    "CacheKind",
    "CacheLayer",
    "CacheLookup",
    "CacheResult",
    "CacheStats",
    "CacheTTLs",
    "MemoryCacheBackend",
    "ValkeyCacheBackend",
    "close_valkey_client",
    "connect_distributed_backend",
    "get_valkey_client",
    "normalize_key",
    "valkey_healthcheck",
]
