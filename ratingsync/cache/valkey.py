"""Valkey (Redis-compatible) cache backend.

Every failure is raised as ``CacheError`` carrying the operation and key;
the cache layer above decides how to degrade.
"""

from __future__ import annotations

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ratingsync.core.exceptions import CacheError
from ratingsync.core.logging import get_logger

from .keys import CacheKind, prefixed


logger = get_logger("cache.valkey")

# Cache key prefixes for namespacing
CACHE_PREFIX = "ratingsync"
CACHE_VERSION = "v1"

_BACKEND_ERRORS = (RedisError, OSError, TimeoutError)


class ValkeyCacheBackend:
    """Distributed backend; bulk operations use MGET and pipelines."""

    def __init__(self, client: Redis, namespace: str = f"{CACHE_PREFIX}:{CACHE_VERSION}"):
        self.client = client
        self.namespace = namespace

    def full_key(self, kind: CacheKind, key: str) -> str:
        return f"{self.namespace}:{prefixed(kind, key)}"

    def _pattern(self, kind: CacheKind | None) -> str:
        if kind is None:
            return f"{self.namespace}:*"
        return f"{self.namespace}:{prefixed(kind, '')}*"

    async def get(self, kind: CacheKind, key: str) -> str | None:
        try:
            return await self.client.get(self.full_key(kind, key))
        except _BACKEND_ERRORS as e:
            raise CacheError("get", key, str(e)) from e

    async def set(self, kind: CacheKind, key: str, value: str, ttl: int) -> None:
        try:
            await self.client.set(self.full_key(kind, key), value, ex=ttl)
        except _BACKEND_ERRORS as e:
            raise CacheError("set", key, str(e)) from e

    async def delete(self, kind: CacheKind, key: str) -> bool:
        try:
            return await self.client.delete(self.full_key(kind, key)) > 0
        except _BACKEND_ERRORS as e:
            raise CacheError("delete", key, str(e)) from e

    async def get_many(self, kind: CacheKind, keys: list[str]) -> dict[str, str]:
        if not keys:
            return {}
        try:
            values = await self.client.mget([self.full_key(kind, k) for k in keys])
        except _BACKEND_ERRORS as e:
            raise CacheError("mget", ",".join(keys), str(e)) from e
        return {key: value for key, value in zip(keys, values) if value is not None}

    async def set_many(self, kind: CacheKind, items: dict[str, str], ttl: int) -> None:
        if not items:
            return
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                for key, value in items.items():
                    pipe.set(self.full_key(kind, key), value, ex=ttl)
                await pipe.execute()
        except _BACKEND_ERRORS as e:
            raise CacheError("mset", ",".join(items), str(e)) from e

    async def exists(self, kind: CacheKind, key: str) -> bool:
        try:
            return await self.client.exists(self.full_key(kind, key)) > 0
        except _BACKEND_ERRORS as e:
            raise CacheError("exists", key, str(e)) from e

    async def ttl(self, kind: CacheKind, key: str) -> int:
        try:
            return await self.client.ttl(self.full_key(kind, key))
        except _BACKEND_ERRORS as e:
            raise CacheError("ttl", key, str(e)) from e

    async def expire(self, kind: CacheKind, key: str, ttl: int) -> None:
        try:
            updated = await self.client.expire(self.full_key(kind, key), ttl)
        except _BACKEND_ERRORS as e:
            raise CacheError("expire", key, str(e)) from e
        if not updated:
            raise CacheError("expire", key, "key not found")

    async def clear(self, kind: CacheKind | None = None) -> int:
        pattern = self._pattern(kind)
        removed = 0
        try:
            batch: list[str] = []
            async for full_key in self.client.scan_iter(match=pattern, count=500):
                batch.append(full_key)
                if len(batch) >= 500:
                    removed += await self.client.delete(*batch)
                    batch = []
            if batch:
                removed += await self.client.delete(*batch)
        except _BACKEND_ERRORS as e:
            raise CacheError("clear", pattern, str(e)) from e
        return removed

    async def key_counts(self) -> dict[CacheKind, int]:
        counts: dict[CacheKind, int] = {}
        try:
            for kind in CacheKind:
                total = 0
                async for _ in self.client.scan_iter(match=self._pattern(kind), count=500):
                    total += 1
                counts[kind] = total
        except _BACKEND_ERRORS as e:
            raise CacheError("scan", self.namespace, str(e)) from e
        return counts

    async def ping(self) -> bool:
        try:
            result = await self.client.ping()
        except _BACKEND_ERRORS as e:
            raise CacheError("ping", "", str(e)) from e
        return result is True or result == "PONG"
