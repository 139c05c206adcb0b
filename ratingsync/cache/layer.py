"""Two-tier cache-aside layer for companies, brokerages and stock ratings.

A bounded in-memory backend sits in front of an optional distributed
(Valkey) backend behind one interface. The store stays authoritative:
a distributed failure is logged and reported as ``CacheResult.UNAVAILABLE``,
never raised to the caller.

Usage:
    layer = CacheLayer(distributed=await connect_distributed_backend())
    await layer.start()

    lookup = await layer.get_company("AAPL")
    if lookup.found:
        company = lookup.value
    elif lookup.status is CacheResult.UNAVAILABLE:
        ...  # cache down, go to the store

    await layer.stop()
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ratingsync.core.config import settings
from ratingsync.core.exceptions import CacheError
from ratingsync.core.logging import get_logger
from ratingsync.domain.models import BrokerageRecord, CompanyRecord, StockRatingRecord

from .keys import (
    CacheKind,
    brokerage_key,
    company_key,
    prefixed,
    stock_rating_key,
)
from .memory import MemoryCacheBackend
from .valkey import ValkeyCacheBackend


logger = get_logger("cache.layer")

RecordT = TypeVar("RecordT", bound=BaseModel)

_RECORD_TYPES: dict[CacheKind, type[BaseModel]] = {
    CacheKind.COMPANY: CompanyRecord,
    CacheKind.BROKERAGE: BrokerageRecord,
    CacheKind.STOCK_RATING: StockRatingRecord,
}


class CacheResult(str, Enum):
    """Outcome of a cache read."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


@dataclass
class CacheLookup(Generic[RecordT]):
    status: CacheResult
    value: Optional[RecordT] = None

    @property
    def found(self) -> bool:
        return self.status is CacheResult.FOUND


@dataclass
class CacheTTLs:
    """Default TTL per entity family, in seconds."""

    company: int = 7200
    brokerage: int = 14400
    stock_rating: int = 86400
    default: int = 3600

    @classmethod
    def from_settings(cls) -> CacheTTLs:
        return cls(
            company=settings.cache_company_ttl,
            brokerage=settings.cache_brokerage_ttl,
            stock_rating=settings.cache_stock_rating_ttl,
            default=settings.cache_default_ttl,
        )

    def for_kind(self, kind: CacheKind) -> int:
        return {
            CacheKind.COMPANY: self.company,
            CacheKind.BROKERAGE: self.brokerage,
            CacheKind.STOCK_RATING: self.stock_rating,
        }.get(kind, self.default)


@dataclass
class CacheStats:
    """Point-in-time cache statistics."""

    hits: int = 0
    misses: int = 0
    company_keys: int = 0
    brokerage_keys: int = 0
    stock_rating_keys: int = 0
    last_access: datetime | None = None
    uptime_seconds: float = 0.0
    distributed_available: bool = False
    distributed_keys: dict[str, int] = field(default_factory=dict)

    @property
    def hit_rate(self) -> float:
        """Hit rate as a percentage."""
        total = self.hits + self.misses
        return self.hits / total * 100 if total > 0 else 0.0

    @property
    def total_keys(self) -> int:
        return self.company_keys + self.brokerage_keys + self.stock_rating_keys

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 2),
            "company_keys": self.company_keys,
            "brokerage_keys": self.brokerage_keys,
            "stock_rating_keys": self.stock_rating_keys,
            "total_keys": self.total_keys,
            "last_access": self.last_access.isoformat() if self.last_access else None,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "distributed_available": self.distributed_available,
            "distributed_keys": self.distributed_keys,
        }


class CacheLayer:
    """Local memory layer composed over an optional distributed backend."""

    def __init__(
        self,
        local: MemoryCacheBackend | None = None,
        distributed: ValkeyCacheBackend | None = None,
        ttls: CacheTTLs | None = None,
    ):
        self.local = local or MemoryCacheBackend(
            max_entries=settings.cache_local_max_entries,
            sweep_interval=settings.cache_sweep_interval,
        )
        self.distributed = distributed
        self.ttls = ttls or CacheTTLs.from_settings()
        self._hits = 0
        self._misses = 0
        self._last_access: datetime | None = None
        self._started = time.monotonic()

    async def start(self) -> None:
        self.local.start()

    async def stop(self) -> None:
        await self.local.stop()

    # -------------------------------------------------------------------------
    # Generic operations
    # -------------------------------------------------------------------------

    def _resolve_ttl(self, kind: CacheKind, ttl: int) -> int:
        return ttl if ttl > 0 else self.ttls.for_kind(kind)

    def _touch(self, hit: bool) -> None:
        self._last_access = datetime.now(timezone.utc)
        if hit:
            self._hits += 1
        else:
            self._misses += 1

    def _decode(self, kind: CacheKind, payload: str) -> BaseModel | None:
        try:
            return _RECORD_TYPES[kind].model_validate_json(payload)
        except PydanticValidationError:
            return None

    async def get(self, kind: CacheKind, key: str) -> CacheLookup:
        payload = await self.local.get(kind, key)
        if payload is not None:
            record = self._decode(kind, payload)
            if record is not None:
                self._touch(hit=True)
                return CacheLookup(CacheResult.FOUND, record)
            await self.local.delete(kind, key)

        if self.distributed is None:
            self._touch(hit=False)
            return CacheLookup(CacheResult.NOT_FOUND)

        try:
            payload = await self.distributed.get(kind, key)
            if payload is None:
                self._touch(hit=False)
                return CacheLookup(CacheResult.NOT_FOUND)
            record = self._decode(kind, payload)
            if record is None:
                logger.warning(f"Evicting undecodable cache entry {prefixed(kind, key)}")
                await self.distributed.delete(kind, key)
                self._touch(hit=False)
                return CacheLookup(CacheResult.NOT_FOUND)
        except CacheError as e:
            logger.warning(f"Distributed cache get failed: {e}")
            self._touch(hit=False)
            return CacheLookup(CacheResult.UNAVAILABLE)

        await self.local.set(kind, key, payload, self.ttls.for_kind(kind))
        self._touch(hit=True)
        return CacheLookup(CacheResult.FOUND, record)

    async def set(self, kind: CacheKind, key: str, record: BaseModel, ttl: int = 0) -> bool:
        """Write through both layers; False when the distributed write failed."""
        ttl = self._resolve_ttl(kind, ttl)
        payload = record.model_dump_json()
        await self.local.set(kind, key, payload, ttl)
        if self.distributed is None:
            return True
        try:
            await self.distributed.set(kind, key, payload, ttl)
            return True
        except CacheError as e:
            logger.warning(f"Distributed cache set failed: {e}")
            return False

    async def delete(self, kind: CacheKind, key: str) -> bool:
        removed = await self.local.delete(kind, key)
        if self.distributed is not None:
            try:
                removed = await self.distributed.delete(kind, key) or removed
            except CacheError as e:
                logger.warning(f"Distributed cache delete failed: {e}")
        return removed

    async def get_many(self, kind: CacheKind, keys: list[str]) -> dict[str, BaseModel]:
        """Bulk read; keys that miss (or fail) are simply absent from the result."""
        found: dict[str, BaseModel] = {}
        payloads = await self.local.get_many(kind, keys)
        for key, payload in payloads.items():
            record = self._decode(kind, payload)
            if record is not None:
                found[key] = record

        remaining = [k for k in keys if k not in found]
        if remaining and self.distributed is not None:
            try:
                remote = await self.distributed.get_many(kind, remaining)
            except CacheError as e:
                logger.warning(f"Distributed cache bulk get failed: {e}")
                remote = {}
            backfill: dict[str, str] = {}
            for key, payload in remote.items():
                record = self._decode(kind, payload)
                if record is not None:
                    found[key] = record
                    backfill[key] = payload
            if backfill:
                await self.local.set_many(kind, backfill, self.ttls.for_kind(kind))

        for key in keys:
            self._touch(hit=key in found)
        return found

    async def set_many(self, kind: CacheKind, records: dict[str, BaseModel], ttl: int = 0) -> bool:
        ttl = self._resolve_ttl(kind, ttl)
        payloads = {key: record.model_dump_json() for key, record in records.items()}
        await self.local.set_many(kind, payloads, ttl)
        if self.distributed is None:
            return True
        try:
            await self.distributed.set_many(kind, payloads, ttl)
            return True
        except CacheError as e:
            logger.warning(f"Distributed cache bulk set failed: {e}")
            return False

    async def exists(self, kind: CacheKind, key: str) -> bool:
        if await self.local.exists(kind, key):
            return True
        if self.distributed is None:
            return False
        try:
            return await self.distributed.exists(kind, key)
        except CacheError as e:
            logger.warning(f"Distributed cache exists failed: {e}")
            return False

    async def ttl(self, kind: CacheKind, key: str) -> int:
        """Remaining seconds from the local layer, falling back to distributed."""
        remaining = await self.local.ttl(kind, key)
        if remaining != -2 or self.distributed is None:
            return remaining
        try:
            return await self.distributed.ttl(kind, key)
        except CacheError as e:
            logger.warning(f"Distributed cache ttl failed: {e}")
            return remaining

    async def expire(self, kind: CacheKind, key: str, ttl: int) -> None:
        """Reset a key's TTL. Raises CacheError when no layer holds the key."""
        ttl = self._resolve_ttl(kind, ttl)
        local_error: CacheError | None = None
        try:
            await self.local.expire(kind, key, ttl)
        except CacheError as e:
            local_error = e
        if self.distributed is None:
            if local_error is not None:
                raise local_error
            return
        try:
            await self.distributed.expire(kind, key, ttl)
        except CacheError:
            if local_error is not None:
                raise

    async def clear(self, kind: CacheKind | None = None) -> int:
        removed = await self.local.clear(kind)
        if self.distributed is not None:
            try:
                removed += await self.distributed.clear(kind)
            except CacheError as e:
                logger.warning(f"Distributed cache clear failed: {e}")
        return removed

    async def clear_companies(self) -> int:
        return await self.clear(CacheKind.COMPANY)

    async def clear_brokerages(self) -> int:
        return await self.clear(CacheKind.BROKERAGE)

    async def stats(self) -> CacheStats:
        counts = await self.local.key_counts()
        stats = CacheStats(
            hits=self._hits,
            misses=self._misses,
            company_keys=counts[CacheKind.COMPANY],
            brokerage_keys=counts[CacheKind.BROKERAGE],
            stock_rating_keys=counts[CacheKind.STOCK_RATING],
            last_access=self._last_access,
            uptime_seconds=time.monotonic() - self._started,
        )
        if self.distributed is not None:
            try:
                remote = await self.distributed.key_counts()
                stats.distributed_available = True
                stats.distributed_keys = {kind.value: n for kind, n in remote.items()}
            except CacheError as e:
                logger.warning(f"Distributed cache stats failed: {e}")
        return stats

    async def ping(self) -> bool:
        """True when every configured layer answers."""
        if not await self.local.ping():
            return False
        if self.distributed is None:
            return True
        try:
            return await self.distributed.ping()
        except CacheError as e:
            logger.warning(f"Distributed cache ping failed: {e}")
            return False

    # -------------------------------------------------------------------------
    # Typed entity helpers
    # -------------------------------------------------------------------------

    async def get_company(self, ticker: str) -> CacheLookup[CompanyRecord]:
        return await self.get(CacheKind.COMPANY, company_key(ticker))

    async def set_company(self, company: CompanyRecord, ttl: int = 0) -> bool:
        return await self.set(CacheKind.COMPANY, company_key(company.ticker), company, ttl)

    async def delete_company(self, ticker: str) -> bool:
        return await self.delete(CacheKind.COMPANY, company_key(ticker))

    async def get_companies(self, tickers: list[str]) -> dict[str, CompanyRecord]:
        found = await self.get_many(CacheKind.COMPANY, [company_key(t) for t in tickers])
        return {t: found[company_key(t)] for t in tickers if company_key(t) in found}

    async def set_companies(self, companies: list[CompanyRecord], ttl: int = 0) -> bool:
        return await self.set_many(
            CacheKind.COMPANY, {company_key(c.ticker): c for c in companies}, ttl
        )

    async def get_brokerage(self, name: str) -> CacheLookup[BrokerageRecord]:
        return await self.get(CacheKind.BROKERAGE, brokerage_key(name))

    async def set_brokerage(self, brokerage: BrokerageRecord, ttl: int = 0) -> bool:
        return await self.set(
            CacheKind.BROKERAGE, brokerage_key(brokerage.name), brokerage, ttl
        )

    async def delete_brokerage(self, name: str) -> bool:
        return await self.delete(CacheKind.BROKERAGE, brokerage_key(name))

    async def get_brokerages(self, names: list[str]) -> dict[str, BrokerageRecord]:
        found = await self.get_many(CacheKind.BROKERAGE, [brokerage_key(n) for n in names])
        return {n: found[brokerage_key(n)] for n in names if brokerage_key(n) in found}

    async def set_brokerages(self, brokerages: list[BrokerageRecord], ttl: int = 0) -> bool:
        return await self.set_many(
            CacheKind.BROKERAGE, {brokerage_key(b.name): b for b in brokerages}, ttl
        )

    async def get_stock_rating(
        self, company_id: uuid.UUID, brokerage_id: uuid.UUID, event_time: datetime
    ) -> CacheLookup[StockRatingRecord]:
        return await self.get(
            CacheKind.STOCK_RATING, stock_rating_key(company_id, brokerage_id, event_time)
        )

    async def set_stock_rating(self, rating: StockRatingRecord, ttl: int = 0) -> bool:
        key = stock_rating_key(rating.company_id, rating.brokerage_id, rating.event_time)
        return await self.set(CacheKind.STOCK_RATING, key, rating, ttl)

    async def delete_stock_rating(self, rating: StockRatingRecord) -> bool:
        key = stock_rating_key(rating.company_id, rating.brokerage_id, rating.event_time)
        return await self.delete(CacheKind.STOCK_RATING, key)
