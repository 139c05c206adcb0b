"""
Tests for the two-tier cache: keys, memory backend, Valkey backend and layer.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ratingsync.cache import client as cache_client
from ratingsync.cache.keys import (
    CacheKind,
    brokerage_key,
    company_key,
    normalize_key,
    stock_rating_key,
)
from ratingsync.cache.layer import CacheLayer, CacheResult, CacheStats, CacheTTLs
from ratingsync.cache.memory import MemoryCacheBackend
from ratingsync.cache.valkey import ValkeyCacheBackend
from ratingsync.core.exceptions import CacheError
from ratingsync.domain.models import BrokerageRecord, CompanyRecord, StockRatingRecord


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def company(ticker: str = "AAPL", name: str = "Apple Inc.") -> CompanyRecord:
    return CompanyRecord(id=uuid.uuid4(), ticker=ticker, name=name)


# =============================================================================
# Keys
# =============================================================================


class TestKeys:
    """Tests for key normalization."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("aapl", "AAPL"),
            ("  AAPL  ", "AAPL"),
            ("brk.b", "BRK_B"),
            ("Goldman Sachs", "GOLDMAN_SACHS"),
            ("Rosenblatt-Securities", "ROSENBLATT_SECURITIES"),
        ],
    )
    def test_normalize_key(self, raw, expected):
        """Keys are trimmed, uppercased and separator-free."""
        assert normalize_key(raw) == expected

    def test_equivalent_inputs_share_a_key(self):
        """Case and padding variants collapse to one key."""
        assert company_key("aapl ") == company_key("AAPL")
        assert brokerage_key("goldman sachs") == brokerage_key("Goldman Sachs ")

    def test_stock_rating_key_keeps_sub_second_precision(self):
        """Events half a second apart are distinct dedup triples."""
        cid, bid = uuid.uuid4(), uuid.uuid4()
        t1 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        t2 = datetime(2025, 3, 1, 12, 0, 0, 500000, tzinfo=timezone.utc)
        assert stock_rating_key(cid, bid, t1) != stock_rating_key(cid, bid, t2)
        assert stock_rating_key(cid, bid, t1) == f"{cid.hex}:{bid.hex}:{int(t1.timestamp()) * 1_000_000}"

    def test_stock_rating_key_ignores_offset_spelling(self):
        """The same instant in different offsets shares one key."""
        cid, bid = uuid.uuid4(), uuid.uuid4()
        utc_time = datetime(2025, 3, 1, 12, 0, 0, 250000, tzinfo=timezone.utc)
        local = utc_time.astimezone(timezone(timedelta(hours=-5)))
        assert stock_rating_key(cid, bid, utc_time) == stock_rating_key(cid, bid, local)


# =============================================================================
# Memory backend
# =============================================================================


class TestMemoryCacheBackend:
    """Tests for the bounded local TTL cache."""

    @pytest.mark.asyncio
    async def test_ttl_states(self):
        """TTL is -2 when missing, seconds left while live, -1 once expired."""
        clock = FakeClock()
        backend = MemoryCacheBackend(clock=clock)

        assert await backend.ttl(CacheKind.COMPANY, "AAPL") == -2

        await backend.set(CacheKind.COMPANY, "AAPL", "{}", ttl=10)
        assert await backend.ttl(CacheKind.COMPANY, "AAPL") == 10

        clock.advance(4.5)
        assert await backend.ttl(CacheKind.COMPANY, "AAPL") == 6

        clock.advance(6)
        assert await backend.ttl(CacheKind.COMPANY, "AAPL") == -1
        assert await backend.get(CacheKind.COMPANY, "AAPL") is None
        assert await backend.ttl(CacheKind.COMPANY, "AAPL") == -2

    @pytest.mark.asyncio
    async def test_expire_missing_key_raises(self):
        """Expire on a missing key is an error."""
        backend = MemoryCacheBackend(clock=FakeClock())
        with pytest.raises(CacheError) as exc_info:
            await backend.expire(CacheKind.COMPANY, "NOPE", 60)
        assert exc_info.value.details["operation"] == "expire"

    @pytest.mark.asyncio
    async def test_expire_extends_lifetime(self):
        """Expire resets the remaining time from now."""
        clock = FakeClock()
        backend = MemoryCacheBackend(clock=clock)
        await backend.set(CacheKind.BROKERAGE, "GS", "{}", ttl=5)

        clock.advance(4)
        await backend.expire(CacheKind.BROKERAGE, "GS", 100)
        clock.advance(50)

        assert await backend.exists(CacheKind.BROKERAGE, "GS")
        assert await backend.ttl(CacheKind.BROKERAGE, "GS") == 50

    @pytest.mark.asyncio
    async def test_sweep_drops_expired_entries(self):
        """Sweep removes exactly the expired entries."""
        clock = FakeClock()
        backend = MemoryCacheBackend(clock=clock)
        await backend.set(CacheKind.COMPANY, "A", "{}", ttl=1)
        await backend.set(CacheKind.COMPANY, "B", "{}", ttl=100)
        await backend.set(CacheKind.STOCK_RATING, "R", "{}", ttl=1)

        clock.advance(2)

        assert backend.sweep() == 2
        counts = await backend.key_counts()
        assert counts[CacheKind.COMPANY] == 1
        assert counts[CacheKind.STOCK_RATING] == 0

    @pytest.mark.asyncio
    async def test_bounded_per_kind(self):
        """The oldest entry is evicted once a kind is full."""
        backend = MemoryCacheBackend(max_entries=2, clock=FakeClock())
        for key in ("A", "B", "C"):
            await backend.set(CacheKind.COMPANY, key, key, ttl=60)
        await backend.set(CacheKind.BROKERAGE, "X", "X", ttl=60)

        assert await backend.get(CacheKind.COMPANY, "A") is None
        assert await backend.get(CacheKind.COMPANY, "C") == "C"
        assert await backend.get(CacheKind.BROKERAGE, "X") == "X"

    @pytest.mark.asyncio
    async def test_clear_by_kind(self):
        """Clearing one kind leaves the others alone."""
        backend = MemoryCacheBackend(clock=FakeClock())
        await backend.set(CacheKind.COMPANY, "A", "{}", ttl=60)
        await backend.set(CacheKind.BROKERAGE, "B", "{}", ttl=60)

        assert await backend.clear(CacheKind.COMPANY) == 1
        assert not await backend.exists(CacheKind.COMPANY, "A")
        assert await backend.exists(CacheKind.BROKERAGE, "B")

    @pytest.mark.asyncio
    async def test_sweep_task_lifecycle(self):
        """The background sweep runs between start and stop."""
        backend = MemoryCacheBackend(sweep_interval=0.01)
        await backend.set(CacheKind.COMPANY, "A", "{}", ttl=0)

        backend.start()
        assert backend.running
        await asyncio.sleep(0.05)
        await backend.stop()

        assert not backend.running
        assert (await backend.key_counts())[CacheKind.COMPANY] == 0


# =============================================================================
# Valkey backend
# =============================================================================


class TestValkeyCacheBackend:
    """Tests for the distributed backend with a mocked client."""

    @pytest.mark.asyncio
    async def test_keys_are_namespaced(self):
        """Every key carries the ratingsync namespace and kind prefix."""
        client = AsyncMock()
        client.get.return_value = '{"x": 1}'
        backend = ValkeyCacheBackend(client)

        assert await backend.get(CacheKind.COMPANY, "AAPL") == '{"x": 1}'
        client.get.assert_awaited_once_with("ratingsync:v1:company:ticker:AAPL")

        await backend.set(CacheKind.BROKERAGE, "GOLDMAN_SACHS", "{}", 14400)
        client.set.assert_awaited_once_with(
            "ratingsync:v1:brokerage:name:GOLDMAN_SACHS", "{}", ex=14400
        )

    @pytest.mark.asyncio
    async def test_client_errors_become_cache_errors(self):
        """Redis failures are wrapped with the operation and key."""
        client = AsyncMock()
        client.get.side_effect = RedisConnectionError("connection refused")
        backend = ValkeyCacheBackend(client)

        with pytest.raises(CacheError) as exc_info:
            await backend.get(CacheKind.COMPANY, "AAPL")
        assert exc_info.value.details == {"operation": "get", "key": "AAPL"}

    @pytest.mark.asyncio
    async def test_get_many_uses_mget(self):
        """Bulk reads are one MGET; misses are omitted."""
        client = AsyncMock()
        client.mget.return_value = ["a", None]
        backend = ValkeyCacheBackend(client)

        found = await backend.get_many(CacheKind.COMPANY, ["A", "B"])

        assert found == {"A": "a"}
        client.mget.assert_awaited_once_with(
            ["ratingsync:v1:company:ticker:A", "ratingsync:v1:company:ticker:B"]
        )

    @pytest.mark.asyncio
    async def test_set_many_uses_pipeline(self):
        """Bulk writes go through one non-transactional pipeline."""
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[True, True])
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=pipe)
        context.__aexit__ = AsyncMock(return_value=False)
        client = MagicMock()
        client.pipeline.return_value = context
        backend = ValkeyCacheBackend(client)

        await backend.set_many(CacheKind.COMPANY, {"A": "a", "B": "b"}, 60)

        client.pipeline.assert_called_once_with(transaction=False)
        assert pipe.set.call_count == 2
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expire_missing_key_raises(self):
        """EXPIRE returning false means the key does not exist."""
        client = AsyncMock()
        client.expire.return_value = False
        backend = ValkeyCacheBackend(client)

        with pytest.raises(CacheError):
            await backend.expire(CacheKind.COMPANY, "AAPL", 60)

    @pytest.mark.asyncio
    async def test_key_counts_scan_per_kind(self):
        """Key counts come from SCAN over each kind's prefix."""
        keys = {
            "ratingsync:v1:company:ticker:*": ["k1", "k2"],
            "ratingsync:v1:brokerage:name:*": ["k3"],
            "ratingsync:v1:stock_rating:*": [],
        }

        async def scan_iter(match, count):
            for key in keys[match]:
                yield key

        client = MagicMock()
        client.scan_iter = scan_iter
        backend = ValkeyCacheBackend(client)

        counts = await backend.key_counts()

        assert counts == {
            CacheKind.COMPANY: 2,
            CacheKind.BROKERAGE: 1,
            CacheKind.STOCK_RATING: 0,
        }


# =============================================================================
# Layer
# =============================================================================


def failing_backend() -> MagicMock:
    backend = MagicMock()
    for name in ("get", "set", "delete", "exists", "ttl", "expire", "get_many",
                 "set_many", "clear", "key_counts", "ping"):
        setattr(backend, name, AsyncMock(side_effect=CacheError(name, "", "connection refused")))
    return backend


class TestCacheLayer:
    """Tests for the composed local + distributed layer."""

    @pytest.mark.asyncio
    async def test_round_trip_and_stats(self, cache):
        """Hits and misses feed the hit rate."""
        assert (await cache.get_company("AAPL")).status is CacheResult.NOT_FOUND

        record = company()
        await cache.set_company(record)
        lookup = await cache.get_company("aapl")

        assert lookup.found
        assert lookup.value == record
        stats = await cache.stats()
        assert (stats.hits, stats.misses) == (1, 1)
        assert stats.hit_rate == pytest.approx(50.0)
        assert stats.company_keys == 1
        assert stats.total_keys == 1
        assert stats.last_access is not None

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, cache):
        """Mutating a returned record does not change the cache."""
        await cache.set_company(company())

        first = (await cache.get_company("AAPL")).value
        first.name = "Changed"

        assert (await cache.get_company("AAPL")).value.name == "Apple Inc."

    @pytest.mark.asyncio
    async def test_default_ttl_per_kind(self, cache):
        """A zero TTL picks the kind's configured default."""
        await cache.set_company(company())
        await cache.set_brokerage(BrokerageRecord(id=uuid.uuid4(), name="Goldman Sachs"))

        assert await cache.ttl(CacheKind.COMPANY, "AAPL") == CacheTTLs().company
        assert await cache.ttl(CacheKind.BROKERAGE, "GOLDMAN_SACHS") == CacheTTLs().brokerage

    @pytest.mark.asyncio
    async def test_expire_missing_everywhere_raises(self, cache):
        """Expire fails only when no layer holds the key."""
        with pytest.raises(CacheError):
            await cache.expire(CacheKind.COMPANY, "AAPL", 60)

        await cache.set_company(company())
        await cache.expire(CacheKind.COMPANY, "AAPL", 60)
        assert await cache.ttl(CacheKind.COMPANY, "AAPL") == 60

    @pytest.mark.asyncio
    async def test_distributed_failure_is_unavailable(self):
        """A failing distributed backend degrades to UNAVAILABLE, never raises."""
        layer = CacheLayer(local=MemoryCacheBackend(), distributed=failing_backend(), ttls=CacheTTLs())

        lookup = await layer.get_company("AAPL")
        assert lookup.status is CacheResult.UNAVAILABLE
        assert not lookup.found

        assert await layer.set_company(company()) is False
        assert (await layer.get_company("AAPL")).found
        assert await layer.ping() is False
        stats = await layer.stats()
        assert stats.distributed_available is False

    @pytest.mark.asyncio
    async def test_distributed_hit_backfills_local(self):
        """A remote hit is copied into the local layer."""
        record = company()
        remote = AsyncMock()
        remote.get.return_value = record.model_dump_json()
        local = MemoryCacheBackend()
        layer = CacheLayer(local=local, distributed=remote, ttls=CacheTTLs())

        lookup = await layer.get_company("AAPL")

        assert lookup.found
        assert lookup.value.id == record.id
        assert await local.exists(CacheKind.COMPANY, "AAPL")

    @pytest.mark.asyncio
    async def test_undecodable_remote_entry_is_evicted(self):
        """Garbage in the distributed cache counts as a miss and is deleted."""
        remote = AsyncMock()
        remote.get.return_value = "not json"
        layer = CacheLayer(local=MemoryCacheBackend(), distributed=remote, ttls=CacheTTLs())

        lookup = await layer.get_company("AAPL")

        assert lookup.status is CacheResult.NOT_FOUND
        remote.delete.assert_awaited_once_with(CacheKind.COMPANY, "AAPL")

    @pytest.mark.asyncio
    async def test_bulk_helpers(self, cache):
        """Bulk get returns only the keys that are present, keyed by input."""
        await cache.set_companies([company("AAPL"), company("MSFT", "Microsoft")])

        found = await cache.get_companies(["aapl", "MSFT", "NVDA"])

        assert set(found) == {"aapl", "MSFT"}
        assert found["MSFT"].name == "Microsoft"

    @pytest.mark.asyncio
    async def test_stock_rating_round_trip(self, cache):
        """Ratings are cached by their dedup triple."""
        rating = StockRatingRecord(
            id=uuid.uuid4(),
            company_id=uuid.uuid4(),
            brokerage_id=uuid.uuid4(),
            action="upgraded by",
            event_time=datetime(2025, 3, 1, 12, tzinfo=timezone.utc),
        )
        await cache.set_stock_rating(rating)

        lookup = await cache.get_stock_rating(rating.company_id, rating.brokerage_id, rating.event_time)
        assert lookup.found
        assert lookup.value.id == rating.id

        assert await cache.delete_stock_rating(rating)
        assert not (await cache.get_stock_rating(rating.company_id, rating.brokerage_id, rating.event_time)).found

    @pytest.mark.asyncio
    async def test_clear_companies(self, cache):
        """Clearing companies leaves brokerages cached."""
        await cache.set_company(company())
        await cache.set_brokerage(BrokerageRecord(id=uuid.uuid4(), name="Goldman Sachs"))

        assert await cache.clear_companies() == 1
        stats = await cache.stats()
        assert (stats.company_keys, stats.brokerage_keys) == (0, 1)


class TestCacheStats:
    """Tests for CacheStats."""

    def test_hit_rate_without_traffic(self):
        """No accesses means a zero hit rate."""
        assert CacheStats().hit_rate == 0.0

    def test_to_dict(self):
        """Serialized stats include derived fields."""
        data = CacheStats(hits=3, misses=1, company_keys=2, brokerage_keys=1).to_dict()
        assert data["hit_rate"] == 75.0
        assert data["total_keys"] == 3
        assert data["last_access"] is None


# =============================================================================
# Client discovery
# =============================================================================


class TestConnectDistributedBackend:
    """Tests for choosing the distributed backend at startup."""

    @pytest.mark.asyncio
    async def test_disabled_by_configuration(self, mocker):
        mocker.patch.object(cache_client.settings, "cache_enabled", False)
        factory = mocker.patch.object(cache_client, "get_valkey_client")

        assert await cache_client.connect_distributed_backend() is None
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_unreachable_server_falls_back(self, mocker):
        """A failed PING means local-only caching, not an error."""
        redis = MagicMock()
        redis.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        mocker.patch.object(cache_client.settings, "cache_enabled", True)
        mocker.patch.object(cache_client, "get_valkey_client", return_value=redis)

        assert await cache_client.connect_distributed_backend() is None

    @pytest.mark.asyncio
    async def test_reachable_server_returns_backend(self, mocker):
        redis = MagicMock()
        redis.ping = AsyncMock(return_value=True)
        mocker.patch.object(cache_client.settings, "cache_enabled", True)
        mocker.patch.object(cache_client, "get_valkey_client", return_value=redis)

        backend = await cache_client.connect_distributed_backend()

        assert isinstance(backend, ValkeyCacheBackend)
