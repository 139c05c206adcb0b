"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ratingsync.cache.layer import CacheLayer, CacheTTLs
from ratingsync.cache.memory import MemoryCacheBackend
from ratingsync.database.connection import build_engine, build_session_factory, create_all
from ratingsync.domain.models import StockRatingItem, utcnow
from ratingsync.ingestion.provider import ProviderPage

# Configure asyncio
pytest_plugins = ["pytest_asyncio"]


def rfc3339(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def recent_time(days: int = 1) -> str:
    """An RFC 3339 timestamp ``days`` days ago, whole seconds."""
    return rfc3339(utcnow() - timedelta(days=days))


def make_item(**overrides) -> StockRatingItem:
    """Build a valid upstream item; keyword arguments override fields."""
    data = {
        "ticker": "AAPL",
        "company": "Apple Inc.",
        "brokerage": "Goldman Sachs",
        "action": "upgraded by",
        "rating_from": "Neutral",
        "rating_to": "Buy",
        "target_from": "$180.00",
        "target_to": "$210.00",
        "time": recent_time(),
    }
    data.update(overrides)
    return StockRatingItem(**data)


class FakeProvider:
    """In-memory provider serving pre-built pages in order.

    An ``Exception`` instance in ``pages`` is raised when its page is fetched.
    """

    def __init__(self, pages: list):
        self.pages = list(pages)
        self.cursors: list[str | None] = []

    async def __aenter__(self) -> "FakeProvider":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def fetch_page(self, cursor: str | None) -> ProviderPage:
        self.cursors.append(cursor)
        page = self.pages[len(self.cursors) - 1]
        if isinstance(page, Exception):
            raise page
        return page


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database per test with the full schema."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ratingsync.db'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def memory_cache() -> MemoryCacheBackend:
    return MemoryCacheBackend(max_entries=100, sweep_interval=60.0)


@pytest.fixture
def cache(memory_cache: MemoryCacheBackend) -> CacheLayer:
    """Local-only cache layer with default TTLs."""
    return CacheLayer(local=memory_cache, ttls=CacheTTLs())


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
