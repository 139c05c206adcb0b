"""Tests for the ingestion coordinator and the HTTP provider.

Tests verify:
- Pagination, max pages and the delay between fetches
- Batch splitting and cumulative counters
- Abort on provider failure with committed pages kept
- Dry run, clear-first and validate-after
- StockApiProvider request/response handling
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import httpx
import pytest

from ratingsync.core.exceptions import ExternalServiceError, IngestionAborted
from ratingsync.database.orm import Company
from ratingsync.domain.models import Severity
from ratingsync.ingestion.coordinator import (
    IngestionCoordinator,
    PopulationConfig,
    PopulationState,
)
from ratingsync.ingestion.provider import ProviderPage, StockApiProvider
from ratingsync.repositories import brokerages_orm as brokerages
from ratingsync.repositories import companies_orm as companies
from ratingsync.repositories import stock_ratings_orm as stock_ratings
from tests.conftest import FakeProvider, make_item, recent_time


def config(**overrides) -> PopulationConfig:
    values = dict(batch_size=100, max_pages=0, delay_between=0.0, max_attempts=3)
    values.update(overrides)
    return PopulationConfig(**values)


def two_pages() -> list[ProviderPage]:
    return [
        ProviderPage(
            items=[
                make_item(ticker="AAPL", company="Apple Inc.", time=recent_time(1)),
                make_item(ticker="MSFT", company="Microsoft", time=recent_time(2)),
            ],
            next_cursor="MSFT",
            has_more=True,
        ),
        ProviderPage(
            items=[
                make_item(ticker="NVDA", company="NVIDIA", brokerage="Morgan Stanley", time=recent_time(3)),
                make_item(ticker="", company=""),
            ],
            next_cursor=None,
            has_more=False,
        ),
    ]


async def store_counts(session_factory) -> tuple[int, int, int]:
    async with session_factory() as session:
        return (
            await companies.count(session),
            await brokerages.count(session),
            await stock_ratings.count(session),
        )


# =============================================================================
# Coordinator
# =============================================================================


class TestIngestionCoordinator:
    """Tests for IngestionCoordinator.run."""

    @pytest.mark.asyncio
    async def test_walks_every_page(self, session_factory, sleep_recorder):
        """All pages are fetched with the cursor of the previous page."""
        provider = FakeProvider(two_pages())
        coordinator = IngestionCoordinator(provider, session_factory, sleep=sleep_recorder)

        result = await coordinator.run(config())

        assert result.state is PopulationState.COMPLETED
        assert coordinator.state is PopulationState.COMPLETED
        assert provider.cursors == [None, "MSFT"]
        assert result.total_pages == 2
        assert result.total_items == 4
        assert result.success_count == 3
        assert result.failure_count == 1
        assert result.skipped_items == 1
        assert result.processed_items == 3
        assert (result.companies_created, result.brokerages_created, result.ratings_created) == (3, 2, 3)
        assert result.error_breakdown() == {"validation": 1}
        assert result.success_rate() == pytest.approx(75.0)
        assert result.run_id
        assert await store_counts(session_factory) == (3, 2, 3)

    @pytest.mark.asyncio
    async def test_delay_between_pages_only(self, session_factory, sleep_recorder):
        """The pause happens between fetches, not before the first."""
        coordinator = IngestionCoordinator(FakeProvider(two_pages()), session_factory, sleep=sleep_recorder)

        await coordinator.run(config(delay_between=0.25))

        assert sleep_recorder.calls == [0.25]

    @pytest.mark.asyncio
    async def test_max_pages_limits_fetching(self, session_factory, sleep_recorder):
        """Only max_pages pages are requested."""
        provider = FakeProvider(two_pages())
        coordinator = IngestionCoordinator(provider, session_factory, sleep=sleep_recorder)

        result = await coordinator.run(config(max_pages=1))

        assert result.state is PopulationState.COMPLETED
        assert provider.cursors == [None]
        assert result.total_items == 2

    @pytest.mark.asyncio
    async def test_batches_split_each_page(self, session_factory, sleep_recorder, mocker):
        """A page larger than batch_size is persisted in several transactions."""
        items = [make_item(ticker=f"T{i}", company=f"Company {i}") for i in range(5)]
        coordinator = IngestionCoordinator(
            FakeProvider([ProviderPage(items=items)]), session_factory, sleep=sleep_recorder
        )
        spy = mocker.spy(coordinator.executor, "run_transaction_with_retry")

        result = await coordinator.run(config(batch_size=2))

        assert spy.call_count == 3
        assert result.ratings_created == 5

    @pytest.mark.asyncio
    async def test_provider_failure_aborts_and_keeps_committed_pages(self, session_factory, sleep_recorder):
        """A failed fetch aborts the run; earlier pages stay committed."""
        pages = [two_pages()[0], ExternalServiceError(message="Stock API unavailable")]
        coordinator = IngestionCoordinator(FakeProvider(pages), session_factory, sleep=sleep_recorder)

        result = await coordinator.run(config())

        assert result.state is PopulationState.ABORTED
        assert result.total_pages == 1
        assert result.pages_requested == 2
        assert "Stock API unavailable" in result.errors[-1]
        assert await store_counts(session_factory) == (2, 1, 2)
        with pytest.raises(IngestionAborted) as exc_info:
            result.raise_for_state()
        assert exc_info.value.details["pages"] == 1

    @pytest.mark.asyncio
    async def test_repeated_cursor_stops(self, session_factory, sleep_recorder):
        """A provider that keeps returning the same cursor cannot loop forever."""
        page = ProviderPage(items=[], next_cursor="same", has_more=True)
        provider = FakeProvider([page, page, page])
        coordinator = IngestionCoordinator(provider, session_factory, sleep=sleep_recorder)

        result = await coordinator.run(config())

        assert result.state is PopulationState.COMPLETED
        assert provider.cursors == [None, "same"]

    @pytest.mark.asyncio
    async def test_dry_run_persists_nothing(self, session_factory, sleep_recorder, cache):
        """Dry run resolves and counts but commits nothing and caches nothing."""
        coordinator = IngestionCoordinator(
            FakeProvider(two_pages()), session_factory, cache=cache, sleep=sleep_recorder
        )

        result = await coordinator.run(config(dry_run=True))

        assert result.state is PopulationState.COMPLETED
        assert result.dry_run is True
        assert result.ratings_created == 3
        assert await store_counts(session_factory) == (0, 0, 0)
        assert (await cache.stats()).total_keys == 0

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, session_factory, sleep_recorder, cache):
        """A second run over the same pages only finds duplicates."""
        pages = two_pages()
        await IngestionCoordinator(
            FakeProvider(pages), session_factory, cache=cache, sleep=sleep_recorder
        ).run(config())

        second = await IngestionCoordinator(
            FakeProvider(pages), session_factory, cache=cache, sleep=sleep_recorder
        ).run(config())

        assert second.ratings_created == 0
        assert second.duplicate_ratings == 3
        assert second.companies_created == 0
        assert await store_counts(session_factory) == (3, 2, 3)

    @pytest.mark.asyncio
    async def test_rerun_without_cache_is_idempotent(self, session_factory, sleep_recorder):
        """Deduplication does not depend on the cache."""
        pages = two_pages()
        for _ in range(2):
            result = await IngestionCoordinator(
                FakeProvider(pages), session_factory, sleep=sleep_recorder
            ).run(config(use_cache=False))

        assert result.duplicate_ratings == 3
        assert await store_counts(session_factory) == (3, 2, 3)

    @pytest.mark.asyncio
    async def test_clear_first(self, session_factory, sleep_recorder, cache):
        """Existing rows are removed before ingesting."""
        async with session_factory() as session:
            session.add(Company(id=uuid.uuid4(), ticker="OLD", name="Old Corp"))
            await session.commit()

        result = await IngestionCoordinator(
            FakeProvider(two_pages()), session_factory, cache=cache, sleep=sleep_recorder
        ).run(config(clear_first=True))

        assert result.cleared == {"stock_ratings": 0, "brokerages": 0, "companies": 1}
        async with session_factory() as session:
            assert await companies.get_by_ticker(session, "OLD") is None
            assert await companies.count(session) == 3

    @pytest.mark.asyncio
    async def test_clear_first_skipped_in_dry_run(self, session_factory, sleep_recorder):
        """Dry run never deletes existing data."""
        async with session_factory() as session:
            session.add(Company(id=uuid.uuid4(), ticker="OLD", name="Old Corp"))
            await session.commit()

        result = await IngestionCoordinator(
            FakeProvider(two_pages()), session_factory, sleep=sleep_recorder
        ).run(config(clear_first=True, dry_run=True))

        assert result.cleared == {}
        async with session_factory() as session:
            assert await companies.count(session) == 1

    @pytest.mark.asyncio
    async def test_validate_after_healthy(self, session_factory, sleep_recorder):
        """A healthy store gets an audit and no repair."""
        result = await IngestionCoordinator(
            FakeProvider(two_pages()), session_factory, sleep=sleep_recorder
        ).run(config(validate_after=True))

        assert result.integrity_report.status is Severity.HEALTHY
        assert result.repair_report is None

    @pytest.mark.asyncio
    async def test_validate_after_repairs_critical_store(self, session_factory, sleep_recorder):
        """A critical audit triggers repair and a second audit."""
        async with session_factory() as session:
            session.add_all([
                Company(id=uuid.uuid4(), ticker="DUP", name="Dup Corp",
                        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc)),
                Company(id=uuid.uuid4(), ticker="DUP", name="Dup Corp",
                        created_at=datetime(2024, 1, 2, tzinfo=timezone.utc)),
            ])
            await session.commit()

        result = await IngestionCoordinator(
            FakeProvider(two_pages()), session_factory, sleep=sleep_recorder
        ).run(config(validate_after=True))

        assert result.integrity_report.status is Severity.CRITICAL
        assert result.repair_report.duplicates_resolved == 1
        assert result.post_repair_report.status is Severity.HEALTHY
        data = result.to_dict()
        assert data["state"] == "completed"
        assert data["repair_report"]["duplicates_resolved"] == 1

    @pytest.mark.asyncio
    async def test_cache_is_populated_after_commit(self, session_factory, sleep_recorder, cache):
        """Committed entities are visible in the cache after the run."""
        await IngestionCoordinator(
            FakeProvider(two_pages()), session_factory, cache=cache, sleep=sleep_recorder
        ).run(config())

        assert (await cache.get_company("NVDA")).found
        assert (await cache.get_brokerage("Morgan Stanley")).found


class TestPopulationConfig:
    """Tests for PopulationConfig."""

    def test_from_settings_ignores_unset_overrides(self):
        """None overrides keep the configured defaults."""
        cfg = PopulationConfig.from_settings(batch_size=None, dry_run=True)
        assert cfg.batch_size == 100
        assert cfg.dry_run is True
        assert cfg.max_pages == 0


# =============================================================================
# Provider
# =============================================================================


def provider_for(handler) -> StockApiProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StockApiProvider(base_url="https://api.example.test/list", token="secret-token", client=client)


class TestStockApiProvider:
    """Tests for the HTTP provider with a mocked transport."""

    @pytest.mark.asyncio
    async def test_parses_page_and_sends_auth(self):
        """Items and the next cursor are read; the bearer token is sent."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={
                "items": [{
                    "ticker": "BSBR",
                    "company": "Banco Santander (Brasil)",
                    "brokerage": "The Goldman Sachs Group",
                    "action": "upgraded by",
                    "rating_from": "Sell",
                    "rating_to": "Neutral",
                    "target_from": "$4.20",
                    "target_to": "$4.70",
                    "time": "2025-01-13T00:30:05.813548892Z",
                    "unexpected": "ignored",
                }],
                "next_page": "BSBR",
            })

        async with provider_for(handler) as provider:
            page = await provider.fetch_page("AAPL")

        assert seen[0].headers["Authorization"] == "Bearer secret-token"
        assert seen[0].url.params["next_page"] == "AAPL"
        assert page.has_more is True
        assert page.next_cursor == "BSBR"
        assert page.items[0].ticker == "BSBR"
        assert page.items[0].target_to == "$4.70"

    @pytest.mark.asyncio
    async def test_first_page_has_no_cursor_and_empty_next_ends(self):
        """No cursor param on the first call; an empty next_page ends pagination."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"items": [], "next_page": ""})

        page = await provider_for(handler).fetch_page(None)

        assert "next_page" not in seen[0].url.params
        assert page.has_more is False
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_http_error_raises_external_service_error(self):
        """A 5xx response becomes ExternalServiceError with the status code."""
        provider = provider_for(lambda request: httpx.Response(503, text="down"))

        with pytest.raises(ExternalServiceError) as exc_info:
            await provider.fetch_page(None)
        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.asyncio
    async def test_network_error_raises_external_service_error(self):
        """Connection failures become ExternalServiceError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ExternalServiceError):
            await provider_for(handler).fetch_page(None)

    @pytest.mark.asyncio
    async def test_invalid_body_raises_external_service_error(self):
        """Non-JSON and non-object bodies are rejected."""
        with pytest.raises(ExternalServiceError):
            await provider_for(lambda request: httpx.Response(200, text="<html>")).fetch_page(None)
        with pytest.raises(ExternalServiceError):
            await provider_for(lambda request: httpx.Response(200, json=[1, 2])).fetch_page(None)
