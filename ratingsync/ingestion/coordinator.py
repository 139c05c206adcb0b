"""Population runs: fetch pages, resolve items, persist batches.

One run walks the provider from the first page until it reports no more
pages (or ``max_pages`` is reached). Every page is split into batches of
``batch_size`` items; each batch is resolved and committed in its own
transaction with retry, and its cache writes are published only after the
commit. A provider failure, or a batch that still fails after its retries,
aborts the run.

Usage:
    coordinator = IngestionCoordinator(provider, session_factory, cache=layer)
    result = await coordinator.run(PopulationConfig.from_settings())
    print(result.summary())
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ratingsync.cache.layer import CacheLayer
from ratingsync.core.config import settings
from ratingsync.core.exceptions import AppException, IngestionAborted
from ratingsync.core.logging import get_logger, run_id_var
from ratingsync.domain.models import (
    IntegrityReport,
    RepairReport,
    Severity,
    StockRatingItem,
    utcnow,
)
from ratingsync.domain.validation import ValidationConfig
from ratingsync.repositories import brokerages_orm as brokerages
from ratingsync.repositories import companies_orm as companies
from ratingsync.repositories import stock_ratings_orm as stock_ratings
from ratingsync.services.entity_resolver import BatchResult, EntityResolver, FailedMapping
from ratingsync.services.integrity_auditor import IntegrityAuditor
from ratingsync.services.repair_engine import RepairEngine
from ratingsync.services.transactions import (
    RetryCancelledError,
    RetryExhaustedError,
    TransactionExecutor,
)

from .provider import DataProvider


logger = get_logger("ingestion.coordinator")

# Failures in these categories mean the item itself was unusable
SKIPPED_CATEGORIES = frozenset({"validation", "time_parsing"})


class PopulationState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    MAPPING = "mapping"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class PopulationConfig:
    """Operational knobs for one population run."""

    batch_size: int = 100
    max_pages: int = 0  # 0 = unlimited
    delay_between: float = 0.1
    clear_first: bool = False
    use_cache: bool = True
    dry_run: bool = False
    validate_after: bool = False
    max_attempts: int = 3

    @classmethod
    def from_settings(cls, **overrides: Any) -> PopulationConfig:
        values: dict[str, Any] = {
            "batch_size": settings.population_batch_size,
            "max_pages": settings.population_max_pages,
            "delay_between": settings.population_delay_between,
            "max_attempts": settings.transaction_max_attempts,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class PopulationResult:
    """Cumulative outcome of a population run."""

    run_id: str = ""
    state: PopulationState = PopulationState.IDLE
    dry_run: bool = False
    started_at: datetime = field(default_factory=utcnow)
    duration_seconds: float = 0.0
    total_pages: int = 0
    pages_requested: int = 0
    total_items: int = 0
    processed_items: int = 0
    skipped_items: int = 0
    success_count: int = 0
    failure_count: int = 0
    companies_created: int = 0
    brokerages_created: int = 0
    ratings_created: int = 0
    duplicate_ratings: int = 0
    cleared: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    failed: list[FailedMapping] = field(default_factory=list)
    integrity_report: Optional[IntegrityReport] = None
    repair_report: Optional[RepairReport] = None
    post_repair_report: Optional[IntegrityReport] = None

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def add_batch(self, batch: BatchResult) -> None:
        self.total_items += batch.total_items
        self.success_count += batch.success_count
        self.failure_count += batch.failure_count
        self.processed_items += batch.success_count
        self.companies_created += batch.companies_created
        self.brokerages_created += batch.brokerages_created
        self.ratings_created += batch.ratings_created
        self.duplicate_ratings += batch.duplicate_ratings
        for failure in batch.failed:
            self.failed.append(failure)
            self.errors.append(f"{failure.item.ticker or '<no ticker>'}: {failure.error}")
            if failure.error_type in SKIPPED_CATEGORIES:
                self.skipped_items += 1

    def success_rate(self) -> float:
        """Percentage of fetched items that resolved."""
        if self.total_items == 0:
            return 0.0
        return self.success_count / self.total_items * 100

    def error_breakdown(self) -> dict[str, int]:
        return dict(Counter(f.error_type for f in self.failed))

    def summary(self) -> str:
        return (
            f"State: {self.state.value}, Pages: {self.total_pages}, "
            f"Total: {self.total_items}, Success: {self.success_count}, "
            f"Failed: {self.failure_count}, Companies: {self.companies_created}, "
            f"Brokerages: {self.brokerages_created}, Ratings: {self.ratings_created}, "
            f"Duplicates: {self.duplicate_ratings}, "
            f"Success rate: {self.success_rate():.1f}%"
        )

    def raise_for_state(self) -> None:
        """Raise ``IngestionAborted`` if the run did not complete."""
        if self.state is PopulationState.ABORTED:
            raise IngestionAborted(
                message=self.errors[-1] if self.errors else None,
                details={
                    "run_id": self.run_id,
                    "pages": self.total_pages,
                    "total_items": self.total_items,
                    "success_count": self.success_count,
                },
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "total_pages": self.total_pages,
            "pages_requested": self.pages_requested,
            "total_items": self.total_items,
            "processed_items": self.processed_items,
            "skipped_items": self.skipped_items,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "error_count": self.error_count,
            "companies_created": self.companies_created,
            "brokerages_created": self.brokerages_created,
            "ratings_created": self.ratings_created,
            "duplicate_ratings": self.duplicate_ratings,
            "success_rate": round(self.success_rate(), 2),
            "error_breakdown": self.error_breakdown(),
            "cleared": self.cleared,
            "errors": self.errors,
            "integrity_report": _dump(self.integrity_report),
            "repair_report": _dump(self.repair_report),
            "post_repair_report": _dump(self.post_repair_report),
        }


def _dump(report) -> dict[str, Any] | None:
    return report.model_dump(mode="json") if report is not None else None


def _chunks(items: list[StockRatingItem], size: int) -> Iterator[list[StockRatingItem]]:
    size = max(size, 1)
    for start in range(0, len(items), size):
        yield items[start : start + size]


class IngestionCoordinator:
    """Drives one provider through fetch, resolve and persist."""

    def __init__(
        self,
        provider: DataProvider,
        session_factory: async_sessionmaker[AsyncSession],
        cache: CacheLayer | None = None,
        validation: ValidationConfig | None = None,
        executor: TransactionExecutor | None = None,
        auditor: IntegrityAuditor | None = None,
        repair_engine: RepairEngine | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.cache = cache
        self.validation = validation or ValidationConfig()
        self._session_factory = session_factory
        self._sleep = sleep
        self.executor = executor or TransactionExecutor(session_factory, sleep=sleep)
        self.auditor = auditor or IntegrityAuditor(session_factory, self.validation)
        self.repair_engine = repair_engine or RepairEngine(
            session_factory, auditor=self.auditor, cache=cache
        )
        self._cancel_event = asyncio.Event()
        self.state = PopulationState.IDLE

    def cancel(self) -> None:
        """Stop the run after the current page; pending retry waits end early."""
        self._cancel_event.set()

    async def run(self, config: PopulationConfig | None = None) -> PopulationResult:
        config = config or PopulationConfig.from_settings()
        run_id = uuid.uuid4().hex[:12]
        token = run_id_var.set(run_id)
        result = PopulationResult(run_id=run_id, dry_run=config.dry_run)
        started = time.monotonic()
        self._cancel_event.clear()

        logger.info(
            "Starting population run",
            extra={
                "batch_size": config.batch_size,
                "max_pages": config.max_pages,
                "dry_run": config.dry_run,
                "clear_first": config.clear_first,
                "use_cache": config.use_cache,
            },
        )
        try:
            await self._run(config, result)
        finally:
            result.duration_seconds = time.monotonic() - started
            self.state = result.state
            logger.info(f"Population run finished in {result.duration_seconds:.2f}s: {result.summary()}")
            run_id_var.reset(token)
        return result

    def _set_state(self, result: PopulationResult, state: PopulationState) -> None:
        result.state = state
        self.state = state

    async def _run(self, config: PopulationConfig, result: PopulationResult) -> None:
        resolver = EntityResolver(self.cache, self.validation, use_cache=config.use_cache)
        cursor: str | None = None

        try:
            if config.clear_first:
                await self._clear(config, result)

            while True:
                if config.max_pages and result.pages_requested >= config.max_pages:
                    logger.info(f"Reached max pages ({config.max_pages})")
                    break
                if self._cancel_event.is_set():
                    raise IngestionAborted(message="Population run cancelled")
                if result.pages_requested and config.delay_between > 0:
                    await self._sleep(config.delay_between)

                self._set_state(result, PopulationState.FETCHING)
                result.pages_requested += 1
                page = await self.provider.fetch_page(cursor)
                result.total_pages += 1
                logger.info(
                    f"Fetched page {result.total_pages} with {len(page.items)} items",
                    extra={"cursor": cursor, "has_more": page.has_more},
                )

                self._set_state(result, PopulationState.MAPPING)
                for chunk in _chunks(page.items, config.batch_size):
                    self._set_state(result, PopulationState.PERSISTING)
                    batch = await self._persist(resolver, chunk, config)
                    result.add_batch(batch)

                if not page.has_more or not page.next_cursor:
                    break
                if page.next_cursor == cursor:
                    logger.warning(f"Provider returned the same cursor twice: {cursor}")
                    break
                cursor = page.next_cursor

        except (RetryExhaustedError, RetryCancelledError, AppException, SQLAlchemyError) as e:
            resolver.discard_pending()
            self._set_state(result, PopulationState.ABORTED)
            result.errors.append(f"Run aborted: {e}")
            logger.error(
                f"Population run aborted: {e}",
                extra={"pages": result.total_pages, "cursor": cursor},
            )
            return

        self._set_state(result, PopulationState.COMPLETED)
        if config.validate_after:
            await self._validate(config, result)

    async def _persist(
        self,
        resolver: EntityResolver,
        chunk: list[StockRatingItem],
        config: PopulationConfig,
    ) -> BatchResult:
        async def work(session: AsyncSession) -> BatchResult:
            # Writes queued by a failed attempt belong to a rolled back transaction
            resolver.discard_pending()
            return await resolver.resolve_batch(session, chunk)

        try:
            batch = await self.executor.run_transaction_with_retry(
                work,
                max_attempts=config.max_attempts,
                cancel_event=self._cancel_event,
                rollback_only=config.dry_run,
            )
        except BaseException:
            resolver.discard_pending()
            raise

        if config.dry_run:
            resolver.discard_pending()
        else:
            await resolver.publish_pending()
        return batch

    async def _clear(self, config: PopulationConfig, result: PopulationResult) -> None:
        if config.dry_run:
            logger.info("Dry run: skipping clear of existing data")
            return

        async def work(session: AsyncSession) -> dict[str, int]:
            return {
                "stock_ratings": await stock_ratings.delete_all(session),
                "brokerages": await brokerages.delete_all(session),
                "companies": await companies.delete_all(session),
            }

        result.cleared = await self.executor.run_transaction_with_retry(
            work, max_attempts=config.max_attempts, cancel_event=self._cancel_event
        )
        if self.cache is not None:
            await self.cache.clear()
        logger.warning("Cleared existing data", extra=result.cleared)

    async def _validate(self, config: PopulationConfig, result: PopulationResult) -> None:
        report = await self.auditor.audit()
        result.integrity_report = report
        if report.status is not Severity.CRITICAL:
            return

        logger.warning("Post-ingestion audit is critical, running repair")
        result.repair_report = await self.repair_engine.repair(dry_run=config.dry_run)
        result.post_repair_report = await self.auditor.audit()
