"""Find-or-create resolution of upstream items into companies, brokerages and ratings.

Lookup order for every entity is: per-batch memo, cache, store, create.
Canonical keys are the trimmed uppercase ticker and the trimmed brokerage
name; a rating is identified by its dedup triple (company, brokerage,
event time). An existing company or brokerage name is only replaced by a
strictly longer one.

Cache writes are queued and published by the caller once the surrounding
transaction commits, so a rolled-back batch never leaves rows in the cache
that the store does not have.

Usage:
    resolver = EntityResolver(cache=layer)

    async def work(session):
        return await resolver.resolve_batch(session, items)

    result = await executor.run_transaction_with_retry(work)
    await resolver.publish_pending()
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ratingsync.cache.layer import CacheLayer
from ratingsync.core.exceptions import (
    AppException,
    EventTimeError,
    PermanentStoreError,
    TransientStoreError,
    ValidationError,
)
from ratingsync.core.logging import get_logger
from ratingsync.domain.models import (
    BrokerageRecord,
    CompanyRecord,
    StockRatingItem,
    StockRatingRecord,
    utc,
    utcnow,
)
from ratingsync.domain.validation import ValidationConfig, years_ago
from ratingsync.repositories import brokerages_orm as brokerages
from ratingsync.repositories import companies_orm as companies
from ratingsync.repositories import stock_ratings_orm as stock_ratings
from ratingsync.services.transactions import is_retriable_error


logger = get_logger("services.entity_resolver")

REQUIRED_FIELDS = ("ticker", "company", "brokerage", "action", "time")

ERROR_CATEGORIES = (
    ("validation", "validation"),
    ("company", "company"),
    ("brokerage", "brokerage"),
    ("rating", "rating"),
    ("time", "time_parsing"),
)


def canonical_ticker(ticker: str) -> str:
    return ticker.strip().upper()


def canonical_name(name: str) -> str:
    return name.strip()


def categorize_error(error: BaseException) -> str:
    """Bucket a mapping failure by the first keyword found in its message."""
    if isinstance(error, ValidationError):
        return "validation"
    message = str(error).lower()
    for keyword, category in ERROR_CATEGORIES:
        if keyword in message:
            return category
    return "unknown"


def parse_rfc3339(raw: str) -> datetime:
    """Parse an RFC 3339 timestamp; an explicit offset (or ``Z``) is required."""
    value = raw.strip()
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        raise ValueError("missing UTC offset")
    return utc(parsed)


def _store_failure(stage: str, error: SQLAlchemyError) -> AppException:
    message = f"{stage} failed: {error}"
    if is_retriable_error(error):
        return TransientStoreError(message)
    return PermanentStoreError(message)


# =============================================================================
# Results
# =============================================================================


@dataclass
class ResolvedItem:
    company: CompanyRecord
    brokerage: BrokerageRecord
    rating: StockRatingRecord
    company_created: bool = False
    brokerage_created: bool = False
    rating_created: bool = False


@dataclass
class FailedMapping:
    item: StockRatingItem
    error: str
    error_type: str


@dataclass
class BatchResult:
    """Counters and outcomes for one ``resolve_batch`` call."""

    total_items: int = 0
    success_count: int = 0
    failure_count: int = 0
    companies_created: int = 0
    brokerages_created: int = 0
    ratings_created: int = 0
    duplicate_ratings: int = 0
    resolved: list[ResolvedItem] = field(default_factory=list)
    failed: list[FailedMapping] = field(default_factory=list)

    def record_success(self, outcome: ResolvedItem) -> None:
        self.resolved.append(outcome)
        self.success_count += 1
        if outcome.company_created:
            self.companies_created += 1
        if outcome.brokerage_created:
            self.brokerages_created += 1
        if outcome.rating_created:
            self.ratings_created += 1
        else:
            self.duplicate_ratings += 1

    def record_failure(self, failure: FailedMapping) -> None:
        self.failed.append(failure)
        self.failure_count += 1

    def success_rate(self) -> float:
        """Percentage of items that resolved."""
        if self.total_items == 0:
            return 0.0
        return self.success_count / self.total_items * 100

    def error_breakdown(self) -> dict[str, int]:
        return dict(Counter(f.error_type for f in self.failed))

    def summary(self) -> str:
        return (
            f"Total: {self.total_items}, Success: {self.success_count}, "
            f"Failed: {self.failure_count}, Companies: {self.companies_created}, "
            f"Brokerages: {self.brokerages_created}, Ratings: {self.ratings_created}, "
            f"Duplicates: {self.duplicate_ratings}"
        )


# =============================================================================
# Resolver
# =============================================================================


class EntityResolver:
    """Resolves upstream items against cache and store, creating what is missing."""

    def __init__(
        self,
        cache: CacheLayer | None = None,
        config: ValidationConfig | None = None,
        use_cache: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache = cache if use_cache else None
        self.config = config or ValidationConfig()
        self._clock = clock
        self._pending: list[BaseModel] = []

    # -------------------------------------------------------------------------
    # Deferred cache writes
    # -------------------------------------------------------------------------

    @property
    def pending_cache_writes(self) -> int:
        return len(self._pending)

    async def publish_pending(self) -> None:
        """Write queued records to the cache; call after the transaction commits."""
        pending, self._pending = self._pending, []
        if self.cache is None:
            return
        for record in pending:
            if isinstance(record, CompanyRecord):
                await self.cache.set_company(record)
            elif isinstance(record, BrokerageRecord):
                await self.cache.set_brokerage(record)
            elif isinstance(record, StockRatingRecord):
                await self.cache.set_stock_rating(record)

    def discard_pending(self) -> None:
        self._pending.clear()

    def _queue(self, record: BaseModel) -> None:
        if self.cache is not None:
            self._pending.append(record)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate_item(self, item: StockRatingItem) -> datetime:
        """Check every field and return the parsed event time.

        Raises:
            ValidationError: with all field problems in ``details["fields"]``.
        """
        problems: dict[str, str] = {}
        for name in REQUIRED_FIELDS:
            if not getattr(item, name).strip():
                problems[name] = f"{name} is required"

        event_time: datetime | None = None
        if "time" not in problems:
            try:
                event_time = parse_rfc3339(item.time)
            except ValueError:
                problems["time"] = "invalid time format"

        if "ticker" not in problems:
            ticker = canonical_ticker(item.ticker)
            rules = self.config.company
            if not rules.ticker_min_length <= len(ticker) <= rules.ticker_max_length:
                problems["ticker"] = (
                    f"ticker length must be {rules.ticker_min_length}-"
                    f"{rules.ticker_max_length} characters"
                )

        if problems:
            raise ValidationError(
                message="Validation failed: " + "; ".join(problems.values()),
                details={"fields": problems},
            )
        return event_time

    def check_event_time(self, event_time: datetime) -> datetime:
        """Reject event times too far in the future or beyond the horizon."""
        now = self._clock()
        rules = self.config.stock_rating
        if event_time > now + timedelta(seconds=rules.future_tolerance_seconds):
            raise EventTimeError(f"event time {event_time.isoformat()} is in the future")
        if event_time < years_ago(now, rules.ingestion_horizon_years):
            raise EventTimeError(
                f"event time {event_time.isoformat()} is older than "
                f"{rules.ingestion_horizon_years} years"
            )
        return event_time

    # -------------------------------------------------------------------------
    # Company / brokerage
    # -------------------------------------------------------------------------

    async def resolve_company(
        self, session: AsyncSession, ticker: str, name: str
    ) -> tuple[CompanyRecord, bool]:
        """Return the company for ``ticker`` and whether it was created."""
        ticker = canonical_ticker(ticker)
        name = canonical_name(name)
        try:
            if self.cache is not None:
                lookup = await self.cache.get_company(ticker)
                if lookup.found and lookup.value.ticker == ticker:
                    record = await self._maybe_rename_company(session, lookup.value, name)
                    if record is not None:
                        return record, False
                    # Stale entry: row no longer exists
                    await self.cache.delete_company(ticker)

            existing = await companies.get_by_ticker(session, ticker)
            if existing is not None:
                record = CompanyRecord.model_validate(existing)
                record = await self._maybe_rename_company(session, record, name) or record
                self._queue(record)
                return record, False

            created = await companies.create(session, ticker=ticker, name=name)
        except SQLAlchemyError as e:
            raise _store_failure("company resolution", e) from e

        record = CompanyRecord.model_validate(created)
        self._queue(record)
        logger.debug(f"Created company {ticker}")
        return record, True

    async def _maybe_rename_company(
        self, session: AsyncSession, record: CompanyRecord, name: str
    ) -> CompanyRecord | None:
        if len(name) <= len(record.name):
            return record
        updated = await companies.update_name(session, record.id, name)
        if updated is None:
            return None
        record = CompanyRecord.model_validate(updated)
        self._queue(record)
        return record

    async def resolve_brokerage(
        self, session: AsyncSession, name: str
    ) -> tuple[BrokerageRecord, bool]:
        """Return the brokerage for ``name`` and whether it was created."""
        name = canonical_name(name)
        try:
            if self.cache is not None:
                lookup = await self.cache.get_brokerage(name)
                if lookup.found and lookup.value.name == name:
                    return lookup.value, False

            existing = await brokerages.get_by_name(session, name)
            if existing is not None:
                record = BrokerageRecord.model_validate(existing)
                self._queue(record)
                return record, False

            created = await brokerages.create(session, name=name)
        except SQLAlchemyError as e:
            raise _store_failure("brokerage resolution", e) from e

        record = BrokerageRecord.model_validate(created)
        self._queue(record)
        logger.debug(f"Created brokerage {name}")
        return record, True

    # -------------------------------------------------------------------------
    # Stock rating
    # -------------------------------------------------------------------------

    async def resolve_stock_rating(
        self,
        session: AsyncSession,
        company: CompanyRecord,
        brokerage: BrokerageRecord,
        item: StockRatingItem,
        event_time: datetime,
    ) -> tuple[StockRatingRecord, bool]:
        """Return the rating for the dedup triple, creating it when absent."""
        try:
            if self.cache is not None:
                lookup = await self.cache.get_stock_rating(company.id, brokerage.id, event_time)
                if lookup.found and (
                    lookup.value.company_id,
                    lookup.value.brokerage_id,
                    lookup.value.event_time,
                ) == (company.id, brokerage.id, event_time):
                    return lookup.value, False

            existing = await stock_ratings.find_existing(
                session, company.id, brokerage.id, event_time
            )
            if existing is not None:
                record = StockRatingRecord.model_validate(existing)
                self._queue(record)
                return record, False

            created = await stock_ratings.create(
                session,
                company_id=company.id,
                brokerage_id=brokerage.id,
                action=item.action.strip(),
                event_time=event_time,
                rating_from=item.rating_from.strip(),
                rating_to=item.rating_to.strip(),
                target_from=item.target_from.strip(),
                target_to=item.target_to.strip(),
                source="api",
                raw_data=item.model_dump(),
            )
        except SQLAlchemyError as e:
            raise _store_failure("rating resolution", e) from e

        record = StockRatingRecord.model_validate(created)
        self._queue(record)
        return record, True

    # -------------------------------------------------------------------------
    # Items and batches
    # -------------------------------------------------------------------------

    async def resolve_item(
        self,
        session: AsyncSession,
        item: StockRatingItem,
        company_memo: dict[str, CompanyRecord] | None = None,
        brokerage_memo: dict[str, BrokerageRecord] | None = None,
    ) -> ResolvedItem:
        """Validate and resolve one item inside a savepoint.

        A failure rolls back only this item's writes; memo entries and queued
        cache writes are kept only when the item succeeds.
        """
        event_time = self.check_event_time(self.validate_item(item))
        ticker = canonical_ticker(item.ticker)
        brokerage_name = canonical_name(item.brokerage)
        company_memo = company_memo if company_memo is not None else {}
        brokerage_memo = brokerage_memo if brokerage_memo is not None else {}
        mark = len(self._pending)

        try:
            async with session.begin_nested():
                company, company_created = await self._company_from_memo(
                    session, company_memo, ticker, item.company
                )
                if brokerage_name in brokerage_memo:
                    brokerage, brokerage_created = brokerage_memo[brokerage_name], False
                else:
                    brokerage, brokerage_created = await self.resolve_brokerage(
                        session, brokerage_name
                    )
                rating, rating_created = await self.resolve_stock_rating(
                    session, company, brokerage, item, event_time
                )
        except BaseException:
            del self._pending[mark:]
            raise

        company_memo[ticker] = company
        brokerage_memo[brokerage_name] = brokerage
        return ResolvedItem(
            company=company,
            brokerage=brokerage,
            rating=rating,
            company_created=company_created,
            brokerage_created=brokerage_created,
            rating_created=rating_created,
        )

    async def _company_from_memo(
        self,
        session: AsyncSession,
        memo: dict[str, CompanyRecord],
        ticker: str,
        name: str,
    ) -> tuple[CompanyRecord, bool]:
        cached = memo.get(ticker)
        if cached is None:
            return await self.resolve_company(session, ticker, name)
        try:
            renamed = await self._maybe_rename_company(session, cached, canonical_name(name))
        except SQLAlchemyError as e:
            raise _store_failure("company resolution", e) from e
        return renamed or cached, False

    async def resolve_batch(
        self, session: AsyncSession, items: list[StockRatingItem]
    ) -> BatchResult:
        """Resolve every item; per-item failures are recorded, not raised.

        Transient store failures are re-raised so the whole batch can be
        retried in a fresh transaction.
        """
        result = BatchResult(total_items=len(items))
        company_memo: dict[str, CompanyRecord] = {}
        brokerage_memo: dict[str, BrokerageRecord] = {}

        for index, item in enumerate(items):
            try:
                outcome = await self.resolve_item(session, item, company_memo, brokerage_memo)
            except TransientStoreError:
                raise
            except (AppException, SQLAlchemyError) as e:
                error_type = categorize_error(e)
                result.record_failure(
                    FailedMapping(item=item, error=str(e), error_type=error_type)
                )
                logger.debug(
                    f"Failed to map item {index + 1}: {e}",
                    extra={"error_type": error_type, "ticker": item.ticker},
                )
                continue
            result.record_success(outcome)

        logger.info(f"Batch resolved: {result.summary()}")
        return result
