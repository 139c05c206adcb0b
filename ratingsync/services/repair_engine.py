"""Automatic repair of a safe subset of integrity issues.

Every repair starts from a fresh full audit, then:

* deletes orphaned stock ratings,
* collapses duplicate groups to one survivor (earliest ``created_at`` for
  companies and brokerages, first row as stored for stock ratings),
* fixes ticker case, ticker whitespace and name whitespace, unless another
  surviving row already holds the normalized key.

Any other consistency problem is reported as unrepairable with a reason.
Dry-run and apply share the decision logic; dry-run performs no writes.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime
from functools import partial
from typing import Any, Callable, Optional, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ratingsync.cache.layer import CacheLayer
from ratingsync.core.logging import get_logger
from ratingsync.domain.models import (
    DuplicateGroup,
    IntegrityIssue,
    IntegrityReport,
    RepairReport,
    Severity,
    UnrepairableIssue,
)
from ratingsync.repositories import brokerages_orm as brokerages
from ratingsync.repositories import companies_orm as companies
from ratingsync.repositories import stock_ratings_orm as stock_ratings
from ratingsync.services.integrity_auditor import (
    FIXABLE_PROBLEMS,
    NAME_WHITESPACE,
    TICKER_NOT_UPPERCASE,
    TICKER_WHITESPACE,
    IntegrityAuditor,
)


logger = get_logger("services.repair_engine")

RowT = TypeVar("RowT")


def choose_survivor(
    rows: Sequence[RowT], key: Optional[Callable[[RowT], Any]] = None
) -> RowT:
    """Pick the row a duplicate group keeps.

    With ``key`` the smallest row wins (ties go to the earlier row); without
    it the first row wins as given.
    """
    if key is None:
        return rows[0]
    return min(rows, key=key)


def _created_at(row) -> datetime:
    return row.created_at


class RepairEngine:
    """Audits the store and resolves orphans, duplicates and formatting issues."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        auditor: IntegrityAuditor | None = None,
        cache: CacheLayer | None = None,
    ):
        self._session_factory = session_factory
        self.auditor = auditor or IntegrityAuditor(session_factory)
        self.cache = cache

    async def repair(self, dry_run: bool = True) -> RepairReport:
        started = time.monotonic()
        report = RepairReport(dry_run=dry_run)
        logger.info(f"Starting repair (dry_run={dry_run})")

        async with self._session_factory() as session:
            audit = await self.auditor.validate_full_integrity(session)
            # The audit's autobegun read transaction is closed before writes start
            await session.rollback()

            evictions: list[tuple[str, str]] = []
            if dry_run:
                await self._plan(session, audit, report, dry_run=True, evictions=evictions)
            else:
                async with session.begin():
                    await self._plan(session, audit, report, dry_run=False, evictions=evictions)
                await self._evict(evictions)

        report.status = self._status(report)
        report.duration_seconds = time.monotonic() - started
        logger.info(
            f"Repair finished: {report.status.value}",
            extra={
                "dry_run": dry_run,
                "orphans_removed": report.orphans_removed,
                "duplicates_resolved": report.duplicates_resolved,
                "consistency_fixed": report.consistency_fixed,
                "unrepairable": len(report.unrepairable),
            },
        )
        return report

    @staticmethod
    def _status(report: RepairReport) -> Severity:
        if not report.unrepairable:
            return Severity.HEALTHY
        if report.total_repaired > 0:
            return Severity.WARNING
        return Severity.CRITICAL

    async def _plan(
        self,
        session: AsyncSession,
        audit: IntegrityReport,
        report: RepairReport,
        dry_run: bool,
        evictions: list[tuple[str, str]],
    ) -> None:
        removed: set[uuid.UUID] = set()

        for orphan in audit.orphans:
            ok = await self._apply(
                session,
                dry_run,
                partial(stock_ratings.delete_by_id, session, orphan.id),
                report,
                UnrepairableIssue(
                    issue_type="orphaned_stock_rating",
                    entity_id=orphan.id,
                    description=f"Orphaned stock rating: {orphan.reason}",
                    reason="",
                ),
            )
            if ok:
                report.orphans_removed += 1
                removed.add(orphan.id)

        for group in audit.duplicates:
            await self._resolve_duplicates(session, group, report, dry_run, removed, evictions)

        for issue in audit.consistency_issues:
            if issue.entity_id in removed:
                continue
            await self._fix_consistency(session, issue, report, dry_run, removed, evictions)

    async def _resolve_duplicates(
        self,
        session: AsyncSession,
        group: DuplicateGroup,
        report: RepairReport,
        dry_run: bool,
        removed: set[uuid.UUID],
        evictions: list[tuple[str, str]],
    ) -> None:
        if group.count <= 1:
            return

        if group.entity_type == "stock_rating":
            survivor_id = choose_survivor(group.ids)
            delete = stock_ratings.delete_by_id
            description = "Duplicate stock rating"
        else:
            repo = companies if group.entity_type == "company" else brokerages
            rows = [row for row in [await repo.get_by_id(session, i) for i in group.ids] if row]
            if not rows:
                return
            survivor_id = choose_survivor(rows, key=_created_at).id
            delete = repo.delete_by_id
            label = "ticker" if group.entity_type == "company" else "name"
            description = f"Duplicate {group.entity_type} with {label} {group.key}"
            evictions.append((group.entity_type, group.key))

        for entity_id in group.ids:
            if entity_id == survivor_id or entity_id in removed:
                continue
            ok = await self._apply(
                session,
                dry_run,
                partial(delete, session, entity_id),
                report,
                UnrepairableIssue(
                    issue_type=f"duplicate_{group.entity_type}",
                    entity_id=entity_id,
                    description=description,
                    reason="",
                ),
            )
            if ok:
                report.duplicates_resolved += 1
                removed.add(entity_id)

    async def _fix_consistency(
        self,
        session: AsyncSession,
        issue: IntegrityIssue,
        report: RepairReport,
        dry_run: bool,
        removed: set[uuid.UUID],
        evictions: list[tuple[str, str]],
    ) -> None:
        for problem in issue.problems:
            if problem not in FIXABLE_PROBLEMS:
                report.unrepairable.append(
                    UnrepairableIssue(
                        issue_type=f"inconsistent_{issue.entity_type}",
                        entity_id=issue.entity_id,
                        description=f"{issue.entity_type.replace('_', ' ').capitalize()} consistency issue: {problem}",
                        reason="Not automatically fixable; requires manual review",
                    )
                )

        fixable = [p for p in issue.problems if p in FIXABLE_PROBLEMS]
        if not fixable:
            return

        if issue.entity_type == "company":
            row = await companies.get_by_id(session, issue.entity_id)
            if row is None:
                return
            changes: dict[str, str] = {}
            if TICKER_NOT_UPPERCASE in fixable or TICKER_WHITESPACE in fixable:
                ticker = row.ticker.strip().upper()
                holders = await companies.find_by_canonical_ticker(session, ticker)
                if self._collides(holders, row.id, removed):
                    self._report_collision(report, issue, f"ticker {ticker}")
                    fixable = [p for p in fixable if p == NAME_WHITESPACE]
                else:
                    changes["ticker"] = ticker
            if NAME_WHITESPACE in fixable:
                changes["name"] = row.name.strip()
            if not changes:
                return
            update = partial(companies.update_fields, session, row.id, **changes)
            evictions.append(("company", row.ticker))
        elif issue.entity_type == "brokerage":
            row = await brokerages.get_by_id(session, issue.entity_id)
            if row is None:
                return
            new_name = row.name.strip()
            holders = await brokerages.find_by_canonical_name(session, new_name)
            if self._collides(holders, row.id, removed):
                self._report_collision(report, issue, f"name {new_name}")
                return
            update = partial(brokerages.update_name, session, row.id, new_name)
            evictions.append(("brokerage", row.name))
        else:
            return

        ok = await self._apply(
            session,
            dry_run,
            update,
            report,
            UnrepairableIssue(
                issue_type=f"inconsistent_{issue.entity_type}",
                entity_id=issue.entity_id,
                description=f"{issue.entity_type.capitalize()} consistency issue: {'; '.join(fixable)}",
                reason="",
            ),
        )
        if ok:
            report.consistency_fixed += 1

    @staticmethod
    def _collides(holders: Sequence[Any], entity_id: uuid.UUID, removed: set[uuid.UUID]) -> bool:
        """True when a surviving row other than ``entity_id`` already holds the key."""
        return any(h.id != entity_id and h.id not in removed for h in holders)

    @staticmethod
    def _report_collision(report: RepairReport, issue: IntegrityIssue, target: str) -> None:
        report.unrepairable.append(
            UnrepairableIssue(
                issue_type=f"inconsistent_{issue.entity_type}",
                entity_id=issue.entity_id,
                description=f"{issue.entity_type.capitalize()} consistency issue: normalizing to {target}",
                reason=f"Another {issue.entity_type} already uses {target}",
            )
        )

    async def _apply(
        self,
        session: AsyncSession,
        dry_run: bool,
        action: Callable[[], Any],
        report: RepairReport,
        on_failure: UnrepairableIssue,
    ) -> bool:
        """Run one mutation in a savepoint; failures become unrepairable issues."""
        if dry_run:
            logger.debug(f"DRY RUN: would repair {on_failure.issue_type} {on_failure.entity_id}")
            return True
        try:
            async with session.begin_nested():
                result = await action()
        except SQLAlchemyError as e:
            on_failure.reason = f"Write failed: {e}"
            report.unrepairable.append(on_failure)
            logger.warning(f"Repair of {on_failure.issue_type} {on_failure.entity_id} failed: {e}")
            return False
        if result is None or result is False:
            on_failure.reason = "Row no longer exists"
            report.unrepairable.append(on_failure)
            return False
        return True

    async def _evict(self, evictions: list[tuple[str, str]]) -> None:
        if self.cache is None:
            return
        for entity_type, key in evictions:
            if entity_type == "company":
                await self.cache.delete_company(key)
            else:
                await self.cache.delete_brokerage(key)
