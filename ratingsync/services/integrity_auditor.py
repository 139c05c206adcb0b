"""Full-scan integrity audit of companies, brokerages and stock ratings.

Four independent passes, each over the whole store:

1. Orphans - ratings whose company or brokerage row is gone (one LEFT JOIN).
2. Consistency - formatting problems: ticker case and whitespace, name
   whitespace, negative market cap, event times in the future or outside
   the consistency horizon.
3. Duplicates - canonical keys held by more than one row.
4. Business rules - length bounds, required fields, nil references and the
   (wider) business horizon.

Orphans and duplicate groups are always critical. Consistency findings are
warnings and business rule findings are graded per row by violation count;
either is escalated to critical when its category exceeds the configured
critical limit. Overall status is the worst severity found.

Usage:
    auditor = IntegrityAuditor(session_factory)
    report = await auditor.audit()
    if report.status is Severity.CRITICAL:
        ...
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ratingsync.core.logging import get_logger
from ratingsync.domain.models import (
    DuplicateGroup,
    IntegrityIssue,
    IntegrityReport,
    IntegritySummary,
    OrphanedRecord,
    Severity,
    utcnow,
)
from ratingsync.domain.validation import CategoryThresholds, ValidationConfig, years_ago
from ratingsync.repositories import brokerages_orm as brokerages
from ratingsync.repositories import companies_orm as companies
from ratingsync.repositories import stock_ratings_orm as stock_ratings


logger = get_logger("services.integrity_auditor")

NIL_UUID = uuid.UUID(int=0)

# Consistency problems the repair engine knows how to fix
TICKER_NOT_UPPERCASE = "Ticker should be uppercase"
TICKER_WHITESPACE = "Ticker has extra whitespace"
NAME_WHITESPACE = "Name has extra whitespace"
FIXABLE_PROBLEMS = frozenset({TICKER_NOT_UPPERCASE, TICKER_WHITESPACE, NAME_WHITESPACE})

ORPHANS = "orphaned_records"
CONSISTENCY = "consistency_issues"
DUPLICATES = "duplicate_records"
BUSINESS_RULES = "business_rule_violations"


def category_status(count: int, thresholds: CategoryThresholds) -> Severity:
    if count == 0:
        return Severity.HEALTHY
    if count <= thresholds.warning:
        return Severity.WARNING
    return Severity.CRITICAL


def _escalate(issues: list[IntegrityIssue], thresholds: CategoryThresholds) -> None:
    if len(issues) > thresholds.critical:
        for issue in issues:
            issue.severity = Severity.CRITICAL


class IntegrityAuditor:
    """Runs the four validation passes and assembles an ``IntegrityReport``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: ValidationConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.config = config or ValidationConfig()
        self._clock = clock

    async def audit(self) -> IntegrityReport:
        """Run a full audit in a dedicated read-only session."""
        if self._session_factory is None:
            raise RuntimeError("IntegrityAuditor.audit() needs a session factory")
        async with self._session_factory() as session:
            return await self.validate_full_integrity(session)

    async def validate_full_integrity(self, session: AsyncSession) -> IntegrityReport:
        started = time.monotonic()
        report = IntegrityReport(checked_at=self._clock())

        report.orphans = await self.validate_orphans(session)
        report.consistency_issues = await self.validate_consistency(session)
        report.duplicates = await self.validate_duplicates(session)
        report.business_rule_violations = await self.validate_business_rules(session)

        report.category_status = {
            ORPHANS: Severity.CRITICAL if report.orphans else Severity.HEALTHY,
            CONSISTENCY: category_status(
                len(report.consistency_issues), self.config.consistency
            ),
            DUPLICATES: Severity.CRITICAL if report.duplicates else Severity.HEALTHY,
            BUSINESS_RULES: category_status(
                len(report.business_rule_violations), self.config.business_rules
            ),
        }
        report.summary = self._summarize(report)
        report.status = self._overall_status(report.summary)
        report.duration_seconds = time.monotonic() - started

        logger.info(
            f"Integrity audit finished: {report.status.value}",
            extra={
                "orphans": len(report.orphans),
                "consistency": len(report.consistency_issues),
                "duplicates": len(report.duplicates),
                "business_rules": len(report.business_rule_violations),
            },
        )
        return report

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    async def validate_orphans(self, session: AsyncSession) -> list[OrphanedRecord]:
        orphans = await stock_ratings.find_orphans(session)
        if orphans:
            logger.warning(f"Found {len(orphans)} orphaned stock ratings")
        return orphans

    async def validate_consistency(self, session: AsyncSession) -> list[IntegrityIssue]:
        now = self._clock()
        horizon = self.config.stock_rating.consistency_horizon_years
        oldest = years_ago(now, horizon)
        issues: list[IntegrityIssue] = []

        for company in await companies.get_all(session):
            problems = []
            if company.ticker != company.ticker.upper():
                problems.append(TICKER_NOT_UPPERCASE)
            if company.ticker != company.ticker.strip():
                problems.append(TICKER_WHITESPACE)
            if company.name != company.name.strip():
                problems.append(NAME_WHITESPACE)
            if company.market_cap is not None and company.market_cap < 0:
                problems.append("Market cap cannot be negative")
            if problems:
                issues.append(
                    IntegrityIssue(
                        entity_type="company",
                        entity_id=company.id,
                        label=company.ticker,
                        problems=problems,
                    )
                )

        for brokerage in await brokerages.get_all(session):
            problems = []
            if brokerage.name != brokerage.name.strip():
                problems.append(NAME_WHITESPACE)
            if len(brokerage.name.strip()) < self.config.brokerage.name_min_length:
                problems.append("Name too short")
            if problems:
                issues.append(
                    IntegrityIssue(
                        entity_type="brokerage",
                        entity_id=brokerage.id,
                        label=brokerage.name,
                        problems=problems,
                    )
                )

        for rating in await stock_ratings.get_all(session):
            problems = []
            if rating.event_time > now:
                problems.append("Event time cannot be in the future")
            if rating.event_time <= oldest:
                problems.append(
                    f"Event time is too old for consistency validation (max {horizon} years)"
                )
            if problems:
                issues.append(
                    IntegrityIssue(
                        entity_type="stock_rating",
                        entity_id=rating.id,
                        problems=problems,
                    )
                )

        _escalate(issues, self.config.consistency)
        return issues

    async def validate_duplicates(self, session: AsyncSession) -> list[DuplicateGroup]:
        groups: list[DuplicateGroup] = []

        for ticker, rows in await companies.find_duplicate_groups(session):
            groups.append(
                DuplicateGroup(entity_type="company", key=ticker, ids=[r.id for r in rows])
            )
        for name, rows in await brokerages.find_duplicate_groups(session):
            groups.append(
                DuplicateGroup(entity_type="brokerage", key=name, ids=[r.id for r in rows])
            )
        for (company_id, brokerage_id, event_time), rows in (
            await stock_ratings.find_duplicate_groups(session)
        ):
            groups.append(
                DuplicateGroup(
                    entity_type="stock_rating",
                    key=f"{company_id}:{brokerage_id}:{event_time.isoformat()}",
                    ids=[r.id for r in rows],
                )
            )

        if groups:
            logger.warning(f"Found {len(groups)} duplicate groups")
        return groups

    async def validate_business_rules(self, session: AsyncSession) -> list[IntegrityIssue]:
        now = self._clock()
        company_rules = self.config.company
        brokerage_rules = self.config.brokerage
        rating_rules = self.config.stock_rating
        oldest = years_ago(now, rating_rules.business_horizon_years)
        issues: list[IntegrityIssue] = []

        for company in await companies.get_all(session):
            violations = []
            if not company_rules.ticker_min_length <= len(company.ticker) <= company_rules.ticker_max_length:
                violations.append(
                    f"Ticker length must be {company_rules.ticker_min_length}-"
                    f"{company_rules.ticker_max_length} characters"
                )
            if not company_rules.name_min_length <= len(company.name) <= company_rules.name_max_length:
                violations.append(
                    f"Company name length must be {company_rules.name_min_length}-"
                    f"{company_rules.name_max_length} characters"
                )
            if company.market_cap is not None and company.market_cap < 0:
                violations.append("Market cap cannot be negative")
            if company.is_active and (not company.ticker or not company.name):
                violations.append("Active companies must have ticker and name")
            if violations:
                issues.append(
                    IntegrityIssue(
                        entity_type="company",
                        entity_id=company.id,
                        label=company.ticker,
                        problems=violations,
                        severity=self._severity(len(violations), company_rules.violations_for_critical),
                    )
                )

        for brokerage in await brokerages.get_all(session):
            violations = []
            if not brokerage_rules.name_min_length <= len(brokerage.name) <= brokerage_rules.name_max_length:
                violations.append(
                    f"Brokerage name length must be {brokerage_rules.name_min_length}-"
                    f"{brokerage_rules.name_max_length} characters"
                )
            if brokerage.is_active and not brokerage.name.strip():
                violations.append("Active brokerages must have a valid name")
            if violations:
                issues.append(
                    IntegrityIssue(
                        entity_type="brokerage",
                        entity_id=brokerage.id,
                        label=brokerage.name,
                        problems=violations,
                        severity=self._severity(len(violations), brokerage_rules.violations_for_critical),
                    )
                )

        for rating in await stock_ratings.get_all(session):
            violations = []
            if rating.event_time > now:
                violations.append("Event time cannot be in the future")
            if rating.event_time <= oldest:
                violations.append(
                    f"Event time cannot be older than {rating_rules.business_horizon_years} years"
                )
            if not rating.action.strip():
                violations.append("Action cannot be empty")
            if rating.company_id is None or rating.company_id == NIL_UUID:
                violations.append("Company ID cannot be nil")
            if rating.brokerage_id is None or rating.brokerage_id == NIL_UUID:
                violations.append("Brokerage ID cannot be nil")
            if violations:
                issues.append(
                    IntegrityIssue(
                        entity_type="stock_rating",
                        entity_id=rating.id,
                        problems=violations,
                        severity=self._severity(len(violations), rating_rules.violations_for_critical),
                    )
                )

        _escalate(issues, self.config.business_rules)
        return issues

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    @staticmethod
    def _severity(violations: int, violations_for_critical: int) -> Severity:
        if violations > violations_for_critical:
            return Severity.CRITICAL
        return Severity.WARNING

    @staticmethod
    def _overall_status(summary: IntegritySummary) -> Severity:
        if summary.critical_issues > 0:
            return Severity.CRITICAL
        if summary.warning_issues > 0:
            return Severity.WARNING
        return Severity.HEALTHY

    def _summarize(self, report: IntegrityReport) -> IntegritySummary:
        graded = report.consistency_issues + report.business_rule_violations
        critical = (
            len(report.orphans)
            + len(report.duplicates)
            + sum(1 for i in graded if i.severity is Severity.CRITICAL)
        )
        warning = sum(1 for i in graded if i.severity is Severity.WARNING)

        def by_type(items, entity_type: str) -> int:
            return sum(1 for i in items if i.entity_type == entity_type)

        breakdown = {
            ORPHANS: {
                "total": len(report.orphans),
                "status": report.category_status[ORPHANS].value,
            },
        }
        for category, items in (
            (CONSISTENCY, report.consistency_issues),
            (DUPLICATES, report.duplicates),
            (BUSINESS_RULES, report.business_rule_violations),
        ):
            breakdown[category] = {
                "total": len(items),
                "companies": by_type(items, "company"),
                "brokerages": by_type(items, "brokerage"),
                "ratings": by_type(items, "stock_rating"),
                "status": report.category_status[category].value,
            }

        recommendations: list[str] = []
        if critical > 0:
            recommendations.append("Immediate action required - critical integrity issues found")
            if report.orphans:
                recommendations.append("Remove orphaned stock rating records")
            if report.duplicates:
                recommendations.append("Resolve duplicate records")
        if warning > 0:
            recommendations.append("Consider fixing minor consistency issues")
        if critical + warning == 0:
            recommendations.append("Database integrity is healthy")
        else:
            recommendations.append("Run automatic repair to fix minor issues")

        return IntegritySummary(
            total_issues=critical + warning,
            critical_issues=critical,
            warning_issues=warning,
            breakdown=breakdown,
            recommendations=recommendations,
        )
