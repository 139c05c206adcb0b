"""Pydantic models shared by the cache, resolver, auditor and repair engine.

Records are detached snapshots of ORM rows. They are what the cache stores
and what the resolver hands back to callers, so no caller ever holds a live
ORM instance bound to a session it does not own.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


def utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Severity(str, Enum):
    """Health classification used by audit and repair reports."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


# =============================================================================
# UPSTREAM ITEMS
# =============================================================================


class StockRatingItem(BaseModel):
    """One rating event as delivered by the upstream provider."""

    model_config = ConfigDict(extra="ignore")

    ticker: str = ""
    company: str = ""
    brokerage: str = ""
    action: str = ""
    rating_from: str = ""
    rating_to: str = ""
    target_from: str = ""
    target_to: str = ""
    time: str = ""


# =============================================================================
# ENTITY SNAPSHOTS
# =============================================================================


class CompanyRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ticker: str
    name: str
    market_cap: Optional[Decimal] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BrokerageRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StockRatingRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    brokerage_id: UUID
    action: str
    rating_from: Optional[str] = None
    rating_to: Optional[str] = None
    target_from: Optional[str] = None
    target_to: Optional[str] = None
    event_time: datetime
    source: str = "api"
    created_at: Optional[datetime] = None


# =============================================================================
# INTEGRITY FINDINGS
# =============================================================================


class OrphanedRecord(BaseModel):
    """A stock rating whose company or brokerage row is missing."""

    id: UUID
    company_id: Optional[UUID] = None
    brokerage_id: Optional[UUID] = None
    reason: str
    severity: Severity = Severity.CRITICAL


class IntegrityIssue(BaseModel):
    """All consistency or business rule problems found on one row."""

    entity_type: str
    entity_id: UUID
    label: str = ""
    problems: list[str]
    severity: Severity = Severity.WARNING

    @property
    def message(self) -> str:
        return "; ".join(self.problems)


class DuplicateGroup(BaseModel):
    """Rows sharing one canonical key."""

    entity_type: str
    key: str
    ids: list[UUID]
    severity: Severity = Severity.CRITICAL

    @property
    def count(self) -> int:
        return len(self.ids)


class UnrepairableIssue(BaseModel):
    issue_type: str
    entity_id: Optional[UUID] = None
    description: str
    reason: str


class IntegritySummary(BaseModel):
    total_issues: int = 0
    critical_issues: int = 0
    warning_issues: int = 0
    breakdown: dict[str, dict[str, Any]] = Field(default_factory=dict)
    recommendations: list[str] = Field(default_factory=list)


class IntegrityReport(BaseModel):
    """Result of one full integrity audit."""

    status: Severity = Severity.HEALTHY
    checked_at: datetime = Field(default_factory=utcnow)
    duration_seconds: float = 0.0
    orphans: list[OrphanedRecord] = Field(default_factory=list)
    consistency_issues: list[IntegrityIssue] = Field(default_factory=list)
    duplicates: list[DuplicateGroup] = Field(default_factory=list)
    business_rule_violations: list[IntegrityIssue] = Field(default_factory=list)
    category_status: dict[str, Severity] = Field(default_factory=dict)
    summary: IntegritySummary = Field(default_factory=IntegritySummary)

    def findings(self) -> dict[str, Any]:
        """Everything except timing, for comparing two audits of the same data."""
        return self.model_dump(exclude={"checked_at", "duration_seconds"})


class RepairReport(BaseModel):
    """Result of one repair invocation (dry run or apply)."""

    dry_run: bool = True
    status: Severity = Severity.HEALTHY
    started_at: datetime = Field(default_factory=utcnow)
    duration_seconds: float = 0.0
    orphans_removed: int = 0
    duplicates_resolved: int = 0
    consistency_fixed: int = 0
    unrepairable: list[UnrepairableIssue] = Field(default_factory=list)

    @property
    def total_repaired(self) -> int:
        return self.orphans_removed + self.duplicates_resolved + self.consistency_fixed
