"""Validation thresholds, length bounds and time horizons."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class CategoryThresholds:
    """Per-category issue limits.

    A category is warning while its count stays at or below ``warning`` and
    critical above it. Once the count exceeds ``critical`` every issue in the
    category is escalated to critical severity.
    """

    warning: int
    critical: int


@dataclass
class CompanyRules:
    ticker_min_length: int = 1
    ticker_max_length: int = 10
    name_min_length: int = 2
    name_max_length: int = 200
    violations_for_critical: int = 2


@dataclass
class BrokerageRules:
    name_min_length: int = 2
    name_max_length: int = 100
    violations_for_critical: int = 1


@dataclass
class StockRatingRules:
    ingestion_horizon_years: int = 10
    consistency_horizon_years: int = 10
    business_horizon_years: int = 20
    future_tolerance_seconds: int = 3600
    violations_for_critical: int = 2


@dataclass
class ValidationConfig:
    """Complete validation configuration.

    Business rule violations on a single row are critical once that row has
    more violations than the entity type's ``violations_for_critical``.
    """

    consistency: CategoryThresholds = field(
        default_factory=lambda: CategoryThresholds(warning=5, critical=15)
    )
    business_rules: CategoryThresholds = field(
        default_factory=lambda: CategoryThresholds(warning=5, critical=20)
    )
    company: CompanyRules = field(default_factory=CompanyRules)
    brokerage: BrokerageRules = field(default_factory=BrokerageRules)
    stock_rating: StockRatingRules = field(default_factory=StockRatingRules)


def years_ago(now: datetime, years: int) -> datetime:
    """Same calendar instant ``years`` years before ``now`` (Feb 29 becomes Feb 28)."""
    try:
        return now.replace(year=now.year - years)
    except ValueError:
        return now.replace(year=now.year - years, day=28)
