"""Domain records, reports and validation settings."""

from .models import (
    BrokerageRecord,
    CompanyRecord,
    Severity,
    StockRatingItem,
    StockRatingRecord,
)
from .validation import ValidationConfig


__all__ = [
    "BrokerageRecord",
    "CompanyRecord",
    "Severity",
    "StockRatingItem",
    "StockRatingRecord",
    "ValidationConfig",
]
