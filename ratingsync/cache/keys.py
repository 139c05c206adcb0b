"""Cache key construction and normalization."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum


class CacheKind(str, Enum):
    """Entity families held by the cache, each with its own key space."""

    COMPANY = "company"
    BROKERAGE = "brokerage"
    STOCK_RATING = "stock_rating"


KEY_PREFIXES = {
    CacheKind.COMPANY: "company:ticker:",
    CacheKind.BROKERAGE: "brokerage:name:",
    CacheKind.STOCK_RATING: "stock_rating:",
}


def normalize_key(raw: str) -> str:
    """Uppercase, trim, and replace separators so equivalent inputs share a key.

    Usage:
        normalize_key(" Goldman Sachs ") -> "GOLDMAN_SACHS"
        normalize_key("brk.b") -> "BRK_B"
    """
    key = raw.strip().upper()
    for sep in (" ", "-", "."):
        key = key.replace(sep, "_")
    return key


def company_key(ticker: str) -> str:
    return normalize_key(ticker)


def brokerage_key(name: str) -> str:
    return normalize_key(name)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def epoch_micros(value: datetime) -> int:
    """Exact microseconds since the epoch; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // timedelta(microseconds=1)


def stock_rating_key(
    company_id: uuid.UUID, brokerage_id: uuid.UUID, event_time: datetime
) -> str:
    """Key for a dedup triple at full microsecond precision."""
    return f"{company_id.hex}:{brokerage_id.hex}:{epoch_micros(event_time)}"


def prefixed(kind: CacheKind, key: str) -> str:
    return f"{KEY_PREFIXES[kind]}{key}"
