"""Stock rating repository using SQLAlchemy ORM."""

from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import and_, case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ratingsync.core.logging import get_logger
from ratingsync.database.orm import Brokerage, Company, StockRating
from ratingsync.domain.models import OrphanedRecord


logger = get_logger("repositories.stock_ratings_orm")

DedupKey = tuple[uuid.UUID, uuid.UUID, datetime]


async def get_by_id(session: AsyncSession, rating_id: uuid.UUID) -> StockRating | None:
    return await session.get(StockRating, rating_id)


async def find_existing(
    session: AsyncSession,
    company_id: uuid.UUID,
    brokerage_id: uuid.UUID,
    event_time: datetime,
) -> StockRating | None:
    """Find the rating occupying a dedup triple, if any."""
    result = await session.execute(
        select(StockRating)
        .where(
            and_(
                StockRating.company_id == company_id,
                StockRating.brokerage_id == brokerage_id,
                StockRating.event_time == event_time,
            )
        )
        .limit(1)
    )
    return result.scalars().first()


async def get_all(session: AsyncSession) -> Sequence[StockRating]:
    result = await session.execute(
        select(StockRating).order_by(StockRating.created_at, StockRating.id)
    )
    return result.scalars().all()


async def count(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(StockRating))
    return result.scalar_one()


async def create(
    session: AsyncSession,
    company_id: uuid.UUID,
    brokerage_id: uuid.UUID,
    action: str,
    event_time: datetime,
    rating_from: str | None = None,
    rating_to: str | None = None,
    target_from: str | None = None,
    target_to: str | None = None,
    source: str = "api",
    raw_data: dict[str, Any] | None = None,
) -> StockRating:
    rating = StockRating(
        company_id=company_id,
        brokerage_id=brokerage_id,
        action=action,
        event_time=event_time,
        rating_from=rating_from or None,
        rating_to=rating_to or None,
        target_from=target_from or None,
        target_to=target_to or None,
        source=source,
        raw_data=raw_data,
    )
    session.add(rating)
    await session.flush()
    return rating


async def delete_by_id(session: AsyncSession, rating_id: uuid.UUID) -> bool:
    result = await session.execute(delete(StockRating).where(StockRating.id == rating_id))
    return result.rowcount > 0


async def delete_all(session: AsyncSession) -> int:
    result = await session.execute(delete(StockRating))
    return result.rowcount


async def find_orphans(session: AsyncSession) -> list[OrphanedRecord]:
    """Ratings whose company or brokerage row is missing, in one LEFT JOIN."""
    reason = case(
        (
            and_(Company.id.is_(None), Brokerage.id.is_(None)),
            "Both company and brokerage not found",
        ),
        (Company.id.is_(None), "Company not found"),
        else_="Brokerage not found",
    ).label("reason")

    result = await session.execute(
        select(StockRating.id, StockRating.company_id, StockRating.brokerage_id, reason)
        .outerjoin(Company, Company.id == StockRating.company_id)
        .outerjoin(Brokerage, Brokerage.id == StockRating.brokerage_id)
        .where((Company.id.is_(None)) | (Brokerage.id.is_(None)))
        .order_by(StockRating.created_at, StockRating.id)
    )
    return [
        OrphanedRecord(
            id=row.id,
            company_id=row.company_id,
            brokerage_id=row.brokerage_id,
            reason=row.reason,
        )
        for row in result.all()
    ]


async def find_duplicate_groups(
    session: AsyncSession,
) -> list[tuple[DedupKey, list[StockRating]]]:
    """Return (dedup triple, rows) for every triple stored more than once.

    Rows within a group come back in storage order; no sort is applied.
    """
    dups = (
        select(
            StockRating.company_id,
            StockRating.brokerage_id,
            StockRating.event_time,
        )
        .group_by(
            StockRating.company_id,
            StockRating.brokerage_id,
            StockRating.event_time,
        )
        .having(func.count(StockRating.id) > 1)
        .subquery()
    )
    result = await session.execute(
        select(StockRating).join(
            dups,
            and_(
                StockRating.company_id == dups.c.company_id,
                StockRating.brokerage_id == dups.c.brokerage_id,
                StockRating.event_time == dups.c.event_time,
            ),
        )
    )
    groups: dict[DedupKey, list[StockRating]] = defaultdict(list)
    for rating in result.scalars().all():
        groups[(rating.company_id, rating.brokerage_id, rating.event_time)].append(rating)
    return sorted(groups.items(), key=lambda item: (str(item[0][0]), str(item[0][1]), item[0][2]))
