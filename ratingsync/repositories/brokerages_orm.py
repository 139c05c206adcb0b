"""Brokerage repository using SQLAlchemy ORM."""

from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ratingsync.core.logging import get_logger
from ratingsync.database.orm import Brokerage


logger = get_logger("repositories.brokerages_orm")


async def get_by_id(session: AsyncSession, brokerage_id: uuid.UUID) -> Brokerage | None:
    return await session.get(Brokerage, brokerage_id)


async def get_by_name(session: AsyncSession, name: str) -> Brokerage | None:
    """Get the oldest brokerage stored under an exact name."""
    result = await session.execute(
        select(Brokerage)
        .where(Brokerage.name == name)
        .order_by(Brokerage.created_at, Brokerage.id)
        .limit(1)
    )
    return result.scalars().first()


async def get_all(session: AsyncSession) -> Sequence[Brokerage]:
    result = await session.execute(
        select(Brokerage).order_by(Brokerage.created_at, Brokerage.id)
    )
    return result.scalars().all()


async def count(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(Brokerage))
    return result.scalar_one()


async def create(session: AsyncSession, name: str, is_active: bool = True) -> Brokerage:
    brokerage = Brokerage(name=name, is_active=is_active)
    session.add(brokerage)
    await session.flush()
    return brokerage


async def update_name(
    session: AsyncSession, brokerage_id: uuid.UUID, name: str
) -> Brokerage | None:
    brokerage = await session.get(Brokerage, brokerage_id)
    if brokerage is None:
        return None
    brokerage.name = name
    await session.flush()
    return brokerage


async def delete_by_id(session: AsyncSession, brokerage_id: uuid.UUID) -> bool:
    result = await session.execute(delete(Brokerage).where(Brokerage.id == brokerage_id))
    return result.rowcount > 0


async def delete_all(session: AsyncSession) -> int:
    result = await session.execute(delete(Brokerage))
    return result.rowcount


def canonical_name_column():
    return func.trim(Brokerage.name)


async def find_by_canonical_name(session: AsyncSession, name: str) -> Sequence[Brokerage]:
    """All brokerages whose trimmed name equals ``name``."""
    result = await session.execute(
        select(Brokerage)
        .where(canonical_name_column() == name.strip())
        .order_by(Brokerage.created_at, Brokerage.id)
    )
    return result.scalars().all()


async def find_duplicate_groups(
    session: AsyncSession,
) -> list[tuple[str, list[Brokerage]]]:
    """Return (trimmed name, rows) for every trimmed name held more than once, oldest first."""
    canonical = canonical_name_column()
    dup_names = (
        select(canonical)
        .group_by(canonical)
        .having(func.count(Brokerage.id) > 1)
    )
    result = await session.execute(
        select(Brokerage, canonical.label("canonical"))
        .where(canonical.in_(dup_names))
        .order_by(canonical, Brokerage.created_at, Brokerage.id)
    )
    groups: dict[str, list[Brokerage]] = defaultdict(list)
    for brokerage, key in result.all():
        groups[key].append(brokerage)
    return list(groups.items())
