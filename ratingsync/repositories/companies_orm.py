"""Company repository using SQLAlchemy ORM.

Usage:
    from ratingsync.repositories import companies_orm as companies

    async with get_session() as session:
        company = await companies.get_by_ticker(session, "AAPL")
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Sequence
from decimal import Decimal

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ratingsync.core.logging import get_logger
from ratingsync.database.orm import Company


logger = get_logger("repositories.companies_orm")


async def get_by_id(session: AsyncSession, company_id: uuid.UUID) -> Company | None:
    return await session.get(Company, company_id)


async def get_by_ticker(session: AsyncSession, ticker: str) -> Company | None:
    """Get the oldest company stored under an exact ticker."""
    result = await session.execute(
        select(Company)
        .where(Company.ticker == ticker)
        .order_by(Company.created_at, Company.id)
        .limit(1)
    )
    return result.scalars().first()


async def get_all(session: AsyncSession) -> Sequence[Company]:
    result = await session.execute(
        select(Company).order_by(Company.created_at, Company.id)
    )
    return result.scalars().all()


async def count(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(Company))
    return result.scalar_one()


async def create(
    session: AsyncSession,
    ticker: str,
    name: str,
    market_cap: Decimal | None = None,
    is_active: bool = True,
) -> Company:
    """Insert a company and flush so its id and timestamps are populated."""
    company = Company(
        ticker=ticker,
        name=name,
        market_cap=market_cap,
        is_active=is_active,
    )
    session.add(company)
    await session.flush()
    return company


async def update_name(
    session: AsyncSession, company_id: uuid.UUID, name: str
) -> Company | None:
    company = await session.get(Company, company_id)
    if company is None:
        return None
    company.name = name
    await session.flush()
    return company


async def update_fields(
    session: AsyncSession, company_id: uuid.UUID, **fields
) -> Company | None:
    company = await session.get(Company, company_id)
    if company is None:
        return None
    for key, value in fields.items():
        setattr(company, key, value)
    await session.flush()
    return company


async def delete_by_id(session: AsyncSession, company_id: uuid.UUID) -> bool:
    result = await session.execute(delete(Company).where(Company.id == company_id))
    return result.rowcount > 0


async def delete_all(session: AsyncSession) -> int:
    result = await session.execute(delete(Company))
    return result.rowcount


def canonical_ticker_column():
    return func.upper(func.trim(Company.ticker))


async def find_by_canonical_ticker(session: AsyncSession, ticker: str) -> Sequence[Company]:
    """All companies whose trimmed uppercase ticker equals ``ticker``."""
    result = await session.execute(
        select(Company)
        .where(canonical_ticker_column() == ticker.strip().upper())
        .order_by(Company.created_at, Company.id)
    )
    return result.scalars().all()


async def find_duplicate_groups(
    session: AsyncSession,
) -> list[tuple[str, list[Company]]]:
    """Return (canonical ticker, rows) for every canonical ticker held more than once.

    "aapl" and " AAPL" fall in the same group. Rows are ordered oldest first.
    """
    canonical = canonical_ticker_column()
    dup_tickers = (
        select(canonical)
        .group_by(canonical)
        .having(func.count(Company.id) > 1)
    )
    result = await session.execute(
        select(Company, canonical.label("canonical"))
        .where(canonical.in_(dup_tickers))
        .order_by(canonical, Company.created_at, Company.id)
    )
    groups: dict[str, list[Company]] = defaultdict(list)
    for company, key in result.all():
        groups[key].append(company)
    return list(groups.items())
