"""Database models and async session management."""

from .connection import (
    close_sqlalchemy_engine,
    create_all,
    get_engine,
    get_session,
    get_session_factory,
    init_sqlalchemy_engine,
)
from .orm import Base, Brokerage, Company, StockRating


__all__ = [
    "Base",
    "Brokerage",
    "Company",
    "StockRating",
    "close_sqlalchemy_engine",
    "create_all",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_sqlalchemy_engine",
]
