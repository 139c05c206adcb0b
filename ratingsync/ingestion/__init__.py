"""Paginated ingestion of upstream rating events."""

from .coordinator import (
    IngestionCoordinator,
    PopulationConfig,
    PopulationResult,
    PopulationState,
)
from .provider import DataProvider, ProviderPage, StockApiProvider


__all__ = [
    "DataProvider",
    "IngestionCoordinator",
    "PopulationConfig",
    "PopulationResult",
    "PopulationState",
    "ProviderPage",
    "StockApiProvider",
]
