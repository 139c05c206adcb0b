"""Upstream data providers.

A provider hands out one page of rating items per call together with the
cursor for the next page. ``StockApiProvider`` talks to the HTTP list
endpoint; tests and other sources implement the same ``DataProvider``
protocol.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from ratingsync.core.config import settings
from ratingsync.core.exceptions import ExternalServiceError
from ratingsync.core.logging import get_logger
from ratingsync.domain.models import StockRatingItem


logger = get_logger("ingestion.provider")


@dataclass
class ProviderPage:
    items: list[StockRatingItem] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False


class DataProvider(Protocol):
    async def fetch_page(self, cursor: str | None) -> ProviderPage:
        """Fetch the page at ``cursor`` (None for the first page).

        Raises:
            ExternalServiceError: the page could not be fetched or parsed.
        """
        ...


class StockApiProvider:
    """Client for the paginated stock rating list API.

    GET <base_url>?next_page=<cursor> with a Bearer token; the response is
    ``{"items": [...], "next_page": "<cursor or empty>"}``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url or settings.stock_api_base_url
        token = token if token is not None else settings.stock_api_token
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.external_api_timeout,
            headers=headers,
        )
        if client is not None:
            self._client.headers.update(headers)

    async def __aenter__(self) -> StockApiProvider:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_page(self, cursor: str | None) -> ProviderPage:
        params = {"next_page": cursor} if cursor else None
        try:
            response = await self._client.get(self.base_url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.RequestError as exc:
            logger.warning(f"Stock API request failed: {exc}")
            raise ExternalServiceError(message="Stock API unavailable") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(f"Stock API error: {exc.response.status_code}")
            raise ExternalServiceError(
                message="Stock API returned an error",
                details={"status_code": exc.response.status_code, "cursor": cursor},
            ) from exc
        except ValueError as exc:
            raise ExternalServiceError(message="Stock API returned invalid JSON") from exc

        return self._parse(payload, cursor)

    @staticmethod
    def _parse(payload: Any, cursor: str | None) -> ProviderPage:
        if not isinstance(payload, dict):
            raise ExternalServiceError(
                message="Stock API returned an unexpected payload", details={"cursor": cursor}
            )
        try:
            items = [StockRatingItem.model_validate(raw) for raw in payload.get("items") or []]
        except PydanticValidationError as exc:
            raise ExternalServiceError(
                message="Stock API returned malformed items", details={"cursor": cursor}
            ) from exc
        next_cursor = payload.get("next_page") or None
        return ProviderPage(items=items, next_cursor=next_cursor, has_more=next_cursor is not None)
