"""CoinGecko HTTP client.

Two endpoints are used:
- /search?query=...         -> candidate coins for a free-form ticker
- /simple/price?ids=...     -> USD price, 24h change and market cap per id

No retry happens inside a call. Throttling surfaces as UpstreamRateLimitError
so the backoff tracker and the cooldown breaker can react to it.

Usage:
    client = CoinGeckoClient()
    candidates = await client.search("pengu")
    prices = await client.simple_price(["bitcoin", "ethereum"])
    await client.aclose()
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Sequence

import httpx

from coinquote.core.config import settings
from coinquote.core.exceptions import UpstreamRateLimitError, UpstreamTransportError
from coinquote.core.logging import get_logger
from coinquote.domain.ticker import Candidate

logger = get_logger("data_providers.coingecko")

THROTTLE_MARKER = "Throttled"
PRO_KEY_HEADER = "x-cg-pro-api-key"


class CoinGeckoClient:
    """Thin async wrapper over the CoinGecko REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        search_min_interval: float | None = None,
        max_candidates: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = settings.coingecko_api_key if api_key is None else api_key
        if base_url is None:
            base_url = settings.coingecko_pro_url if self._api_key else settings.coingecko_free_url
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout or settings.external_api_timeout
        self._search_min_interval = (
            settings.search_min_interval if search_min_interval is None else search_min_interval
        )
        self._max_candidates = max_candidates or settings.search_max_candidates
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._search_lock = asyncio.Lock()
        self._last_search: float | None = None

    @property
    def is_pro(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": settings.user_agent, "Accept": "application/json"}
        if self._api_key:
            headers[PRO_KEY_HEADER] = self._api_key
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers(),
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, params: dict[str, str]) -> Any:
        """GET and decode JSON, mapping every failure onto the upstream taxonomy."""
        client = self._get_client()
        try:
            response = await client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise UpstreamTransportError(f"CoinGecko timeout on {path}") from e
        except httpx.HTTPError as e:
            raise UpstreamTransportError(f"CoinGecko request failed on {path}: {e}") from e

        if response.status_code == 429:
            logger.warning(f"CoinGecko rate limited on {path}")
            raise UpstreamRateLimitError(
                f"CoinGecko returned 429 on {path}", upstream_status=429
            )

        body = response.text
        if THROTTLE_MARKER in body[:200]:
            logger.warning(f"CoinGecko throttled on {path}")
            raise UpstreamRateLimitError(
                f"CoinGecko throttled on {path}", upstream_status=response.status_code
            )

        if response.status_code >= 400:
            raise UpstreamTransportError(
                f"CoinGecko HTTP {response.status_code} on {path}",
                upstream_status=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamTransportError(f"CoinGecko returned invalid JSON on {path}") from e

    async def _wait_search_slot(self) -> None:
        """Keep search calls at least `search_min_interval` seconds apart."""
        if self._last_search is not None and self._search_min_interval > 0:
            elapsed = time.monotonic() - self._last_search
            if elapsed < self._search_min_interval:
                wait = self._search_min_interval - elapsed
                logger.debug(f"Search spacing: waiting {wait:.2f}s")
                await asyncio.sleep(wait)
        self._last_search = time.monotonic()

    async def search(self, query: str) -> list[Candidate]:
        """Search coins by free-form query."""
        async with self._search_lock:
            await self._wait_search_slot()
            data = await self._get("/search", {"query": query})

        coins = data.get("coins") if isinstance(data, dict) else None
        candidates: list[Candidate] = []
        for raw in (coins or [])[: self._max_candidates]:
            if not isinstance(raw, dict) or not raw.get("id"):
                continue
            rank = raw.get("market_cap_rank")
            candidates.append(
                Candidate(
                    id=str(raw["id"]),
                    symbol=str(raw.get("symbol") or ""),
                    name=str(raw.get("name") or ""),
                    market_cap_rank=rank if isinstance(rank, int) else None,
                    categories=[str(c) for c in raw.get("categories") or []],
                )
            )
        return candidates

    async def simple_price(self, ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        """USD price data keyed by id. Ids the upstream does not know are absent."""
        if not ids:
            return {}
        data = await self._get(
            "/simple/price",
            {
                "ids": ",".join(ids),
                "vs_currencies": "usd",
                "include_24hr_change": "true",
                "include_market_cap": "true",
            },
        )
        if not isinstance(data, dict):
            raise UpstreamTransportError("CoinGecko price payload is not an object")
        return {
            coin_id: entry
            for coin_id, entry in data.items()
            if isinstance(entry, dict) and entry.get("usd") is not None
        }
