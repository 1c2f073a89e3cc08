"""Coalescing price batcher.

Many concurrent lookups become few upstream calls:

1. A fresh cache hit (default 30s) never touches the network.
2. A request for an id that is already pending attaches to the same future.
3. New ids are queued; one shared window timer (default 50ms) fires a single
   multi-id request. Queues larger than the upstream batch limit are chunked
   and the chunks run concurrently.
4. Ids missing from the response fail with QuoteNotFoundError. An upstream
   error fails every id of its chunk with that error, except ids whose last
   quote is still inside the stale grace window: those get the old quote
   tagged `is_stale`.

Usage:
    batcher = PriceBatcher(CoinGeckoClient())
    quote = await batcher.get_price("bitcoin")
    quotes = await batcher.get_prices(["bitcoin", "missing", "ethereum"])
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Protocol, Sequence

from cachetools import TTLCache
from pydantic import ValidationError

from coinquote.core.clock import Clock, system_clock
from coinquote.core.config import settings
from coinquote.core.exceptions import (
    AppException,
    QuoteNotFoundError,
    UpstreamTransportError,
)
from coinquote.core.logging import get_logger
from coinquote.domain.price import Quote, QuoteSource

logger = get_logger("services.price_batcher")


class PriceSource(Protocol):
    async def simple_price(self, ids: Sequence[str]) -> dict[str, dict[str, Any]]: ...


def _consume_exception(future: asyncio.Future) -> None:
    # Waiters may have been cancelled; keep asyncio from reporting the error as lost
    if not future.cancelled():
        future.exception()


class PriceBatcher:
    """Batches, coalesces and caches USD price lookups."""

    def __init__(
        self,
        source: PriceSource,
        window_ms: int | None = None,
        max_batch_size: int | None = None,
        cache_ttl: float | None = None,
        stale_grace: float | None = None,
        cache_size: int | None = None,
        clock: Clock = system_clock,
        provider: str = "coingecko",
        on_upstream_call: Callable[[int], None] | None = None,
        on_upstream_error: Callable[[Exception], None] | None = None,
    ):
        self._source = source
        self._window = (window_ms or settings.batch_window_ms) / 1000
        self._max_batch = max_batch_size or settings.max_batch_size
        self._cache_ttl = cache_ttl or settings.quote_cache_ttl
        self._stale_grace = settings.quote_stale_grace if stale_grace is None else stale_grace
        self._clock = clock
        self._provider = provider
        self._on_upstream_call = on_upstream_call
        self._on_upstream_error = on_upstream_error

        self._cache: TTLCache[str, Quote] = TTLCache(
            maxsize=cache_size or settings.quote_cache_size,
            ttl=max(self._cache_ttl, self._stale_grace),
            timer=clock.time,
        )
        self._pending: dict[str, asyncio.Future[Quote]] = {}
        self._queue: list[str] = []
        self._timer: asyncio.TimerHandle | None = None
        self._inflight: set[asyncio.Task[None]] = set()

        self._upstream_calls = 0
        self._cache_hits = 0
        self._stale_served = 0

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _age(self, quote: Quote) -> float:
        return self._clock.time() - quote.timestamp_ms / 1000

    def peek(self, coin_id: str, allow_stale: bool = False) -> Quote | None:
        """Cached quote without any network call.

        Fresh quotes come back as-is; with `allow_stale`, quotes inside the
        grace window come back tagged `is_stale`.
        """
        quote = self._cache.get(coin_id)
        if quote is None:
            return None
        age = self._age(quote)
        if age < self._cache_ttl:
            return quote
        if allow_stale and age <= self._stale_grace:
            return quote.as_stale()
        return None

    def _store(self, quote: Quote) -> None:
        self._cache[quote.id] = quote

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_price(self, coin_id: str) -> Quote:
        """Price for one id. Raises QuoteNotFoundError or an upstream error."""
        if not coin_id or not isinstance(coin_id, str):
            raise QuoteNotFoundError(str(coin_id))

        cached = self.peek(coin_id)
        if cached is not None:
            self._cache_hits += 1
            return cached

        future = self._pending.get(coin_id)
        if future is None:
            loop = asyncio.get_running_loop()
            future = loop.create_future()
            future.add_done_callback(_consume_exception)
            self._pending[coin_id] = future
            self._queue.append(coin_id)
            if self._timer is None:
                self._timer = loop.call_later(self._window, self._fire)
        else:
            logger.debug(f"Joined pending request for {coin_id}")

        return await asyncio.shield(future)

    async def get_prices(self, coin_ids: Sequence[str]) -> list[Quote | None]:
        """Prices in input order; None for every id that could not be priced."""
        results = await asyncio.gather(
            *(self.get_price(coin_id) for coin_id in coin_ids),
            return_exceptions=True,
        )
        quotes: list[Quote | None] = []
        for coin_id, result in zip(coin_ids, results):
            if isinstance(result, Quote):
                quotes.append(result)
                continue
            if isinstance(result, asyncio.CancelledError):
                raise result
            if not isinstance(result, QuoteNotFoundError):
                logger.debug(f"No price for {coin_id}: {result}")
            quotes.append(None)
        return quotes

    async def flush(self) -> None:
        """Fire the queued batch now and wait for every in-flight chunk."""
        if self._timer is not None:
            self._timer.cancel()
            self._fire()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ------------------------------------------------------------------
    # Batch execution
    # ------------------------------------------------------------------

    def _fire(self) -> None:
        self._timer = None
        ids, self._queue = self._queue, []
        if not ids:
            return
        task = asyncio.get_running_loop().create_task(self._dispatch(ids))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _dispatch(self, ids: list[str]) -> None:
        chunks = [ids[i:i + self._max_batch] for i in range(0, len(ids), self._max_batch)]
        if len(chunks) > 1:
            logger.info(f"Splitting {len(ids)} ids into {len(chunks)} price batches")
        await asyncio.gather(*(self._run_chunk(chunk) for chunk in chunks))

    async def _run_chunk(self, chunk: list[str]) -> None:
        self._upstream_calls += 1
        if self._on_upstream_call:
            self._on_upstream_call(len(chunk))

        try:
            data = await self._source.simple_price(chunk)
        except AppException as e:
            self._fail_chunk(chunk, e)
            return
        except Exception as e:
            logger.exception(f"Unexpected price batch failure for {len(chunk)} ids")
            error = UpstreamTransportError(f"Price batch failed: {e}")
            error.__cause__ = e
            self._fail_chunk(chunk, error)
            return

        observed_ms = int(self._clock.time() * 1000)
        found = 0
        for coin_id in chunk:
            future = self._pending.pop(coin_id, None)
            quote = self._build_quote(coin_id, data.get(coin_id), observed_ms)
            if quote is not None:
                found += 1
                self._store(quote)
                if future is not None and not future.done():
                    future.set_result(quote)
            elif future is not None and not future.done():
                future.set_exception(QuoteNotFoundError(coin_id))

        logger.debug(f"Price batch completed: {found}/{len(chunk)} ids priced")

    def _fail_chunk(self, chunk: list[str], error: Exception) -> None:
        if self._on_upstream_error:
            self._on_upstream_error(error)
        logger.warning(f"Price batch of {len(chunk)} ids failed: {error}")

        for coin_id in chunk:
            future = self._pending.pop(coin_id, None)
            if future is None or future.done():
                continue
            stale = self.peek(coin_id, allow_stale=True)
            if stale is not None:
                self._stale_served += 1
                future.set_result(stale.as_stale())
            else:
                future.set_exception(error)

    def _build_quote(
        self, coin_id: str, entry: dict[str, Any] | None, observed_ms: int
    ) -> Quote | None:
        if not entry or entry.get("usd") is None:
            return None
        try:
            market_cap = entry.get("usd_market_cap")
            return Quote(
                id=coin_id,
                price=float(entry["usd"]),
                change_24h=float(entry.get("usd_24h_change") or 0.0),
                market_cap=float(market_cap) if market_cap else None,
                timestamp_ms=observed_ms,
                source=QuoteSource.PRIMARY,
                provider=self._provider,
            )
        except (TypeError, ValueError, ValidationError):
            logger.warning(f"Discarding malformed price entry for {coin_id}")
            return None

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        fresh = stale = 0
        for quote in list(self._cache.values()):
            if self._age(quote) < self._cache_ttl:
                fresh += 1
            else:
                stale += 1
        return {
            "cache_fresh": fresh,
            "cache_stale": stale,
            "pending": len(self._pending),
            "queued": len(self._queue),
            "inflight_batches": len(self._inflight),
            "upstream_calls": self._upstream_calls,
            "cache_hits": self._cache_hits,
            "stale_served": self._stale_served,
        }
