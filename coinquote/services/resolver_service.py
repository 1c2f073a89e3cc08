"""Resolver service: the composition root for resolution and pricing.

Resolution order for free-form input:
    intent keywords -> pair shorthand -> alias -> canonical table -> learning resolver

Prices go through the rate-limit aware price service (batcher + breaker +
exchange fallback).

Usage:
    service = build_service(settings)
    await service.start()
    resolution = await service.resolve("btcusdt")
    quote = await service.get_price(resolution.id)
    await service.stop()
"""

from __future__ import annotations

import asyncio
from typing import Any, Sequence

from sqlalchemy.ext.asyncio import AsyncEngine

from coinquote.core.clock import Clock, system_clock
from coinquote.core.config import Settings
from coinquote.core.logging import get_logger
from coinquote.database.connection import create_engine_for_url, create_schema, create_session_factory
from coinquote.domain.price import Quote
from coinquote.domain.ticker import Resolution, ResolveFlags
from coinquote.repositories.learning_store import SqlLearningStore
from coinquote.services.canonical import apply_alias, lookup_canonical
from coinquote.services.data_providers.coingecko import CoinGeckoClient
from coinquote.services.data_providers.exchange_stream import ExchangeTickerStream
from coinquote.services.data_providers.resilience import CooldownBreaker
from coinquote.services.learning_resolver import (
    HitFlusher,
    SmartResolver,
    normalize_ticker,
    split_chain_hint,
)
from coinquote.services.pairs import parse_pair
from coinquote.services.search_resolver import (
    SearchResolver,
    detect_flags,
    merge_flags,
    strip_intent_words,
)
from coinquote.services.smart_price import SmartPriceService

logger = get_logger("services.resolver_service")


class ResolverService:
    """Holds every resolver and price component plus their lifecycle."""

    def __init__(
        self,
        search: SearchResolver,
        learning: SmartResolver,
        prices: SmartPriceService,
        store: SqlLearningStore,
        clock: Clock = system_clock,
        stream: ExchangeTickerStream | None = None,
        client: CoinGeckoClient | None = None,
        engine: AsyncEngine | None = None,
        hit_flush_interval: float | None = None,
        seed_defaults: bool = True,
        create_schema: bool = False,
        warmup_limit: int | None = None,
    ):
        self.search = search
        self.learning = learning
        self.prices = prices
        self.store = store
        self.stream = stream
        self._clock = clock
        self._client = client
        self._engine = engine
        self._flusher = HitFlusher(learning, interval=hit_flush_interval)
        self._seed_defaults = seed_defaults
        self._create_schema = create_schema
        self._warmup_limit = warmup_limit
        self.started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.started:
            return
        if self._create_schema and self._engine is not None:
            await create_schema(self._engine)
        if self._seed_defaults:
            await self.store.seed_defaults(self._clock.now())
        await self.learning.warmup(self._warmup_limit)
        self._flusher.start()
        if self.stream is not None:
            self.stream.start()
        self.started = True
        logger.info("Resolver service started")

    async def stop(self) -> None:
        await self._flusher.stop()
        if self.stream is not None:
            await self.stream.stop()
        await self.prices.batcher.flush()
        if self._client is not None:
            await self._client.aclose()
        if self._engine is not None:
            await self._engine.dispose()
        self.started = False
        logger.info("Resolver service stopped")

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        text: str,
        flags: ResolveFlags | None = None,
        default_chain: str | None = None,
    ) -> Resolution:
        """Resolve free-form input. Misses come back with ok=False and a reason."""
        if not text or not text.strip():
            return Resolution.miss(text or "", "invalid_ticker")

        flags = merge_flags(detect_flags(text), flags)
        cleaned = strip_intent_words(text).removeprefix("$").strip()

        pair = parse_pair(cleaned)
        if pair is not None:
            base_flags = flags.model_copy(update={"include_stablecoins": False})
            base = await self._resolve_ticker(text, pair.base, base_flags, default_chain)
            return base.model_copy(update={"quote": pair.quote.upper()})

        return await self._resolve_ticker(text, cleaned, flags, default_chain)

    async def _resolve_ticker(
        self,
        query: str,
        text: str,
        flags: ResolveFlags,
        default_chain: str | None,
    ) -> Resolution:
        ticker_text, chain = split_chain_hint(text, default_chain)
        ticker = normalize_ticker(ticker_text)
        if ticker is None:
            return Resolution.miss(query, "invalid_ticker")
        ticker = apply_alias(ticker)

        canonical = lookup_canonical(ticker)
        if canonical:
            return Resolution(query=query, ok=True, id=canonical, ticker=ticker, source="canonical")

        explicit = flags if any(flags.model_dump().values()) else None
        result = await self.learning.resolve(ticker, flags=explicit, default_chain=chain)
        return result.model_copy(update={"query": query})

    async def resolve_many(
        self, texts: Sequence[str], flags: ResolveFlags | None = None
    ) -> list[Resolution]:
        """Resolutions in input order, misses included."""
        results = await asyncio.gather(
            *(self.resolve(t, flags) for t in texts), return_exceptions=True
        )
        resolutions: list[Resolution] = []
        for text, result in zip(texts, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(f"Resolution of {text!r} failed: {result!r}")
                result = Resolution.miss(text or "", "internal_error")
            resolutions.append(result)
        return resolutions

    async def explain(self, query: str) -> dict[str, Any]:
        return await self.search.explain(query)

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    async def get_price(self, coin_id: str) -> Quote:
        """Quote for one id; raises QuoteNotFoundError / upstream errors."""
        return await self.prices.get_smart_price(coin_id)

    async def get_prices(self, coin_ids: Sequence[str]) -> list[Quote | None]:
        """Quotes in input order, None for misses."""
        return await self.prices.get_smart_prices(coin_ids)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def ban(self, ticker: str, reason: str = "admin_banned") -> bool:
        return await self.learning.force_ban(ticker, reason)

    async def unban(self, ticker: str) -> bool:
        return await self.learning.force_unban(ticker)

    async def relearn(self, ticker: str) -> Resolution:
        return await self.learning.force_relearn(ticker)

    async def force_map(
        self,
        ticker: str,
        coin_id: str,
        chain: str | None = None,
        contract_address: str | None = None,
    ) -> bool:
        return await self.learning.force_map(ticker, coin_id, chain, contract_address)

    async def stats(self) -> dict[str, Any]:
        return {
            "resolver": await self.learning.stats(),
            "prices": self.prices.health(),
            "hit_flusher_running": self._flusher.running,
        }


def build_service(settings: Settings, clock: Clock = system_clock) -> ResolverService:
    """Wire production dependencies from settings."""
    engine = create_engine_for_url(settings.database_url)
    store = SqlLearningStore(create_session_factory(engine))

    client = CoinGeckoClient(
        api_key=settings.coingecko_api_key,
        base_url=settings.coingecko_base_url,
        timeout=settings.external_api_timeout,
        search_min_interval=settings.search_min_interval,
        max_candidates=settings.search_max_candidates,
    )

    stream = None
    if settings.exchange_stream_enabled:
        stream = ExchangeTickerStream(
            url=settings.exchange_ws_url,
            max_age=settings.exchange_quote_max_age,
            max_reconnects=settings.exchange_max_reconnects,
            clock=clock,
        )

    breaker = CooldownBreaker(
        cooldown_seconds=settings.rate_limit_cooldown, name="coingecko", clock=clock
    )
    prices = SmartPriceService(
        client,
        stream=stream,
        breaker=breaker,
        max_requests_per_minute=settings.max_requests_per_minute,
        approach_ratio=settings.rate_limit_approach_ratio,
        clock=clock,
        window_ms=settings.batch_window_ms,
        max_batch_size=settings.max_batch_size,
        cache_ttl=settings.quote_cache_ttl,
        stale_grace=settings.quote_stale_grace,
        cache_size=settings.quote_cache_size,
    )

    search = SearchResolver(client, blocklist=settings.blocklist)
    learning = SmartResolver(
        search,
        store,
        clock=clock,
        cache_size=settings.resolver_cache_size,
        base_confidence=settings.base_confidence,
        backoff_base=settings.backoff_base,
        backoff_cap_minutes=settings.backoff_cap_minutes,
        default_chain=settings.default_chain,
        on_rate_limit=lambda _error: breaker.trip("search_rate_limited"),
    )

    return ResolverService(
        search=search,
        learning=learning,
        prices=prices,
        store=store,
        clock=clock,
        stream=stream,
        client=client,
        engine=engine,
        hit_flush_interval=settings.hit_flush_interval,
        seed_defaults=settings.db_seed_defaults,
        create_schema=settings.db_create_schema,
        warmup_limit=settings.warmup_limit,
    )
