"""Rate-limit aware price service.

Strategy:
1. Fresh cached quotes are served first, whatever the breaker state.
2. CoinGecko (primary) through the coalescing batcher while healthy.
3. On HTTP 429 / a throttling marker, or when the rolling request rate nears
   the per-minute budget, the breaker enters a fixed cooldown. During
   cooldown only the curated exchange-stream ids are served (fallback);
   everything else gets a stale cached quote if one is inside the grace
   window, and fails otherwise.
"""

from __future__ import annotations

import asyncio
from typing import Any, Sequence

from coinquote.core.clock import Clock, system_clock
from coinquote.core.config import settings
from coinquote.core.exceptions import (
    FallbackUnavailableError,
    QuoteNotFoundError,
    UpstreamRateLimitError,
)
from coinquote.core.logging import get_logger
from coinquote.domain.price import Quote
from coinquote.services.data_providers.exchange_stream import ExchangeTickerStream
from coinquote.services.data_providers.resilience import CooldownBreaker, RequestRateCounter
from coinquote.services.price_batcher import PriceBatcher, PriceSource

logger = get_logger("services.smart_price")


class SmartPriceService:
    """Routes each id to the primary batcher or the fallback stream."""

    def __init__(
        self,
        source: PriceSource,
        stream: ExchangeTickerStream | None = None,
        breaker: CooldownBreaker | None = None,
        rate_counter: RequestRateCounter | None = None,
        max_requests_per_minute: int | None = None,
        approach_ratio: float | None = None,
        clock: Clock = system_clock,
        **batcher_options: Any,
    ):
        self._clock = clock
        self._stream = stream
        self.breaker = breaker or CooldownBreaker(
            cooldown_seconds=settings.rate_limit_cooldown, name="coingecko", clock=clock
        )
        self.rate_counter = rate_counter or RequestRateCounter(clock=clock)
        self._max_rpm = max_requests_per_minute or settings.max_requests_per_minute
        self._approach_ratio = approach_ratio or settings.rate_limit_approach_ratio
        self.batcher = PriceBatcher(
            source,
            clock=clock,
            on_upstream_call=self._on_upstream_call,
            on_upstream_error=self._on_upstream_error,
            **batcher_options,
        )
        self.metrics = {
            "primary_requests": 0,
            "fallback_requests": 0,
            "errors": 0,
            "rate_limits": 0,
            "self_throttles": 0,
        }

    # ------------------------------------------------------------------
    # Breaker inputs
    # ------------------------------------------------------------------

    def _on_upstream_call(self, n_ids: int) -> None:
        self.rate_counter.record()
        self.metrics["primary_requests"] += 1

    def _on_upstream_error(self, error: Exception) -> None:
        self.metrics["errors"] += 1
        if isinstance(error, UpstreamRateLimitError):
            self.metrics["rate_limits"] += 1
            reason = "http_429" if error.upstream_status == 429 else "throttled"
            self.breaker.trip(reason)

    @property
    def approach_threshold(self) -> float:
        return self._max_rpm * self._approach_ratio

    def _check_request_rate(self) -> bool:
        """Trip the breaker pre-emptively when the rolling rate nears the budget."""
        approaching = self.rate_counter.count() >= self.approach_threshold
        if approaching and self.breaker.is_healthy:
            self.metrics["self_throttles"] += 1
            logger.warning(
                f"Request rate {self.rate_counter.count()}/{self._max_rpm} per minute, "
                "self-throttling to fallback"
            )
            self.breaker.trip("self_throttle")
        return approaching

    def should_use_fallback(self, coin_id: str) -> bool:
        """Whether this id is currently routed away from the primary feed."""
        self._check_request_rate()
        return self.breaker.in_cooldown

    def has_fallback(self, coin_id: str) -> bool:
        return self._stream is not None and self._stream.can_handle(coin_id)

    # ------------------------------------------------------------------
    # Price lookups
    # ------------------------------------------------------------------

    async def get_smart_price(self, coin_id: str) -> Quote:
        """Best available quote for one id; raises the typed errors on failure."""
        cached = self.batcher.peek(coin_id)
        if cached is not None:
            return cached

        if self.should_use_fallback(coin_id):
            return self._fallback(coin_id)

        try:
            return await self.batcher.get_price(coin_id)
        except UpstreamRateLimitError:
            return self._fallback(coin_id)

    async def get_smart_prices(self, coin_ids: Sequence[str]) -> list[Quote | None]:
        """Quotes in input order, None where nothing could be served."""
        routes = [self.should_use_fallback(coin_id) for coin_id in coin_ids]
        fallback_count = sum(routes)
        if fallback_count:
            logger.info(
                f"Routing {fallback_count}/{len(coin_ids)} ids to fallback during cooldown"
            )

        results = await asyncio.gather(
            *(
                self._fallback_or_none(coin_id) if use_fallback else self._primary_or_none(coin_id)
                for coin_id, use_fallback in zip(coin_ids, routes)
            )
        )
        return list(results)

    async def _primary_or_none(self, coin_id: str) -> Quote | None:
        try:
            return await self.get_smart_price(coin_id)
        except QuoteNotFoundError:
            return None
        except (FallbackUnavailableError, UpstreamRateLimitError) as e:
            logger.debug(f"No price for {coin_id}: {e}")
            return None
        except Exception as e:
            logger.warning(f"Price lookup failed for {coin_id}: {e}")
            return None

    async def _fallback_or_none(self, coin_id: str) -> Quote | None:
        cached = self.batcher.peek(coin_id)
        if cached is not None:
            return cached
        try:
            return self._fallback(coin_id)
        except FallbackUnavailableError as e:
            logger.debug(f"No fallback for {coin_id}: {e.reason}")
            return None

    def _fallback(self, coin_id: str) -> Quote:
        """Exchange-stream quote, else a stale cached quote, else raise."""
        reason = "primary_cooldown"
        if self.has_fallback(coin_id):
            try:
                quote = self._stream.get_quote(coin_id)
                self.metrics["fallback_requests"] += 1
                logger.info(f"Served {coin_id} from fallback stream")
                return quote
            except FallbackUnavailableError as e:
                reason = e.reason

        stale = self.batcher.peek(coin_id, allow_stale=True)
        if stale is not None:
            return stale.as_stale()
        raise FallbackUnavailableError(coin_id, reason)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        requests = self.rate_counter.count()
        until = self.breaker.cooldown_until
        return {
            "primary_healthy": self.breaker.is_healthy,
            "cooldown_until": until.isoformat() if until else None,
            "requests_last_minute": requests,
            "max_requests_per_minute": self._max_rpm,
            "approaching_limit": requests >= self.approach_threshold,
            "fallback_available": self._stream is not None and not self._stream.is_banned,
            "fallback_coverage": self._stream.coverage if self._stream else [],
            "fallback_stream": self._stream.get_stats() if self._stream else None,
            "metrics": dict(self.metrics),
            "batcher": self.batcher.get_stats(),
            "breaker": self.breaker.get_stats(),
        }
