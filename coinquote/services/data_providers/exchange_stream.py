"""
Binance spot ticker stream used as the fallback price feed.

Features:
- Combined stream: one `<symbol>@ticker` stream per curated symbol over a
  single WebSocket connection (`/stream?streams=...`).
- Curated coverage: only a short list of unambiguous, high-liquidity coins is
  ever served, so a fallback price can never belong to the wrong asset.
- Freshness: a last price is only served while it is younger than the
  configured max age.
- Automatic reconnection with exponential backoff and jitter, up to a maximum
  number of attempts.
- Ban detection: a policy-violation close or an HTTP 429/418 handshake
  disables the stream for the rest of the process lifetime.
"""

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass
from typing import Any

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from coinquote.core.clock import Clock, system_clock
from coinquote.core.config import settings
from coinquote.core.exceptions import FallbackUnavailableError
from coinquote.core.logging import get_logger
from coinquote.domain.price import Quote, QuoteSource

logger = get_logger("data_providers.exchange_stream")

# Upstream id -> exchange symbol. Only add coins with exactly one obvious listing.
SAFE_SYMBOLS: dict[str, str] = {
    "bitcoin": "BTCUSDT",
    "ethereum": "ETHUSDT",
    "solana": "SOLUSDT",
    "binancecoin": "BNBUSDT",
    "cardano": "ADAUSDT",
    "avalanche-2": "AVAXUSDT",
    "chainlink": "LINKUSDT",
    "polygon-ecosystem-token": "POLUSDT",
    "uniswap": "UNIUSDT",
    "litecoin": "LTCUSDT",
}

POLICY_VIOLATION = 1008
BAN_HTTP_STATUSES = {418, 429}


@dataclass
class _LastPrice:
    price: float
    change_24h: float
    received_at: float


class ExchangeTickerStream:
    """
    Keeps a last-price table fed by the exchange's push stream.
    """

    def __init__(
        self,
        url: str | None = None,
        symbols: dict[str, str] | None = None,
        max_age: float | None = None,
        max_reconnects: int | None = None,
        clock: Clock = system_clock,
    ):
        self._base_url = url or settings.exchange_ws_url
        self._symbols = dict(SAFE_SYMBOLS if symbols is None else symbols)
        self._by_symbol = {sym.upper(): coin_id for coin_id, sym in self._symbols.items()}
        self._max_age = max_age or settings.exchange_quote_max_age
        self._max_reconnects = (
            settings.exchange_max_reconnects if max_reconnects is None else max_reconnects
        )
        self._clock = clock

        self._prices: dict[str, _LastPrice] = {}
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._connection = None
        self._connected = False
        self._reconnect_attempts = 0
        self._banned = False
        self._messages = 0

    # ------------------------------------------------------------------
    # Coverage and quotes
    # ------------------------------------------------------------------

    @property
    def coverage(self) -> list[str]:
        return sorted(self._symbols)

    @property
    def is_banned(self) -> bool:
        return self._banned

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def can_handle(self, coin_id: str) -> bool:
        """Whether the id is on the curated list and the stream is usable."""
        return not self._banned and coin_id in self._symbols

    def get_quote(self, coin_id: str) -> Quote:
        """Fresh fallback quote for an id, or FallbackUnavailableError."""
        if coin_id not in self._symbols:
            raise FallbackUnavailableError(coin_id, "not_in_safe_list")
        if self._banned:
            raise FallbackUnavailableError(coin_id, "stream_banned")

        entry = self._prices.get(coin_id)
        if entry is None:
            raise FallbackUnavailableError(coin_id, "no_data")

        age = self._clock.time() - entry.received_at
        if age > self._max_age:
            raise FallbackUnavailableError(coin_id, f"stale ({age:.0f}s)")

        return Quote(
            id=coin_id,
            price=entry.price,
            change_24h=entry.change_24h,
            timestamp_ms=int(entry.received_at * 1000),
            source=QuoteSource.FALLBACK,
            provider="binance",
        )

    def handle_message(self, message: str | bytes) -> str | None:
        """
        Parse one combined-stream push into the last-price table.

        Returns:
            The upstream id that was updated, or None for anything unrecognized.
        """
        try:
            payload = json.loads(message)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Unparseable stream message: {e}")
            return None

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            return None

        coin_id = self._by_symbol.get(str(data.get("s", "")).upper())
        if coin_id is None:
            return None

        try:
            price = float(data["c"])
            change = float(data.get("P", 0.0))
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Malformed ticker payload for {coin_id}")
            return None
        if price <= 0:
            return None

        self._prices[coin_id] = _LastPrice(price, change, self._clock.time())
        self._messages += 1
        return coin_id

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def stream_url(self) -> str:
        streams = "/".join(f"{sym.lower()}@ticker" for sym in self._symbols.values())
        return f"{self._base_url}?streams={streams}"

    def start(self) -> None:
        """Spawn the background connection task."""
        if self._task is not None or not self._symbols:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="exchange-ticker-stream")
        logger.info(f"Exchange stream starting for {len(self._symbols)} symbols")

    async def stop(self) -> None:
        """Signal the connection loop to exit and wait for it."""
        self._stop_event.set()
        if self._connection is not None:
            await self._connection.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._connected = False
        logger.info("Exchange stream stopped")

    def _mark_banned(self, why: str) -> None:
        self._banned = True
        logger.warning(f"Exchange stream disabled: {why}")

    async def _run(self) -> None:
        while not self._stop_event.is_set() and not self._banned:
            try:
                async with connect(
                    self.stream_url,
                    open_timeout=settings.external_api_timeout,
                    ping_interval=20,
                    ping_timeout=20,
                    close_timeout=5,
                    additional_headers={"User-Agent": settings.user_agent},
                ) as ws:
                    self._connection = ws
                    self._connected = True
                    self._reconnect_attempts = 0
                    logger.info("Exchange stream connected")
                    async for message in ws:
                        self.handle_message(message)
            except InvalidStatus as e:
                status = e.response.status_code
                if status in BAN_HTTP_STATUSES:
                    self._mark_banned(f"handshake HTTP {status}")
                    break
                logger.warning(f"Exchange stream handshake rejected: HTTP {status}")
            except ConnectionClosed as e:
                code = e.rcvd.code if e.rcvd is not None else None
                if code == POLICY_VIOLATION:
                    self._mark_banned(f"closed with policy violation ({e.rcvd.reason})")
                    break
                logger.warning(f"Exchange stream closed (code {code})")
            except (WebSocketException, OSError, TimeoutError) as e:
                logger.warning(f"Exchange stream connection error: {e}")
            finally:
                self._connection = None
                self._connected = False

            if self._stop_event.is_set():
                break
            if not await self._backoff():
                break

    async def _backoff(self) -> bool:
        """Sleep before reconnecting. False once attempts are exhausted."""
        self._reconnect_attempts += 1
        if self._reconnect_attempts > self._max_reconnects:
            logger.error(
                f"Exchange stream gave up after {self._max_reconnects} reconnect attempts"
            )
            return False

        delay = min(2 ** self._reconnect_attempts, 60) + random.uniform(0, 1)
        logger.info(
            f"Reconnecting exchange stream in {delay:.1f}s "
            f"(attempt {self._reconnect_attempts}/{self._max_reconnects})"
        )
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    def get_stats(self) -> dict[str, Any]:
        now = self._clock.time()
        fresh = sum(1 for p in self._prices.values() if now - p.received_at <= self._max_age)
        return {
            "connected": self._connected,
            "running": self.running,
            "banned": self._banned,
            "reconnect_attempts": self._reconnect_attempts,
            "symbols": len(self._symbols),
            "fresh_prices": fresh,
            "messages": self._messages,
        }
