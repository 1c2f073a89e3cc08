"""Data providers - centralized external API access."""

from .coingecko import CoinGeckoClient
from .exchange_stream import SAFE_SYMBOLS, ExchangeTickerStream
from .resilience import (
    BreakerState,
    CooldownBreaker,
    RequestCoalescer,
    RequestRateCounter,
)


__all__ = [
    "SAFE_SYMBOLS",
    "BreakerState",
    "CoinGeckoClient",
    "CooldownBreaker",
    "ExchangeTickerStream",
    "RequestCoalescer",
    "RequestRateCounter",
]
