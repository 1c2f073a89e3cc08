"""Tests for domain models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from coinquote.domain.price import Quote, QuoteSource
from coinquote.domain.ticker import Resolution


class TestResolution:
    def test_miss(self):
        miss = Resolution.miss("$wbtc", "banned:wrapped_token", "wbtc")

        assert miss.ok is False
        assert miss.id is None
        assert miss.source == "none"
        assert miss.ticker == "wbtc"

    def test_pair_flag(self):
        resolution = Resolution(query="btcusdt", ok=True, id="bitcoin", quote="USDT", source="canonical")

        assert resolution.is_pair

    def test_unknown_source_rejected(self):
        with pytest.raises(ValidationError):
            Resolution(query="x", ok=True, id="x", source="guess")


class TestQuote:
    def test_as_stale_copies(self):
        quote = Quote(id="bitcoin", price=1.0, timestamp_ms=1)

        stale = quote.as_stale()

        assert stale.is_stale
        assert not quote.is_stale
        assert stale.source == QuoteSource.PRIMARY

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError):
            Quote(id="bitcoin", price=-1.0, timestamp_ms=1)

    def test_serializes_source_as_string(self):
        quote = Quote(id="bitcoin", price=1.0, timestamp_ms=1, source=QuoteSource.FALLBACK)

        assert quote.model_dump(mode="json")["source"] == "fallback"
