"""Tests for the coalescing price batcher."""

from __future__ import annotations

import asyncio

import pytest

from coinquote.core.exceptions import (
    QuoteNotFoundError,
    UpstreamRateLimitError,
    UpstreamTransportError,
)
from coinquote.domain.price import QuoteSource
from coinquote.services.price_batcher import PriceBatcher

from tests.conftest import FakePriceSource, price_entry


@pytest.fixture
def source() -> FakePriceSource:
    return FakePriceSource(
        {
            "bitcoin": price_entry(65000.0, change=2.5, market_cap=1.2e12),
            "ethereum": price_entry(3200.0),
            "solana": price_entry(150.0),
            "chainlink": price_entry(14.0),
            "uniswap": price_entry(7.0),
        }
    )


@pytest.fixture
def make_batcher(source, clock):
    def factory(**overrides) -> PriceBatcher:
        options = dict(
            window_ms=10,
            max_batch_size=250,
            cache_ttl=30,
            stale_grace=300,
            cache_size=100,
            clock=clock,
        )
        options.update(overrides)
        return PriceBatcher(source, **options)

    return factory


class TestBatching:
    """Concurrent callers share upstream requests."""

    @pytest.mark.asyncio
    async def test_concurrent_ids_share_one_request(self, make_batcher, source):
        batcher = make_batcher()

        btc, eth, btc_again = await asyncio.gather(
            batcher.get_price("bitcoin"),
            batcher.get_price("ethereum"),
            batcher.get_price("bitcoin"),
        )

        assert source.calls == [["bitcoin", "ethereum"]]
        assert btc.price == 65000.0
        assert eth.price == 3200.0
        assert btc_again == btc

    @pytest.mark.asyncio
    async def test_quote_fields(self, make_batcher, clock):
        batcher = make_batcher()

        quote = await batcher.get_price("bitcoin")

        assert quote.id == "bitcoin"
        assert quote.change_24h == 2.5
        assert quote.market_cap == 1.2e12
        assert quote.timestamp_ms == int(clock.time() * 1000)
        assert quote.source == QuoteSource.PRIMARY
        assert quote.provider == "coingecko"
        assert quote.is_stale is False

    @pytest.mark.asyncio
    async def test_large_queue_is_chunked(self, make_batcher, source):
        batcher = make_batcher(max_batch_size=2)
        ids = ["bitcoin", "ethereum", "solana", "chainlink", "uniswap"]

        quotes = await batcher.get_prices(ids)

        assert [q.id for q in quotes] == ids
        assert sorted(len(call) for call in source.calls) == [1, 2, 2]
        assert sorted(i for call in source.calls for i in call) == sorted(ids)
        assert batcher.get_stats()["upstream_calls"] == 3

    @pytest.mark.asyncio
    async def test_upstream_call_hook(self, make_batcher):
        sizes = []
        batcher = make_batcher(on_upstream_call=sizes.append)

        await batcher.get_prices(["bitcoin", "ethereum", "solana"])

        assert sizes == [3]

    @pytest.mark.asyncio
    async def test_flush_fires_without_waiting_for_window(self, make_batcher, source):
        batcher = make_batcher(window_ms=1000)
        task = asyncio.create_task(batcher.get_price("solana"))
        await asyncio.sleep(0)

        await batcher.flush()

        quote = await asyncio.wait_for(task, timeout=0.5)
        assert quote.price == 150.0
        assert source.calls == [["solana"]]


class TestCache:
    """Fresh TTL, stale grace and misses."""

    @pytest.mark.asyncio
    async def test_fresh_hit_skips_network(self, make_batcher, source, clock):
        batcher = make_batcher()
        await batcher.get_price("bitcoin")
        clock.advance(29)

        quote = await batcher.get_price("bitcoin")

        assert quote.price == 65000.0
        assert len(source.calls) == 1
        assert batcher.get_stats()["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_expired_quote_is_refetched(self, make_batcher, source, clock):
        batcher = make_batcher()
        await batcher.get_price("bitcoin")
        clock.advance(31)
        source.prices["bitcoin"] = price_entry(66000.0)

        quote = await batcher.get_price("bitcoin")

        assert quote.price == 66000.0
        assert len(source.calls) == 2

    @pytest.mark.asyncio
    async def test_peek(self, make_batcher, clock):
        batcher = make_batcher()
        assert batcher.peek("bitcoin") is None
        await batcher.get_price("bitcoin")

        clock.advance(60)

        assert batcher.peek("bitcoin") is None
        stale = batcher.peek("bitcoin", allow_stale=True)
        assert stale.is_stale
        clock.advance(300)
        assert batcher.peek("bitcoin", allow_stale=True) is None

    @pytest.mark.asyncio
    async def test_unknown_id_raises_not_found(self, make_batcher):
        batcher = make_batcher()

        with pytest.raises(QuoteNotFoundError):
            await batcher.get_price("no-such-coin")

    @pytest.mark.asyncio
    async def test_empty_id_raises_not_found(self, make_batcher, source):
        batcher = make_batcher()

        with pytest.raises(QuoteNotFoundError):
            await batcher.get_price("")
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_malformed_entry_is_a_miss(self, make_batcher, source):
        source.prices["broken"] = {"usd": "n/a"}
        source.prices["negative"] = {"usd": -1}
        batcher = make_batcher()

        quotes = await batcher.get_prices(["broken", "negative", "bitcoin"])

        assert quotes[0] is None
        assert quotes[1] is None
        assert quotes[2].price == 65000.0

    @pytest.mark.asyncio
    async def test_get_prices_keeps_input_order(self, make_batcher):
        batcher = make_batcher()

        quotes = await batcher.get_prices(["solana", "missing", "bitcoin"])

        assert quotes[0].id == "solana"
        assert quotes[1] is None
        assert quotes[2].id == "bitcoin"

    @pytest.mark.asyncio
    async def test_order_kept_when_chunks_finish_out_of_order(self, make_batcher, source):
        delays = {"bitcoin": 0.05, "ethereum": 0.03, "solana": 0.01}
        completed = []
        simple_price = source.simple_price

        async def slow_simple_price(ids):
            await asyncio.sleep(delays.get(ids[0], 0))
            result = await simple_price(ids)
            completed.extend(ids)
            return result

        source.simple_price = slow_simple_price
        batcher = make_batcher(max_batch_size=1)

        quotes = await batcher.get_prices(["bitcoin", "missing", "ethereum", "solana"])

        assert completed == ["missing", "solana", "ethereum", "bitcoin"]
        assert quotes[0].id == "bitcoin"
        assert quotes[1] is None
        assert quotes[2].id == "ethereum"
        assert quotes[3].id == "solana"


class TestUpstreamErrors:
    """Errors fail the chunk unless a stale quote can be served."""

    @pytest.mark.asyncio
    async def test_error_fails_every_id_in_chunk(self, make_batcher, source):
        errors = []
        batcher = make_batcher(on_upstream_error=errors.append)
        source.error = UpstreamRateLimitError("429", upstream_status=429)

        results = await asyncio.gather(
            batcher.get_price("bitcoin"),
            batcher.get_price("ethereum"),
            return_exceptions=True,
        )

        assert all(isinstance(r, UpstreamRateLimitError) for r in results)
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_stale_quote_served_inside_grace(self, make_batcher, source, clock):
        batcher = make_batcher()
        await batcher.get_price("bitcoin")
        clock.advance(120)
        source.error = UpstreamTransportError("down")

        quote = await batcher.get_price("bitcoin")

        assert quote.is_stale
        assert quote.price == 65000.0
        assert batcher.get_stats()["stale_served"] == 1

    @pytest.mark.asyncio
    async def test_error_after_grace(self, make_batcher, source, clock):
        batcher = make_batcher()
        await batcher.get_price("bitcoin")
        clock.advance(301)
        source.error = UpstreamTransportError("down")

        with pytest.raises(UpstreamTransportError):
            await batcher.get_price("bitcoin")

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self, make_batcher, source):
        source.error = RuntimeError("socket exploded")
        batcher = make_batcher()

        with pytest.raises(UpstreamTransportError) as exc_info:
            await batcher.get_price("bitcoin")

        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_stats_shape(self, make_batcher, clock):
        batcher = make_batcher()
        await batcher.get_prices(["bitcoin", "ethereum"])
        clock.advance(60)

        stats = batcher.get_stats()

        assert stats["cache_fresh"] == 0
        assert stats["cache_stale"] == 2
        assert stats["pending"] == 0
        assert stats["queued"] == 0
