"""Tests for the learning resolver against a real SQLite store."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from coinquote.core.clock import as_utc
from coinquote.core.exceptions import UpstreamRateLimitError, UpstreamTransportError
from coinquote.domain.ticker import ResolveFlags
from coinquote.services.learning_resolver import (
    HitFlusher,
    SmartResolver,
    cache_key,
    normalize_ticker,
    split_chain_hint,
)
from coinquote.services.search_resolver import SearchResolver

from tests.conftest import FakeSearchClient, candidate


ONDO = candidate("ondo-finance", "ONDO", "Ondo", rank=60)
USDC = candidate("usd-coin", "USDC", "USDC", rank=6)
WXYZ = candidate("wxyz-token", "WXYZ", "Wxyz", rank=900)


@pytest.fixture
def client() -> FakeSearchClient:
    return FakeSearchClient({"ondo": [ONDO], "usdc": [USDC], "wxyz": [WXYZ]})


@pytest.fixture
def make_resolver(client, store, clock):
    def factory(**overrides) -> SmartResolver:
        options = dict(
            clock=clock,
            cache_size=10,
            base_confidence=70,
            high_confidence_ttl=timedelta(days=7),
            default_ttl=timedelta(days=3),
            low_confidence_ttl=timedelta(days=1),
            backoff_base=3,
            backoff_cap_minutes=720,
            default_chain="",
        )
        options.update(overrides)
        return SmartResolver(SearchResolver(client, blocklist=[]), store, **options)

    return factory


@pytest_asyncio.fixture
async def resolver(make_resolver) -> SmartResolver:
    return make_resolver()


class TestNormalization:
    """Tests for normalize_ticker and chain hints."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("BTC", "btc"),
            ("  $Pengu ", "pengu"),
            ("eth-usdt", "eth"),
            ("sol/usdc", "sol"),
            ("btc-perp", "btc"),
            ("eth.future", "eth"),
            ("shiba_inu", "shibainu"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_ticker(raw) == expected

    def test_quote_like_suffix_after_separator_is_stripped(self):
        assert normalize_ticker("abc-usd") == "abc"

    @pytest.mark.parametrize("raw", ["", "   ", "$", "-usdt", "a" * 21, None])
    def test_rejects_unusable_input(self, raw):
        assert normalize_ticker(raw) is None

    def test_max_length_accepted(self):
        assert normalize_ticker("a" * 20) == "a" * 20

    def test_chain_hint(self):
        assert split_chain_hint("pepe eth") == ("pepe", "eth")
        assert split_chain_hint("pepe solana") == ("pepe", "sol")
        assert split_chain_hint("bsc cake") == ("cake", "bsc")
        assert split_chain_hint("pepe") == ("pepe", None)
        assert split_chain_hint("pepe", "eth") == ("pepe", "eth")

    def test_single_word_chain_name_is_a_ticker(self):
        assert split_chain_hint("eth") == ("eth", None)

    def test_cache_key(self):
        assert cache_key("pepe") == "pepe"
        assert cache_key("pepe", "eth") == "pepe|eth"


class TestConfidence:
    """Confidence scoring, TTL tiers and backoff."""

    def test_confidence(self, resolver):
        assert resolver.compute_confidence("ondo", "ondo-finance") == 80
        assert resolver.compute_confidence("xyz", "other") == 80
        assert resolver.compute_confidence("ab", "ab-coin") == 60
        assert resolver.compute_confidence("ab", "other") == 50

    def test_ttl_tiers(self, resolver):
        assert resolver.ttl_for(80) == timedelta(days=7)
        assert resolver.ttl_for(65) == timedelta(days=3)
        assert resolver.ttl_for(50) == timedelta(days=1)

    def test_backoff_growth_and_cap(self, resolver):
        assert resolver.backoff(1) == timedelta(minutes=3)
        assert resolver.backoff(2) == timedelta(minutes=9)
        assert resolver.backoff(3) == timedelta(minutes=27)
        assert resolver.backoff(10) == timedelta(minutes=720)


class TestLearning:
    """Resolution order: memory, database, backoff, search."""

    @pytest.mark.asyncio
    async def test_learns_and_persists(self, resolver, client, store, clock):
        result = await resolver.resolve("ondo")

        assert result.ok and result.id == "ondo-finance"
        assert result.source == "learned"
        mapping = await store.get_mapping("ondo")
        assert mapping.canonical_id == "ondo-finance"
        assert mapping.source == "learned"
        assert mapping.confidence_score == 80
        assert as_utc(mapping.expires_at) == clock.now() + timedelta(days=7)
        assert client.calls == ["ondo"]

    @pytest.mark.asyncio
    async def test_idempotent_from_memory(self, resolver, client):
        first = await resolver.resolve("ondo")
        second = await resolver.resolve("$ONDO")

        assert first.id == second.id == "ondo-finance"
        assert second.source == "memory"
        assert client.calls == ["ondo"]

    @pytest.mark.asyncio
    async def test_served_from_database_after_memory_expiry(self, resolver, client, clock):
        await resolver.resolve("ondo")
        clock.advance(days=4)

        result = await resolver.resolve("ondo")

        assert result.source == "database"
        assert result.id == "ondo-finance"
        assert client.calls == ["ondo"]

    @pytest.mark.asyncio
    async def test_new_process_reads_database(self, resolver, make_resolver, client):
        await resolver.resolve("ondo")
        fresh = make_resolver()

        result = await fresh.resolve("ondo")

        assert result.source == "database"
        assert client.calls == ["ondo"]

    @pytest.mark.asyncio
    async def test_expired_mapping_revalidates(self, resolver, client, clock):
        await resolver.resolve("ondo")
        clock.advance(days=8)

        result = await resolver.resolve("ondo")

        assert result.source == "learned"
        assert client.calls == ["ondo", "ondo"]

    @pytest.mark.asyncio
    async def test_relearn_replaces_id_and_extends_expiry(self, resolver, store, client, clock):
        await resolver.resolve("ondo")
        clock.advance(days=8)
        client.results["ondo"] = [candidate("ondo", "ONDO", "Ondo")]

        await resolver.resolve("ondo")

        mapping = await store.get_mapping("ondo")
        assert mapping.canonical_id == "ondo"
        assert mapping.confidence_score == 80
        assert as_utc(mapping.expires_at) == clock.now() + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_memory_eviction_at_capacity(self, make_resolver, client):
        resolver = make_resolver(cache_size=2)
        for ticker in ("aaa", "bbb", "ccc"):
            client.results[ticker] = [candidate(f"{ticker}-coin", ticker.upper(), ticker)]
            await resolver.resolve(ticker)

        stats = await resolver.stats()
        assert stats["memory_cache_size"] == 2
        assert (await resolver.resolve("aaa")).source == "database"

    @pytest.mark.asyncio
    async def test_memory_eviction_drops_least_recently_used(self, make_resolver, client):
        resolver = make_resolver(cache_size=2)
        for ticker in ("aaa", "bbb", "ccc"):
            client.results[ticker] = [candidate(f"{ticker}-coin", ticker.upper(), ticker)]
        await resolver.resolve("aaa")
        await resolver.resolve("bbb")
        assert (await resolver.resolve("aaa")).source == "memory"

        await resolver.resolve("ccc")

        assert (await resolver.resolve("aaa")).source == "memory"
        assert (await resolver.resolve("bbb")).source == "database"


class TestFailures:
    """Not-found, transport and rate-limit outcomes with backoff."""

    @pytest.mark.asyncio
    async def test_not_found_records_failure(self, resolver, store, clock):
        result = await resolver.resolve("nope")

        assert not result.ok
        assert result.reason == "not_found"
        failure = await store.get_failure("nope")
        assert failure.failure_count == 1
        assert failure.last_reason == "not_found"
        assert as_utc(failure.retry_after) == clock.now() + timedelta(minutes=3)

    @pytest.mark.asyncio
    async def test_backoff_short_circuits_search(self, resolver, client):
        await resolver.resolve("nope")
        result = await resolver.resolve("nope")

        assert result.reason == "backoff"
        assert client.calls == ["nope"]

    @pytest.mark.asyncio
    async def test_backoff_grows_with_each_failure(self, resolver, store, client, clock):
        retry_afters = []
        for wait in (0, 3, 9):
            clock.advance(minutes=wait, seconds=1)
            result = await resolver.resolve("nope")
            assert result.reason == "not_found"
            retry_afters.append(as_utc((await store.get_failure("nope")).retry_after))

        assert retry_afters[0] < retry_afters[1] < retry_afters[2]
        assert retry_afters[2] == clock.now() + timedelta(minutes=27)
        assert len(client.calls) == 3

    @pytest.mark.asyncio
    async def test_rate_limit_reports_and_backs_off(self, make_resolver, client, store):
        seen = []
        resolver = make_resolver(on_rate_limit=seen.append)
        client.error = UpstreamRateLimitError("429", upstream_status=429)

        result = await resolver.resolve("ondo")

        assert result.reason == "ratelimit"
        assert len(seen) == 1
        assert (await store.get_failure("ondo")).last_reason == "ratelimit"

    @pytest.mark.asyncio
    async def test_transport_error(self, resolver, client, store):
        client.error = UpstreamTransportError("boom")

        result = await resolver.resolve("ondo")

        assert result.reason == "api_error"
        assert (await store.get_failure("ondo")).last_reason == "api_error"

    @pytest.mark.asyncio
    async def test_success_clears_failure(self, resolver, client, store, clock):
        client.results["late"] = []
        await resolver.resolve("late")
        clock.advance(minutes=4)
        client.results["late"] = [candidate("late-coin", "LATE", "Late")]

        result = await resolver.resolve("late")

        assert result.ok
        assert await store.get_failure("late") is None

    @pytest.mark.asyncio
    async def test_invalid_input(self, resolver, client):
        result = await resolver.resolve("   ")
        assert result.reason == "invalid_ticker"
        assert client.calls == []


class TestPoisoning:
    """Learning bans and the stablecoin guard."""

    @pytest.mark.asyncio
    async def test_learning_ban_is_persisted(self, resolver, store):
        result = await resolver.resolve("wxyz")

        assert not result.ok
        assert result.reason == "banned:wrapped_token"
        mapping = await store.get_mapping("wxyz")
        assert mapping.is_banned
        assert mapping.confidence_score == 0
        assert mapping.canonical_id == "wxyz-token"

    @pytest.mark.asyncio
    async def test_ban_is_monotonic(self, resolver, client, clock):
        await resolver.resolve("wxyz")
        for _ in range(3):
            clock.advance(days=30)
            result = await resolver.resolve("wxyz")
            assert result.reason == "banned:wrapped_token"
        assert client.calls == ["wxyz"]

    @pytest.mark.asyncio
    async def test_stablecoin_guard(self, resolver, store):
        result = await resolver.resolve("usdc")

        assert not result.ok
        assert result.reason == "not_found"
        assert await store.get_mapping("usdc") is None

    @pytest.mark.asyncio
    async def test_explicit_flags_search_without_learning(self, resolver, store, client):
        result = await resolver.resolve("usdc", flags=ResolveFlags(include_stablecoins=True))

        assert result.ok and result.id == "usd-coin"
        assert result.source == "search"
        assert await store.get_mapping("usdc") is None
        assert await store.get_failure("usdc") is None

    @pytest.mark.asyncio
    async def test_explicit_flags_skip_memory(self, resolver, client):
        await resolver.resolve("ondo")
        result = await resolver.resolve("ondo", flags=ResolveFlags(force_exact=True))

        assert result.source == "search"
        assert client.calls == ["ondo", "ondo"]

    @pytest.mark.asyncio
    async def test_explicit_flags_still_refuse_unrelaxed_learning_rules(self, resolver, store):
        result = await resolver.resolve("wxyz", flags=ResolveFlags(include_stablecoins=True))

        assert not result.ok
        assert result.reason == "banned:wrapped_token"
        assert await store.get_mapping("wxyz") is None

    @pytest.mark.asyncio
    async def test_matching_flag_relaxes_learning_rule(self, resolver, store):
        result = await resolver.resolve("wxyz", flags=ResolveFlags(include_wrapped=True))

        assert result.ok and result.id == "wxyz-token"
        assert result.source == "search"
        assert await store.get_mapping("wxyz") is None

    @pytest.mark.asyncio
    async def test_single_letter_is_never_relaxed(self, resolver, client, store):
        client.results["q"] = [candidate("q-coin", "Q", "Q Coin", rank=400)]

        result = await resolver.resolve("q", flags=ResolveFlags(force_exact=True))

        assert result.reason == "banned:single_letter_ambiguous"
        assert await store.get_mapping("q") is None


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_concurrent_learns_share_one_search(self, resolver, client):
        client.gate = asyncio.Event()
        tasks = [asyncio.create_task(resolver.resolve("ondo")) for _ in range(5)]

        for _ in range(200):
            if client.calls:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.2)
        client.gate.set()
        results = await asyncio.gather(*tasks)

        assert {r.id for r in results} == {"ondo-finance"}
        assert client.calls == ["ondo"]


class TestAdmin:
    """force_ban / force_unban / force_relearn / force_map."""

    @pytest.mark.asyncio
    async def test_force_ban_then_unban(self, resolver, client, store):
        await resolver.resolve("ondo")

        assert await resolver.force_ban("ondo", "manual")
        banned = await resolver.resolve("ondo")
        assert banned.reason == "banned:manual"

        assert await resolver.force_unban("ondo")
        relearned = await resolver.resolve("ondo")
        assert relearned.ok and relearned.source == "learned"
        assert client.calls == ["ondo", "ondo"]

        mapping = await store.get_mapping("ondo")
        assert not mapping.is_banned
        assert mapping.source == "learned"

    @pytest.mark.asyncio
    async def test_unban_of_unknown_ticker_is_noop(self, resolver):
        assert not await resolver.force_unban("never")

    @pytest.mark.asyncio
    async def test_ban_placeholder_deleted_on_unban(self, resolver, store):
        await resolver.force_ban("ghost")
        placeholder = await store.get_mapping("ghost")
        assert placeholder.is_banned and placeholder.canonical_id == ""

        assert await resolver.force_unban("ghost")
        assert await store.get_mapping("ghost") is None

    @pytest.mark.asyncio
    async def test_force_relearn(self, resolver, client, store):
        await resolver.resolve("ondo")
        client.results["ondo"] = [candidate("ondo-v2", "ONDO", "Ondo V2", rank=50)]

        result = await resolver.force_relearn("ondo")

        assert result.id == "ondo-v2"
        assert (await store.get_mapping("ondo")).canonical_id == "ondo-v2"

    @pytest.mark.asyncio
    async def test_force_map_pins_mapping(self, resolver, make_resolver, store, clock):
        assert await resolver.force_map("foo", "foo-protocol", chain="eth")

        mapping = await store.get_mapping("foo")
        assert mapping.source == "admin"
        assert mapping.confidence_score == 100
        assert mapping.expires_at is None

        clock.advance(days=365)
        result = await make_resolver().resolve("foo")
        assert result.id == "foo-protocol"
        assert result.source == "database"

    @pytest.mark.asyncio
    async def test_learning_does_not_overwrite_admin_pin(self, resolver, client, store):
        await resolver.force_map("ondo", "pinned-ondo", chain="eth")

        result = await resolver.resolve("ondo sol")

        assert result.id == "ondo-finance"
        assert (await store.get_mapping("ondo")).canonical_id == "pinned-ondo"


class TestHitsAndWarmup:
    @pytest.mark.asyncio
    async def test_hits_are_buffered_then_flushed(self, resolver, store):
        await resolver.resolve("ondo")
        await resolver.resolve("ondo")
        await resolver.resolve("ondo")
        assert resolver.pending_hits == 1
        assert (await store.get_mapping("ondo")).hit_count == 0

        assert await resolver.flush_hits() == 1

        assert (await store.get_mapping("ondo")).hit_count == 2
        assert resolver.pending_hits == 0

    @pytest.mark.asyncio
    async def test_hit_flusher_task(self, resolver, store):
        await resolver.resolve("ondo")
        await resolver.resolve("ondo")
        flusher = HitFlusher(resolver, interval=0.01)

        flusher.start()
        assert flusher.running
        await asyncio.sleep(0.05)
        await flusher.stop()

        assert not flusher.running
        assert (await store.get_mapping("ondo")).hit_count == 1

    @pytest.mark.asyncio
    async def test_warmup_loads_top_mappings(self, resolver, store, client, clock):
        await store.seed_defaults(clock.now())

        loaded = await resolver.warmup(limit=5)

        assert loaded == 5
        result = await resolver.resolve("btc")
        assert result.source == "memory"
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_stats(self, resolver, store, clock):
        await store.seed_defaults(clock.now())
        await resolver.warmup()
        await resolver.resolve("ondo")
        await resolver.resolve("nope")

        stats = await resolver.stats()

        assert stats["learned_mappings"] == 20
        assert stats["banned_mappings"] == 9
        assert stats["recent_learnings"] == 20
        assert stats["active_failures"] == 1
        assert stats["warmup_complete"] is True
        assert stats["memory_cache_capacity"] == 10
        assert stats["memory_cache_size"] == 10


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_store_error_becomes_internal_error_miss(self, resolver, store, monkeypatch):
        async def broken(ticker):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(store, "get_mapping", broken)

        result = await resolver.resolve("ondo")

        assert not result.ok
        assert result.reason == "internal_error"
        assert result.ticker == "ondo"
