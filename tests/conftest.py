"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any, AsyncGenerator, Generator, Sequence

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncEngine

from coinquote.database.connection import (
    create_engine_for_url,
    create_schema,
    create_session_factory,
)
from coinquote.domain.ticker import Candidate
from coinquote.main import create_app
from coinquote.repositories.learning_store import SqlLearningStore
from coinquote.services.data_providers.resilience import CooldownBreaker
from coinquote.services.learning_resolver import SmartResolver
from coinquote.services.resolver_service import ResolverService
from coinquote.services.search_resolver import SearchResolver
from coinquote.services.smart_price import SmartPriceService


START = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self._now = start.timestamp()

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._now, UTC)

    def time(self) -> float:
        return self._now

    def advance(self, seconds: float = 0.0, **delta: float) -> None:
        self._now += seconds + timedelta(**delta).total_seconds()


class FakeSearchClient:
    """Search endpoint double: canned candidates per query, call log, optional gate."""

    def __init__(self, results: dict[str, list[Candidate]] | None = None):
        self.results = results or {}
        self.calls: list[str] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def search(self, query: str) -> list[Candidate]:
        self.calls.append(query)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.results.get(query, []))


class FakePriceSource:
    """Batch price endpoint double recording every id list it receives."""

    def __init__(self, prices: dict[str, dict[str, Any]] | None = None):
        self.prices = prices or {}
        self.calls: list[list[str]] = []
        self.error: Exception | None = None

    async def simple_price(self, ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        self.calls.append(list(ids))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return {i: self.prices[i] for i in ids if i in self.prices}


def candidate(
    coin_id: str,
    symbol: str,
    name: str | None = None,
    rank: int | None = None,
    categories: list[str] | None = None,
) -> Candidate:
    return Candidate(
        id=coin_id,
        symbol=symbol,
        name=name if name is not None else symbol,
        market_cap_rank=rank,
        categories=categories or [],
    )


def price_entry(usd: float, change: float = 1.5, market_cap: float | None = 1e9) -> dict[str, Any]:
    return {"usd": usd, "usd_24h_change": change, "usd_market_cap": market_cap}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database per test."""
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'coinquote.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(engine: AsyncEngine) -> SqlLearningStore:
    return SqlLearningStore(create_session_factory(engine))


@pytest.fixture
def search_client() -> FakeSearchClient:
    return FakeSearchClient(
        {
            "ondo": [candidate("ondo-finance", "ONDO", "Ondo", rank=60)],
            "usdc": [candidate("usd-coin", "USDC", "USDC", rank=6)],
        }
    )


@pytest.fixture
def price_source() -> FakePriceSource:
    return FakePriceSource(
        {
            "bitcoin": price_entry(65000.0),
            "ethereum": price_entry(3200.0),
            "ondo-finance": price_entry(1.1),
        }
    )


def make_service(
    search_client: FakeSearchClient,
    price_source: FakePriceSource,
    store: SqlLearningStore,
    clock: FakeClock,
    **options: Any,
) -> ResolverService:
    """ResolverService over fakes with short windows and deterministic TTLs."""
    search = SearchResolver(search_client, blocklist=[])
    learning = SmartResolver(
        search,
        store,
        clock=clock,
        cache_size=100,
        base_confidence=70,
        high_confidence_ttl=timedelta(days=7),
        default_ttl=timedelta(days=3),
        low_confidence_ttl=timedelta(days=1),
        backoff_base=3,
        backoff_cap_minutes=720,
        default_chain="",
    )
    prices = SmartPriceService(
        price_source,
        breaker=CooldownBreaker(cooldown_seconds=120, name="test", clock=clock),
        max_requests_per_minute=100,
        clock=clock,
        window_ms=5,
    )
    options.setdefault("hit_flush_interval", 60)
    options.setdefault("warmup_limit", 50)
    return ResolverService(
        search=search,
        learning=learning,
        prices=prices,
        store=store,
        clock=clock,
        **options,
    )


@pytest_asyncio.fixture
async def service(search_client, price_source, store, clock) -> AsyncGenerator[ResolverService, None]:
    """Started service on the per-test SQLite store."""
    service = make_service(search_client, price_source, store, clock)
    await service.start()
    yield service
    await service.stop()


@pytest.fixture
def api_service(search_client, price_source, clock, tmp_path) -> ResolverService:
    """Unstarted service owning its engine; the app lifespan starts it."""
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'api.db'}")
    store = SqlLearningStore(create_session_factory(engine))
    return make_service(
        search_client, price_source, store, clock, engine=engine, create_schema=True
    )


@pytest.fixture
def client(api_service) -> Generator[TestClient, None, None]:
    """Test client for the full app; the API lives under /api."""
    app = create_app(api_service)
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
