"""Persistence facade for the learning resolver.

Wraps the session-level repository functions; every method is its own
transaction.

Usage:
    store = SqlLearningStore(create_session_factory(engine))
    mapping = await store.get_mapping("pengu")
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coinquote.core.logging import get_logger
from coinquote.database.orm import FailedResolution, TickerMapping
from coinquote.repositories import failed_resolutions_orm as failures_repo
from coinquote.repositories import ticker_mappings_orm as mappings_repo
from coinquote.services.canonical import (
    DEFAULT_BANS,
    WARMUP_MAPPINGS,
    SeedBan,
    SeedMapping,
)


logger = get_logger("repositories.learning_store")


class SqlLearningStore:
    """Ticker mappings and failure records behind one async interface."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_mapping(self, ticker: str) -> TickerMapping | None:
        async with self._session_factory() as session:
            return await mappings_repo.get_mapping(session, ticker)

    async def save_learned(
        self,
        ticker: str,
        canonical_id: str,
        confidence: int,
        expires_at: datetime,
        now: datetime,
        chain: str | None = None,
    ) -> None:
        """Learned mapping plus clearing the ticker's failure record."""
        async with self._session_factory() as session:
            await mappings_repo.upsert_learned(
                session, ticker, canonical_id, confidence, expires_at, now, chain=chain
            )
            await failures_repo.clear_failure(session, ticker)
            await session.commit()

    async def save_banned(
        self, ticker: str, canonical_id: str, reason: str, now: datetime
    ) -> None:
        async with self._session_factory() as session:
            await mappings_repo.upsert_banned(session, ticker, canonical_id, reason, now)
            await session.commit()

    async def unban(self, ticker: str, now: datetime) -> bool:
        async with self._session_factory() as session:
            changed = await mappings_repo.unban(session, ticker, now)
            await session.commit()
            return changed

    async def save_admin(
        self,
        ticker: str,
        canonical_id: str,
        now: datetime,
        chain: str | None = None,
        contract_address: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            await mappings_repo.upsert_admin(
                session, ticker, canonical_id, now,
                chain=chain, contract_address=contract_address,
            )
            await failures_repo.clear_failure(session, ticker)
            await session.commit()

    async def forget(self, ticker: str) -> None:
        """Drop both the mapping and the failure record."""
        async with self._session_factory() as session:
            await mappings_repo.delete_mapping(session, ticker)
            await failures_repo.clear_failure(session, ticker)
            await session.commit()

    async def get_failure(self, ticker: str) -> FailedResolution | None:
        async with self._session_factory() as session:
            return await failures_repo.get_failure(session, ticker)

    async def record_failure(
        self,
        ticker: str,
        reason: str,
        chain_hint: str | None,
        now: datetime,
        backoff: Callable[[int], timedelta],
    ) -> FailedResolution:
        async with self._session_factory() as session:
            failure = await failures_repo.record_failure(
                session, ticker, reason, chain_hint, now, backoff
            )
            await session.commit()
            return failure

    async def add_hits(self, hits: Mapping[str, int], now: datetime) -> int:
        async with self._session_factory() as session:
            touched = await mappings_repo.add_hits(session, hits, now)
            await session.commit()
            return touched

    async def top_mappings(self, limit: int, now: datetime) -> Sequence[TickerMapping]:
        async with self._session_factory() as session:
            return await mappings_repo.top_mappings(session, limit, now)

    async def stats(self, now: datetime, recent_window: timedelta) -> dict[str, int]:
        async with self._session_factory() as session:
            stats = await mappings_repo.mapping_stats(session, now - recent_window)
            stats["active_failures"] = await failures_repo.count_active_failures(session, now)
            return stats

    async def seed_defaults(
        self,
        now: datetime,
        warmup: Sequence[SeedMapping] = WARMUP_MAPPINGS,
        bans: Sequence[SeedBan] = DEFAULT_BANS,
    ) -> None:
        async with self._session_factory() as session:
            await mappings_repo.seed_defaults(session, warmup, bans, now)
            await session.commit()

    async def healthcheck(self) -> bool:
        """Round-trip a trivial query; False when the database is unreachable."""
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Database healthcheck failed: {e}")
            return False
