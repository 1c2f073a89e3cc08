"""Ticker mapping repository using SQLAlchemy ORM.

Session-level functions; the caller owns the transaction.

Usage:
    from coinquote.repositories import ticker_mappings_orm as mappings_repo

    async with session_factory() as session:
        mapping = await mappings_repo.get_mapping(session, "btc")
        await mappings_repo.upsert_learned(session, "pengu", "pudgy-penguins", 80, expires_at, now)
        await session.commit()
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coinquote.core.logging import get_logger
from coinquote.database.orm import TickerMapping
from coinquote.domain.ticker import MappingSource
from coinquote.repositories.upsert import greatest, insert_for
from coinquote.services.canonical import SeedBan, SeedMapping


logger = get_logger("repositories.ticker_mappings_orm")


async def get_mapping(session: AsyncSession, ticker: str) -> TickerMapping | None:
    """Get a mapping by normalized ticker, banned or not."""
    result = await session.execute(
        select(TickerMapping).where(TickerMapping.ticker == ticker)
    )
    return result.scalar_one_or_none()


async def upsert_learned(
    session: AsyncSession,
    ticker: str,
    canonical_id: str,
    confidence: int,
    expires_at: datetime,
    now: datetime,
    chain: str | None = None,
    contract_address: str | None = None,
) -> None:
    """Insert or merge a learned mapping.

    Confidence only ever goes up (GREATEST). The expiry is replaced when the
    new confidence is higher or the stored expiry has been reached, so a
    TTL is never shortened. Banned and admin-pinned rows are left untouched.
    """
    stmt = insert_for(session, TickerMapping).values(
        ticker=ticker,
        canonical_id=canonical_id,
        chain=chain,
        contract_address=contract_address,
        source=MappingSource.LEARNED.value,
        confidence_score=confidence,
        hit_count=0,
        last_used_at=now,
        created_at=now,
        updated_at=now,
        expires_at=expires_at,
        is_banned=False,
    )
    existing = TickerMapping
    stmt = stmt.on_conflict_do_update(
        index_elements=["ticker"],
        set_={
            "canonical_id": stmt.excluded.canonical_id,
            "chain": func.coalesce(stmt.excluded.chain, existing.chain),
            "contract_address": func.coalesce(
                stmt.excluded.contract_address, existing.contract_address
            ),
            "source": stmt.excluded.source,
            "confidence_score": greatest(
                session, existing.confidence_score, stmt.excluded.confidence_score
            ),
            "expires_at": case(
                (
                    or_(
                        stmt.excluded.confidence_score > existing.confidence_score,
                        existing.expires_at <= now,
                    ),
                    stmt.excluded.expires_at,
                ),
                else_=existing.expires_at,
            ),
            "last_used_at": now,
            "updated_at": now,
        },
        where=and_(
            existing.is_banned == False,  # noqa: E712
            existing.source != MappingSource.ADMIN.value,
        ),
    )
    await session.execute(stmt)


async def upsert_banned(
    session: AsyncSession,
    ticker: str,
    canonical_id: str,
    reason: str,
    now: datetime,
) -> None:
    """Persist a ban. An existing row keeps its id; a new one stores confidence 0."""
    stmt = insert_for(session, TickerMapping).values(
        ticker=ticker,
        canonical_id=canonical_id,
        source=MappingSource.ADMIN.value,
        confidence_score=0,
        hit_count=0,
        last_used_at=now,
        created_at=now,
        updated_at=now,
        expires_at=None,
        is_banned=True,
        ban_reason=reason,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["ticker"],
        set_={
            "is_banned": True,
            "ban_reason": stmt.excluded.ban_reason,
            "updated_at": now,
        },
    )
    await session.execute(stmt)


async def unban(session: AsyncSession, ticker: str, now: datetime) -> bool:
    """Lift a ban. The row expires immediately and turns into a learned row,
    so the next lookup revalidates it through search.

    Ban placeholders that never carried an id are deleted instead.
    """
    mapping = await get_mapping(session, ticker)
    if mapping is None or not mapping.is_banned:
        return False

    if not mapping.canonical_id:
        await session.delete(mapping)
    else:
        mapping.is_banned = False
        mapping.ban_reason = None
        mapping.source = MappingSource.LEARNED.value
        mapping.expires_at = now
        mapping.updated_at = now
    await session.flush()
    return True


async def upsert_admin(
    session: AsyncSession,
    ticker: str,
    canonical_id: str,
    now: datetime,
    chain: str | None = None,
    contract_address: str | None = None,
) -> None:
    """Admin-pinned mapping: confidence 100, no TTL, clears any ban."""
    values: dict[str, Any] = {
        "canonical_id": canonical_id,
        "chain": chain,
        "contract_address": contract_address,
        "source": MappingSource.ADMIN.value,
        "confidence_score": 100,
        "expires_at": None,
        "is_banned": False,
        "ban_reason": None,
        "updated_at": now,
    }
    stmt = insert_for(session, TickerMapping).values(
        ticker=ticker, hit_count=0, last_used_at=now, created_at=now, **values
    )
    stmt = stmt.on_conflict_do_update(index_elements=["ticker"], set_=values)
    await session.execute(stmt)


async def delete_mapping(session: AsyncSession, ticker: str) -> bool:
    result = await session.execute(
        delete(TickerMapping).where(TickerMapping.ticker == ticker)
    )
    return result.rowcount > 0


async def add_hits(
    session: AsyncSession, hits: Mapping[str, int], now: datetime
) -> int:
    """Apply buffered hit counts. Returns the number of rows touched."""
    touched = 0
    for ticker, count in hits.items():
        result = await session.execute(
            update(TickerMapping)
            .where(TickerMapping.ticker == ticker)
            .where(TickerMapping.is_banned == False)  # noqa: E712
            .values(
                hit_count=TickerMapping.hit_count + count,
                last_used_at=now,
            )
        )
        touched += result.rowcount
    return touched


async def top_mappings(
    session: AsyncSession, limit: int, now: datetime
) -> Sequence[TickerMapping]:
    """Most-hit usable mappings (not banned, not expired)."""
    result = await session.execute(
        select(TickerMapping)
        .where(TickerMapping.is_banned == False)  # noqa: E712
        .where(
            or_(TickerMapping.expires_at.is_(None), TickerMapping.expires_at > now)
        )
        .order_by(TickerMapping.hit_count.desc(), TickerMapping.ticker)
        .limit(limit)
    )
    return result.scalars().all()


async def mapping_stats(
    session: AsyncSession, since: datetime
) -> dict[str, int]:
    """Counts for monitoring."""
    not_banned = TickerMapping.is_banned == False  # noqa: E712
    row = (
        await session.execute(
            select(
                func.count().filter(not_banned).label("learned"),
                func.count().filter(TickerMapping.is_banned == True).label("banned"),  # noqa: E712
                func.coalesce(
                    func.sum(case((not_banned, TickerMapping.hit_count), else_=0)), 0
                ).label("total_hits"),
                func.count()
                .filter(not_banned, TickerMapping.created_at > since)
                .label("recent"),
            )
        )
    ).one()
    return {
        "learned_mappings": int(row.learned or 0),
        "banned_mappings": int(row.banned or 0),
        "total_hits": int(row.total_hits or 0),
        "recent_learnings": int(row.recent or 0),
    }


async def seed_defaults(
    session: AsyncSession,
    warmup: Sequence[SeedMapping],
    bans: Sequence[SeedBan],
    now: datetime,
) -> None:
    """Insert warmup mappings without overwriting and re-assert default bans."""
    for seed in warmup:
        stmt = insert_for(session, TickerMapping).values(
            ticker=seed.ticker,
            canonical_id=seed.canonical_id,
            source=MappingSource.WARMUP.value,
            confidence_score=100,
            hit_count=seed.hit_count,
            last_used_at=now,
            created_at=now,
            updated_at=now,
            expires_at=None,
            is_banned=False,
        ).on_conflict_do_nothing(index_elements=["ticker"])
        await session.execute(stmt)

    for ban in bans:
        await upsert_banned(session, ban.ticker, ban.canonical_id, ban.reason, now)

    logger.info(f"Seeded {len(warmup)} warmup mappings and {len(bans)} default bans")
