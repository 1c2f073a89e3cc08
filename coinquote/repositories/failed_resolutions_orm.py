"""Failed resolution (backoff) repository using SQLAlchemy ORM.

Usage:
    from coinquote.repositories import failed_resolutions_orm as failures_repo

    async with session_factory() as session:
        failure = await failures_repo.record_failure(
            session, "xyz", "not_found", None, now, backoff
        )
        await session.commit()
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coinquote.core.logging import get_logger
from coinquote.database.orm import FailedResolution
from coinquote.repositories.upsert import insert_for


logger = get_logger("repositories.failed_resolutions_orm")


async def get_failure(session: AsyncSession, ticker: str) -> FailedResolution | None:
    result = await session.execute(
        select(FailedResolution).where(FailedResolution.ticker == ticker)
    )
    return result.scalar_one_or_none()


async def record_failure(
    session: AsyncSession,
    ticker: str,
    reason: str,
    chain_hint: str | None,
    now: datetime,
    backoff: Callable[[int], timedelta],
) -> FailedResolution:
    """Increment the failure count atomically, then set retry_after from it.

    Args:
        backoff: Maps the new failure count to the wait before the next attempt
    """
    stmt = insert_for(session, FailedResolution).values(
        ticker=ticker,
        failure_count=1,
        last_reason=reason,
        last_failed_at=now,
        retry_after=now + backoff(1),
        chain_hint=chain_hint,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["ticker"],
        set_={
            "failure_count": FailedResolution.failure_count + 1,
            "last_reason": stmt.excluded.last_reason,
            "last_failed_at": stmt.excluded.last_failed_at,
            "chain_hint": stmt.excluded.chain_hint,
        },
    ).returning(FailedResolution.failure_count)
    failure_count = (await session.execute(stmt)).scalar_one()

    if failure_count > 1:
        await session.execute(
            update(FailedResolution)
            .where(FailedResolution.ticker == ticker)
            .values(retry_after=now + backoff(failure_count))
        )

    # Re-read so callers see the committed shape regardless of dialect
    session.expire_all()
    failure = await get_failure(session, ticker)
    logger.debug(f"Failure #{failure_count} for {ticker} ({reason})")
    return failure


async def clear_failure(session: AsyncSession, ticker: str) -> bool:
    result = await session.execute(
        delete(FailedResolution).where(FailedResolution.ticker == ticker)
    )
    return result.rowcount > 0


async def count_active_failures(session: AsyncSession, now: datetime) -> int:
    """Tickers still inside their backoff window."""
    result = await session.execute(
        select(func.count()).select_from(FailedResolution).where(
            FailedResolution.retry_after > now
        )
    )
    return int(result.scalar_one())
