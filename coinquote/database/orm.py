"""SQLAlchemy ORM models for Coinquote.

Only the two tables the resolver owns live here: learned/seeded ticker
mappings and the per-ticker failure/backoff log.

Usage:
    from coinquote.database.orm import TickerMapping
    from coinquote.database.connection import create_session_factory

    async with create_session_factory(engine)() as session:
        mapping = await session.get(TickerMapping, "btc")
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Naming convention for constraints and indexes (deterministic names for Alembic)
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all ORM models with naming convention."""
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class TickerMapping(Base):
    """Normalized ticker -> upstream identifier, with trust metadata.

    `expires_at` NULL means no TTL (admin and warmup rows). A banned row is
    never served by the learning path, whatever its confidence.
    """
    __tablename__ = "ticker_mappings"

    ticker: Mapped[str] = mapped_column(String(64), primary_key=True)
    canonical_id: Mapped[str] = mapped_column(String(128), nullable=False)
    contract_address: Mapped[str | None] = mapped_column(String(128))
    chain: Mapped[str | None] = mapped_column(String(32))
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="learned")
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False, default=70)
    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ban_reason: Mapped[str | None] = mapped_column(String(128))

    __table_args__ = (
        CheckConstraint("confidence_score BETWEEN 0 AND 100", name="confidence_range"),
        CheckConstraint("hit_count >= 0", name="hit_count_positive"),
        CheckConstraint("source IN ('admin', 'learned', 'warmup')", name="source_valid"),
        Index(
            "idx_ticker_mappings_contract_unique",
            "contract_address",
            "chain",
            unique=True,
            postgresql_where=text("contract_address IS NOT NULL"),
            sqlite_where=text("contract_address IS NOT NULL"),
        ),
        Index("idx_ticker_mappings_hits", "hit_count"),
        Index("idx_ticker_mappings_expires", "expires_at"),
    )

    def __repr__(self) -> str:
        state = f"banned:{self.ban_reason}" if self.is_banned else f"conf={self.confidence_score}"
        return f"<TickerMapping {self.ticker}->{self.canonical_id} {state}>"


class FailedResolution(Base):
    """Per-ticker failure record driving exponential backoff."""
    __tablename__ = "failed_resolutions"

    ticker: Mapped[str] = mapped_column(String(64), primary_key=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_reason: Mapped[str] = mapped_column(String(32), nullable=False)
    last_failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    retry_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    chain_hint: Mapped[str | None] = mapped_column(String(32))

    __table_args__ = (
        CheckConstraint("failure_count >= 1", name="failure_count_positive"),
        CheckConstraint(
            "last_reason IN ('not_found', 'ratelimit', 'ambiguous', 'api_error')",
            name="reason_valid",
        ),
        Index("idx_failed_resolutions_retry", "retry_after"),
    )
