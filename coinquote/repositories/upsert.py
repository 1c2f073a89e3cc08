"""Dialect helpers for INSERT ... ON CONFLICT upserts.

PostgreSQL is the production backend; SQLite (aiosqlite) backs local runs
and tests. Both dialects expose the same `on_conflict_do_*` API.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_name(session: AsyncSession) -> str:
    return session.bind.dialect.name


def insert_for(session: AsyncSession, table: Any):
    """Dialect-native INSERT supporting ON CONFLICT."""
    if dialect_name(session) == "sqlite":
        return sqlite_insert(table)
    return pg_insert(table)


def greatest(session: AsyncSession, *args: Any):
    """GREATEST(...) on PostgreSQL, multi-argument MAX(...) on SQLite."""
    if dialect_name(session) == "sqlite":
        return func.max(*args)
    return func.greatest(*args)
