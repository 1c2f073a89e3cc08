"""Database layer: async engine/session management and ORM models."""

from .connection import (
    create_engine_for_url,
    create_schema,
    create_session_factory,
    get_async_database_url,
)
from .orm import Base, FailedResolution, TickerMapping


__all__ = [
    "Base",
    "FailedResolution",
    "TickerMapping",
    "create_engine_for_url",
    "create_schema",
    "create_session_factory",
    "get_async_database_url",
]
