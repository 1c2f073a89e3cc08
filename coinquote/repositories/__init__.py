"""Data access layer repositories.

Each repository module provides async functions for database operations
against the ORM models in `coinquote.database.orm`; the caller owns the
session and the transaction.

ORM-based repositories:
- ticker_mappings_orm: learned, seeded and banned ticker mappings
- failed_resolutions_orm: per-ticker failure and backoff records
- learning_store: SqlLearningStore, the transactional facade used by the resolver
"""

from . import failed_resolutions_orm
from . import ticker_mappings_orm
from .learning_store import SqlLearningStore

__all__ = [
    "SqlLearningStore",
    "failed_resolutions_orm",
    "ticker_mappings_orm",
]
