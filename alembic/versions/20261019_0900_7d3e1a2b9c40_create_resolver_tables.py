"""create_resolver_tables

Revision ID: 7d3e1a2b9c40
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "7d3e1a2b9c40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    op.create_table(
        "ticker_mappings",
        sa.Column("ticker", sa.String(length=64), nullable=False),
        sa.Column("canonical_id", sa.String(length=128), nullable=False),
        sa.Column("contract_address", sa.String(length=128), nullable=True),
        sa.Column("chain", sa.String(length=32), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("confidence_score", sa.Integer(), nullable=False),
        sa.Column("hit_count", sa.Integer(), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_banned", sa.Boolean(), nullable=False),
        sa.Column("ban_reason", sa.String(length=128), nullable=True),
        sa.CheckConstraint(
            "confidence_score BETWEEN 0 AND 100",
            name=op.f("ck_ticker_mappings_confidence_range"),
        ),
        sa.CheckConstraint("hit_count >= 0", name=op.f("ck_ticker_mappings_hit_count_positive")),
        sa.CheckConstraint(
            "source IN ('admin', 'learned', 'warmup')",
            name=op.f("ck_ticker_mappings_source_valid"),
        ),
        sa.PrimaryKeyConstraint("ticker", name=op.f("pk_ticker_mappings")),
    )
    op.create_index(
        "idx_ticker_mappings_contract_unique",
        "ticker_mappings",
        ["contract_address", "chain"],
        unique=True,
        postgresql_where=sa.text("contract_address IS NOT NULL"),
    )
    op.create_index("idx_ticker_mappings_hits", "ticker_mappings", ["hit_count"])
    op.create_index("idx_ticker_mappings_expires", "ticker_mappings", ["expires_at"])

    op.create_table(
        "failed_resolutions",
        sa.Column("ticker", sa.String(length=64), nullable=False),
        sa.Column("failure_count", sa.Integer(), nullable=False),
        sa.Column("last_reason", sa.String(length=32), nullable=False),
        sa.Column("last_failed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("retry_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("chain_hint", sa.String(length=32), nullable=True),
        sa.CheckConstraint(
            "failure_count >= 1", name=op.f("ck_failed_resolutions_failure_count_positive")
        ),
        sa.CheckConstraint(
            "last_reason IN ('not_found', 'ratelimit', 'ambiguous', 'api_error')",
            name=op.f("ck_failed_resolutions_reason_valid"),
        ),
        sa.PrimaryKeyConstraint("ticker", name=op.f("pk_failed_resolutions")),
    )
    op.create_index("idx_failed_resolutions_retry", "failed_resolutions", ["retry_after"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_failed_resolutions_retry", table_name="failed_resolutions")
    op.drop_table("failed_resolutions")
    op.drop_index("idx_ticker_mappings_expires", table_name="ticker_mappings")
    op.drop_index("idx_ticker_mappings_hits", table_name="ticker_mappings")
    op.drop_index("idx_ticker_mappings_contract_unique", table_name="ticker_mappings")
    op.drop_table("ticker_mappings")
