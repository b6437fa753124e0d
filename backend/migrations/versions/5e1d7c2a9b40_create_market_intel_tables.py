"""create market intelligence tables

Revision ID: 5e1d7c2a9b40
Revises:
Create Date: 2026-02-09 10:12:44.318207

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5e1d7c2a9b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUSES = (
    "PENDING",
    "COLLECTING",
    "AWAITING_SELECTION",
    "COLLECTED",
    "ANALYZING",
    "COMPLETED",
    "FAILED",
)
CACHE_KINDS = ("SEARCH", "PRODUCT", "REVIEWS", "QNA")


def upgrade() -> None:
    """Create market_intel_jobs and cached_lookups."""
    op.create_table(
        "market_intel_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("keywords", sa.JSON(), nullable=False),
        sa.Column("marketplace", sa.String(), nullable=False),
        sa.Column("max_competitors", sa.Integer(), nullable=False),
        sa.Column("reviews_per_product", sa.Integer(), nullable=False),
        sa.Column("requested_by", sa.String(), nullable=True),
        sa.Column("top_asins", sa.JSON(), nullable=True),
        sa.Column("competitors_data", sa.JSON(), nullable=True),
        sa.Column("keyword_search_data", sa.JSON(), nullable=True),
        sa.Column("external_calls_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("selected_asins", sa.JSON(), nullable=True),
        sa.Column("reviews_data", sa.JSON(), nullable=True),
        sa.Column("questions_data", sa.JSON(), nullable=True),
        sa.Column("phase_results", sa.JSON(), nullable=True),
        sa.Column("analysis_result", sa.JSON(), nullable=True),
        sa.Column("model_used", sa.String(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("llm_usage", sa.JSON(), nullable=True),
        sa.Column("total_cost_usd", sa.Numeric(14, 6), nullable=True),
        sa.Column("status", sa.Enum(*JOB_STATUSES, name="jobstatus"), nullable=False),
        sa.Column("progress", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_market_intel_jobs_updated_at", "market_intel_jobs", ["updated_at"]
    )

    op.create_table(
        "cached_lookups",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("kind", sa.Enum(*CACHE_KINDS, name="cachekind"), nullable=False),
        sa.Column("lookup_key", sa.String(), nullable=False),
        sa.Column("marketplace", sa.String(), nullable=False),
        sa.Column("variant", sa.String(), nullable=False, server_default=""),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("fetched_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "kind", "lookup_key", "marketplace", "variant",
            name="uq_cached_lookups_natural_key",
        ),
    )
    op.create_index("ix_cached_lookups_updated_at", "cached_lookups", ["updated_at"])


def downgrade() -> None:
    """Drop market intelligence tables."""
    op.drop_index("ix_cached_lookups_updated_at", table_name="cached_lookups")
    op.drop_table("cached_lookups")
    op.drop_index("ix_market_intel_jobs_updated_at", table_name="market_intel_jobs")
    op.drop_table("market_intel_jobs")
    sa.Enum(name="cachekind").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="jobstatus").drop(op.get_bind(), checkfirst=True)
