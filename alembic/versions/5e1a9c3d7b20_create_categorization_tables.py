"""Create expense, mapping, job queue, rate limit and lease tables.

Revision ID: 5e1a9c3d7b20
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5e1a9c3d7b20"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "expenses",
        sa.Column("expense_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("merchant_name", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("expense_date", sa.Date(), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("expense_id"),
    )
    op.create_index("ix_expenses_user_id", "expenses", ["user_id"])
    op.create_index("ix_expenses_category", "expenses", ["category"])
    op.create_index("ix_expenses_merchant_name", "expenses", ["merchant_name"])

    op.create_table(
        "merchant_mappings",
        sa.Column("merchant_key", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("confidence", sa.String(length=20), nullable=False),
        sa.Column("vote_count", sa.Integer(), nullable=False),
        sa.Column("category_votes", sa.JSON(), nullable=True),
        sa.Column("ai_suggestion", sa.String(length=100), nullable=True),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("merchant_key"),
    )

    op.create_table(
        "personal_mappings",
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("merchant_key", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "merchant_key", name="uq_personal_user_merchant_key"),
    )
    op.create_index(
        "ix_personal_user_merchant_key",
        "personal_mappings",
        ["user_id", "merchant_key"],
    )

    op.create_table(
        "categorization_jobs",
        sa.Column("expense_id", sa.String(length=255), nullable=False),
        sa.Column("merchant_name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("expense_id"),
    )
    op.create_index(
        "ix_categorization_jobs_status_created_at",
        "categorization_jobs",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_categorization_jobs_status_next_retry",
        "categorization_jobs",
        ["status", "next_retry"],
    )

    op.create_table(
        "rate_limit_state",
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_reset", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_request", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider"),
    )

    op.create_table(
        "worker_leases",
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("holder", sa.String(length=100), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("worker_leases")
    op.drop_table("rate_limit_state")
    op.drop_index("ix_categorization_jobs_status_next_retry", table_name="categorization_jobs")
    op.drop_index("ix_categorization_jobs_status_created_at", table_name="categorization_jobs")
    op.drop_table("categorization_jobs")
    op.drop_index("ix_personal_user_merchant_key", table_name="personal_mappings")
    op.drop_table("personal_mappings")
    op.drop_table("merchant_mappings")
    op.drop_index("ix_expenses_merchant_name", table_name="expenses")
    op.drop_index("ix_expenses_category", table_name="expenses")
    op.drop_index("ix_expenses_user_id", table_name="expenses")
    op.drop_table("expenses")
