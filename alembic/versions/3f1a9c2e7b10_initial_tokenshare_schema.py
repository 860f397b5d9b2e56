"""Initial schema: projects, token holdings and transactions, profit distributions.

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-09-14 00:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "3f1a9c2e7b10"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps(updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]
    if updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.text("now()"),
            )
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("total_tokens", sa.Integer(), nullable=False),
        sa.Column("available_tokens", sa.Integer(), nullable=False),
        sa.Column("token_price", sa.Numeric(19, 4), nullable=False),
        sa.Column("initial_capital", sa.Numeric(19, 4), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("admin_id", postgresql.UUID(as_uuid=True), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("total_tokens > 0", name="ck_projects_total_tokens_positive"),
        sa.CheckConstraint(
            "available_tokens >= 0 AND available_tokens <= total_tokens",
            name="ck_projects_available_tokens_range",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_projects_admin_id", "projects", ["admin_id"])
    op.create_index("ix_projects_status", "projects", ["status"])

    op.create_table(
        "token_holdings",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("price_per_token", sa.Numeric(19, 4), nullable=False),
        sa.Column("total_value", sa.Numeric(19, 4), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("ledger_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("ledger_tx_hash", sa.String(66), nullable=True),
        sa.Column("ledger_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ledger_last_error", sa.String(1000), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_token_holdings_amount_positive"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_token_holdings_project_id_status", "token_holdings", ["project_id", "status"])
    op.create_index("ix_token_holdings_user_id", "token_holdings", ["user_id"])
    op.create_index("ix_token_holdings_ledger_status", "token_holdings", ["ledger_status"])

    op.create_table(
        "token_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("holding_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("from_user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("to_user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("token_amount", sa.Integer(), nullable=False),
        sa.Column("total_value", sa.Numeric(19, 4), nullable=False),
        sa.Column("transaction_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="completed"),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["holding_id"], ["token_holdings.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_token_transactions_project_id", "token_transactions", ["project_id"])
    op.create_index("ix_token_transactions_to_user_id", "token_transactions", ["to_user_id"])

    op.create_table(
        "profit_distributions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("total_profit", sa.Numeric(19, 4), nullable=False),
        sa.Column("admin_share", sa.Numeric(19, 4), nullable=False),
        sa.Column("user_share", sa.Numeric(19, 4), nullable=False),
        sa.Column("profit_per_token", sa.Numeric(38, 18), nullable=False),
        sa.Column("total_user_tokens", sa.Integer(), nullable=False),
        sa.Column("holder_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("ledger_tx_hash", sa.String(66), nullable=True),
        sa.Column("initiated_by", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("attempt_token", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(1000), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_profit_distributions_live_project",
        "profit_distributions",
        ["project_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'superseded'"),
    )
    op.create_index("ix_profit_distributions_status", "profit_distributions", ["status"])

    op.create_table(
        "user_profit_credits",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("distribution_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("token_amount", sa.Integer(), nullable=False),
        sa.Column("profit_amount", sa.Numeric(19, 4), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["distribution_id"], ["profit_distributions.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("distribution_id", "user_id", name="uq_user_profit_credits_holder"),
    )
    op.create_index("ix_user_profit_credits_user_id", "user_profit_credits", ["user_id"])
    op.create_index("ix_user_profit_credits_project_id", "user_profit_credits", ["project_id"])


def downgrade() -> None:
    op.drop_table("user_profit_credits")
    op.drop_table("profit_distributions")
    op.drop_table("token_transactions")
    op.drop_table("token_holdings")
    op.drop_table("projects")
