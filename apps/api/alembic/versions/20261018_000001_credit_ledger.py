"""create credit accounts and credit transactions

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "credit_accounts",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False, server_default="free"),
        sa.Column("monthly_credits_per_cycle", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_monthly", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bonus_credits_total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bonus_credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_bonus", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cycle_start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cycle_end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("monthly_credits_used >= 0", name="ck_credit_accounts_monthly_used_nonneg"),
        sa.CheckConstraint("reserved_monthly >= 0", name="ck_credit_accounts_reserved_monthly_nonneg"),
        sa.CheckConstraint("bonus_credits_used >= 0", name="ck_credit_accounts_bonus_used_nonneg"),
        sa.CheckConstraint("reserved_bonus >= 0", name="ck_credit_accounts_reserved_bonus_nonneg"),
        sa.CheckConstraint("bonus_credits_total >= 0", name="ck_credit_accounts_bonus_total_nonneg"),
        sa.CheckConstraint(
            "tier IN ('free', 'starter', 'creator', 'professional', 'unlimited')",
            name="ck_credit_accounts_tier_known",
        ),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("pool", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bonus_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_monthly_after", sa.Integer(), nullable=True),
        sa.Column("balance_bonus_after", sa.Integer(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "user_id",
            "request_id",
            "transaction_type",
            name="uq_credit_transactions_user_request_type",
        ),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"], unique=False)
    op.create_index("ix_credit_transactions_created_at", "credit_transactions", ["created_at"], unique=False)
    op.create_index(
        "ix_credit_transactions_user_created",
        "credit_transactions",
        ["user_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_credit_transactions_user_request",
        "credit_transactions",
        ["user_id", "request_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_credit_transactions_user_request", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_created", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_created_at", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("credit_accounts")
