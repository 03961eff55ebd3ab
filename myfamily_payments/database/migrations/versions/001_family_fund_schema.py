"""Family fund ledger schema

Revision ID: 001
Revises:
Create Date: 2025-03-02 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create family_funds table
    op.create_table(
        "family_funds",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("family_id", sa.BigInteger(), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="ILS"),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint("balance >= 0", name="non_negative_balance"),
        sa.CheckConstraint("length(currency) = 3", name="valid_currency"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_family_funds_family_id"), "family_funds", ["family_id"], unique=True
    )

    # Create fund_transactions table
    op.create_table(
        "fund_transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("family_fund_id", sa.BigInteger(), nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("reference_number", sa.String(length=100), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint("amount <> 0", name="non_zero_amount"),
        sa.CheckConstraint(
            "type IN ('payment', 'deposit', 'refund')",
            name="valid_transaction_type",
        ),
        sa.ForeignKeyConstraint(["family_fund_id"], ["family_funds.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_fund_transactions_fund_created",
        "fund_transactions",
        ["family_fund_id", "created_at"],
        unique=False,
    )
    op.create_index(
        op.f("ix_fund_transactions_created_at"),
        "fund_transactions",
        ["created_at"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(op.f("ix_fund_transactions_created_at"), table_name="fund_transactions")
    op.drop_index("idx_fund_transactions_fund_created", table_name="fund_transactions")
    op.drop_table("fund_transactions")
    op.drop_index(op.f("ix_family_funds_family_id"), table_name="family_funds")
    op.drop_table("family_funds")
