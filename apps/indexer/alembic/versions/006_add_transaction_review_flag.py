"""add transactions.needs_review (ventas tras depósito detectadas por la reconciliación)

Revision ID: 006_add_transaction_review_flag
Revises: 005_create_price_history
Create Date: 2026-10-18 00:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "006_add_transaction_review_flag"
down_revision: Union[str, None] = "005_create_price_history"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "transactions",
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index(
        "ix_transactions_needs_review",
        "transactions",
        ["needs_review"],
        postgresql_where=sa.text("needs_review"),
    )


def downgrade() -> None:
    op.drop_index("ix_transactions_needs_review", table_name="transactions")
    op.drop_column("transactions", "needs_review")
