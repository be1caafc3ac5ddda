"""create token_symbol_mappings table

Revision ID: 003_create_token_symbol_mappings
Revises: 002_create_transactions_and_flows
Create Date: 2026-10-01 00:02:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "003_create_token_symbol_mappings"
down_revision: Union[str, None] = "002_create_transactions_and_flows"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "token_symbol_mappings",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("network", sa.String(32), nullable=False),
        sa.Column("mint", sa.String(128), nullable=False),
        sa.Column("decimals", sa.SmallInteger(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("symbol", "network", name="uq_token_symbol_mappings_symbol_network"),
    )

    # Índice parcial: como mucho una fila default por símbolo
    op.create_index(
        "uq_token_symbol_mappings_default",
        "token_symbol_mappings",
        ["symbol"],
        unique=True,
        postgresql_where=sa.text("is_default"),
    )


def downgrade() -> None:
    op.drop_index("uq_token_symbol_mappings_default", table_name="token_symbol_mappings")
    op.drop_table("token_symbol_mappings")
