"""create wallets and exchange_connections tables

Revision ID: 001_create_wallets_and_connections
Revises:
Create Date: 2026-10-01 00:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ENUM as PgEnum, JSONB

revision: str = "001_create_wallets_and_connections"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# PgEnum con create_type=False: el tipo se crea explícitamente vía op.execute()
# para garantizar idempotencia (DO block con EXCEPTION WHEN duplicate_object)
_sync_status = PgEnum("idle", "syncing", "error", name="sync_status", create_type=False)


def upgrade() -> None:
    op.execute(
        "DO $$ BEGIN "
        "CREATE TYPE sync_status AS ENUM ('idle', 'syncing', 'error'); "
        "EXCEPTION WHEN duplicate_object THEN NULL; "
        "END $$;"
    )

    op.create_table(
        "wallets",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("owner_id", sa.UUID(), nullable=False),
        sa.Column("address", sa.String(64), nullable=False),
        sa.Column("label", sa.String(100), nullable=True),
        # Cursor de backfill on-chain
        sa.Column("last_signature", sa.String(128), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id", "address", name="uq_wallets_owner_address"),
    )
    op.create_index("ix_wallets_owner_id", "wallets", ["owner_id"])
    op.create_index("ix_wallets_address", "wallets", ["address"])

    op.create_table(
        "exchange_connections",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("owner_id", sa.UUID(), nullable=False),
        sa.Column("exchange_name", sa.String(32), nullable=False, server_default="binance"),
        # API Keys cifradas con AES-256-GCM — NUNCA en texto plano
        sa.Column("api_key_encrypted", sa.Text(), nullable=True),
        sa.Column("api_secret_encrypted", sa.Text(), nullable=True),
        sa.Column("symbols", JSONB(), nullable=True),
        # Cursor por fase + phase_status; se vacía en un re-sync completo
        sa.Column("sync_cursor", JSONB(), nullable=True),
        sa.Column("sync_status", _sync_status, nullable=False, server_default="idle"),
        sa.Column("last_sync_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_exchange_connections_owner_id", "exchange_connections", ["owner_id"])


def downgrade() -> None:
    op.drop_index("ix_exchange_connections_owner_id", table_name="exchange_connections")
    op.drop_table("exchange_connections")
    op.drop_index("ix_wallets_address", table_name="wallets")
    op.drop_index("ix_wallets_owner_id", table_name="wallets")
    op.drop_table("wallets")
    op.execute("DROP TYPE IF EXISTS sync_status;")
