"""create price_history table (velas diarias, caché de la fuente de precios)

Revision ID: 005_create_price_history
Revises: 004_create_address_labels
Create Date: 2026-10-01 00:04:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ENUM as PgEnum

revision: str = "005_create_price_history"
down_revision: Union[str, None] = "004_create_address_labels"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PRICE_INTERVALS = ("1d",)

_price_interval = PgEnum(*PRICE_INTERVALS, name="price_interval", create_type=False)


def upgrade() -> None:
    values = ", ".join(f"'{v}'" for v in PRICE_INTERVALS)
    op.execute(
        f"DO $$ BEGIN "
        f"CREATE TYPE price_interval AS ENUM ({values}); "
        f"EXCEPTION WHEN duplicate_object THEN NULL; "
        f"END $$;"
    )

    op.create_table(
        "price_history",
        sa.Column("id", sa.UUID(), nullable=False),
        # Par completo del exchange: SOLUSDT, USDTBRL...
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("interval", _price_interval, nullable=False),
        sa.Column("open_at", sa.TIMESTAMP(timezone=True), nullable=False),
        # NUMERIC(36,18): pares inversos de fiat tienen cierres muy pequeños
        sa.Column("open", sa.NUMERIC(36, 18), nullable=False),
        sa.Column("high", sa.NUMERIC(36, 18), nullable=False),
        sa.Column("low", sa.NUMERIC(36, 18), nullable=False),
        sa.Column("close", sa.NUMERIC(36, 18), nullable=False),
        sa.Column("volume", sa.NUMERIC(36, 8), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("symbol", "interval", "open_at", name="uq_price_history_symbol_interval_open_at"),
    )


def downgrade() -> None:
    op.drop_table("price_history")
    op.execute("DROP TYPE IF EXISTS price_interval;")
