"""create address_labels table

Revision ID: 004_create_address_labels
Revises: 003_create_token_symbol_mappings
Create Date: 2026-10-01 00:03:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ENUM as PgEnum

revision: str = "004_create_address_labels"
down_revision: Union[str, None] = "003_create_token_symbol_mappings"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LABEL_SOURCES = ("USER", "COUNTERPARTY")

_label_source = PgEnum(*LABEL_SOURCES, name="address_label_source", create_type=False)


def upgrade() -> None:
    values = ", ".join(f"'{v}'" for v in LABEL_SOURCES)
    op.execute(
        f"DO $$ BEGIN "
        f"CREATE TYPE address_label_source AS ENUM ({values}); "
        f"EXCEPTION WHEN duplicate_object THEN NULL; "
        f"END $$;"
    )

    op.create_table(
        "address_labels",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("owner_id", sa.UUID(), nullable=False),
        sa.Column("address", sa.String(64), nullable=False),
        sa.Column("label", sa.String(100), nullable=False),
        sa.Column("source", _label_source, nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id", "address", "source", name="uq_address_labels_owner_address_source"),
    )
    op.create_index("ix_address_labels_owner", "address_labels", ["owner_id"])


def downgrade() -> None:
    op.drop_index("ix_address_labels_owner", table_name="address_labels")
    op.drop_table("address_labels")
    op.execute("DROP TYPE IF EXISTS address_label_source;")
