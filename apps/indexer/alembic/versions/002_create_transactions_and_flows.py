"""create transactions and transaction_flows tables

Revision ID: 002_create_transactions_and_flows
Revises: 001_create_wallets_and_connections
Create Date: 2026-10-01 00:01:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import ENUM as PgEnum, JSONB

revision: str = "002_create_transactions_and_flows"
down_revision: Union[str, None] = "001_create_wallets_and_connections"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TRANSACTION_SOURCES = ("ON_CHAIN", "EXCHANGE")

TRANSACTION_TYPES = (
    "TRANSFER_IN",
    "TRANSFER_OUT",
    "SWAP",
    "STAKE",
    "UNSTAKE",
    "LP_DEPOSIT",
    "LP_WITHDRAW",
    "LOAN_BORROW",
    "LOAN_REPAY",
    "BRIDGE_OUT",
    "BRIDGE_IN",
    "NFT_MINT",
    "NFT_SALE",
    "NFT_PURCHASE",
    "NFT_ACTIVITY",
    "BURN",
    "MINT",
    "MEMO",
    "PROGRAM_INTERACTION",
    "EXCHANGE_TRADE",
    "EXCHANGE_C2C_TRADE",
    "EXCHANGE_DEPOSIT",
    "EXCHANGE_WITHDRAWAL",
    "EXCHANGE_FIAT_BUY",
    "EXCHANGE_FIAT_SELL",
    "EXCHANGE_CONVERT",
    "EXCHANGE_DUST_CONVERT",
    "EXCHANGE_STAKE",
    "EXCHANGE_UNSTAKE",
    "EXCHANGE_INTEREST",
    "EXCHANGE_DIVIDEND",
    "MARGIN_BORROW",
    "MARGIN_REPAY",
    "MARGIN_INTEREST",
    "MARGIN_LIQUIDATION",
    "UNKNOWN",
)

TRANSACTION_CATEGORIES = (
    "DISPOSAL_SWAP",
    "DISPOSAL_SALE",
    "TRANSFER_IN",
    "TRANSFER_OUT",
    "TRANSFER_INTERNAL",
    "TRANSFER_TO_EXCHANGE",
    "TRANSFER_FROM_EXCHANGE",
    "INCOME_STAKING_REWARD",
    "INCOME_OTHER",
    "DEFI_BORROW",
    "DEFI_REPAY",
    "DEFI_LIQUIDITY",
    "NFT",
    "BURN",
    "FEE",
    "DUST",
    "OTHER",
    "UNKNOWN",
)

TRANSACTION_STATUSES = ("CONFIRMED", "FAILED")

FLOW_DIRECTIONS = ("IN", "OUT")

_ENUMS: dict[str, tuple[str, ...]] = {
    "transaction_source": TRANSACTION_SOURCES,
    "transaction_type": TRANSACTION_TYPES,
    "transaction_category": TRANSACTION_CATEGORIES,
    "transaction_status": TRANSACTION_STATUSES,
    "flow_direction": FLOW_DIRECTIONS,
}


def _enum(name: str) -> PgEnum:
    return PgEnum(*_ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    # Crear los ENUM de forma idempotente
    for name, members in _ENUMS.items():
        values = ", ".join(f"'{v}'" for v in members)
        op.execute(
            f"DO $$ BEGIN "
            f"CREATE TYPE {name} AS ENUM ({values}); "
            f"EXCEPTION WHEN duplicate_object THEN NULL; "
            f"END $$;"
        )

    op.create_table(
        "transactions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("source", _enum("transaction_source"), nullable=False),
        sa.Column("wallet_id", sa.UUID(), nullable=True),
        sa.Column("exchange_connection_id", sa.UUID(), nullable=True),
        # On-chain: firma inmutable, UNIQUE → re-ingestar es un no-op
        sa.Column("signature", sa.String(128), nullable=True),
        # Exchange: id estable del registro, UNIQUE por conexión
        sa.Column("external_id", sa.String(200), nullable=True),
        sa.Column("onchain_reference", sa.String(128), nullable=True),
        sa.Column("type", _enum("transaction_type"), nullable=False),
        sa.Column("category", _enum("transaction_category"), nullable=False),
        sa.Column("status", _enum("transaction_status"), nullable=False),
        sa.Column("timestamp", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("slot", sa.BigInteger(), nullable=True),
        sa.Column("block_time", sa.BigInteger(), nullable=True),
        # NUMERIC(36,18): cantidades cripto; NUMERIC(20,8): valores USD
        sa.Column("fee", sa.NUMERIC(36, 18), nullable=True),
        sa.Column("fee_payer", sa.String(64), nullable=True),
        sa.Column("total_value_usd", sa.NUMERIC(20, 8), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("protocol_name", sa.String(100), nullable=True),
        # Enlace simétrico entre fuentes; UNIQUE impide dos socios para la misma fila
        sa.Column("linked_transaction_id", sa.UUID(), nullable=True),
        sa.Column("raw_data", JSONB(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["wallet_id"], ["wallets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["exchange_connection_id"], ["exchange_connections.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["linked_transaction_id"], ["transactions.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("signature", name="transactions_signature_key"),
        sa.UniqueConstraint("linked_transaction_id", name="transactions_linked_transaction_id_key"),
        sa.UniqueConstraint(
            "exchange_connection_id",
            "external_id",
            name="uq_transactions_connection_external_id",
        ),
    )

    op.create_index("ix_transactions_onchain_reference", "transactions", ["onchain_reference"])
    op.create_index("ix_transactions_wallet_timestamp", "transactions", ["wallet_id", "timestamp"])
    op.create_index("ix_transactions_connection_timestamp", "transactions", ["exchange_connection_id", "timestamp"])
    # Ventanas de reconciliación: tipo + rango temporal
    op.create_index("ix_transactions_type_timestamp", "transactions", ["type", "timestamp"])

    op.create_table(
        "transaction_flows",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("transaction_id", sa.UUID(), nullable=False),
        sa.Column("position", sa.SmallInteger(), nullable=False),
        sa.Column("mint", sa.String(128), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=True),
        sa.Column("decimals", sa.SmallInteger(), nullable=False),
        sa.Column("network", sa.String(32), nullable=True),
        sa.Column("amount", sa.NUMERIC(36, 18), nullable=False),
        sa.Column("raw_amount", sa.NUMERIC(60, 0), nullable=False),
        sa.Column("direction", _enum("flow_direction"), nullable=False),
        sa.Column("price_at_execution", sa.NUMERIC(36, 18), nullable=True),
        sa.Column("value_usd", sa.NUMERIC(20, 8), nullable=True),
        sa.Column("is_fee", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"], ondelete="CASCADE"),
        sa.CheckConstraint("amount > 0", name="ck_transaction_flows_amount_positive"),
        sa.CheckConstraint("decimals >= 0 AND decimals <= 18", name="ck_transaction_flows_decimals"),
    )

    op.create_index("ix_transaction_flows_transaction", "transaction_flows", ["transaction_id"])
    # Backfill de valoración: flujos no-fee sin precio
    op.create_index("ix_transaction_flows_unpriced", "transaction_flows", ["price_at_execution", "is_fee"])


def downgrade() -> None:
    op.drop_index("ix_transaction_flows_unpriced", table_name="transaction_flows")
    op.drop_index("ix_transaction_flows_transaction", table_name="transaction_flows")
    op.drop_table("transaction_flows")
    op.drop_index("ix_transactions_type_timestamp", table_name="transactions")
    op.drop_index("ix_transactions_connection_timestamp", table_name="transactions")
    op.drop_index("ix_transactions_wallet_timestamp", table_name="transactions")
    op.drop_index("ix_transactions_onchain_reference", table_name="transactions")
    op.drop_table("transactions")
    for name in reversed(list(_ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name};")
