"""
Modelo: transactions + transaction_flows — el ledger canónico.

Una Transaction agrupa cero o más flujos direccionales (TransactionFlow).
El importe de un flujo es SIEMPRE una magnitud positiva; el signo vive en
`direction`, nunca en el número.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, TimestampMixin


# ---------------------------------------------------------------------------
# Taxonomías cerradas
# ---------------------------------------------------------------------------


class TransactionSource(str, enum.Enum):
    ON_CHAIN = "ON_CHAIN"
    EXCHANGE = "EXCHANGE"


class TransactionType(str, enum.Enum):
    # On-chain
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    SWAP = "SWAP"
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    LP_DEPOSIT = "LP_DEPOSIT"
    LP_WITHDRAW = "LP_WITHDRAW"
    LOAN_BORROW = "LOAN_BORROW"
    LOAN_REPAY = "LOAN_REPAY"
    BRIDGE_OUT = "BRIDGE_OUT"
    BRIDGE_IN = "BRIDGE_IN"
    NFT_MINT = "NFT_MINT"
    NFT_SALE = "NFT_SALE"
    NFT_PURCHASE = "NFT_PURCHASE"
    NFT_ACTIVITY = "NFT_ACTIVITY"
    BURN = "BURN"
    MINT = "MINT"
    MEMO = "MEMO"
    PROGRAM_INTERACTION = "PROGRAM_INTERACTION"
    # Exchange
    EXCHANGE_TRADE = "EXCHANGE_TRADE"
    EXCHANGE_C2C_TRADE = "EXCHANGE_C2C_TRADE"
    EXCHANGE_DEPOSIT = "EXCHANGE_DEPOSIT"
    EXCHANGE_WITHDRAWAL = "EXCHANGE_WITHDRAWAL"
    EXCHANGE_FIAT_BUY = "EXCHANGE_FIAT_BUY"
    EXCHANGE_FIAT_SELL = "EXCHANGE_FIAT_SELL"
    EXCHANGE_CONVERT = "EXCHANGE_CONVERT"
    EXCHANGE_DUST_CONVERT = "EXCHANGE_DUST_CONVERT"
    EXCHANGE_STAKE = "EXCHANGE_STAKE"
    EXCHANGE_UNSTAKE = "EXCHANGE_UNSTAKE"
    EXCHANGE_INTEREST = "EXCHANGE_INTEREST"
    EXCHANGE_DIVIDEND = "EXCHANGE_DIVIDEND"
    MARGIN_BORROW = "MARGIN_BORROW"
    MARGIN_REPAY = "MARGIN_REPAY"
    MARGIN_INTEREST = "MARGIN_INTEREST"
    MARGIN_LIQUIDATION = "MARGIN_LIQUIDATION"
    # Fallback universal
    UNKNOWN = "UNKNOWN"


class TransactionCategory(str, enum.Enum):
    DISPOSAL_SWAP = "DISPOSAL_SWAP"
    DISPOSAL_SALE = "DISPOSAL_SALE"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_INTERNAL = "TRANSFER_INTERNAL"
    TRANSFER_TO_EXCHANGE = "TRANSFER_TO_EXCHANGE"
    TRANSFER_FROM_EXCHANGE = "TRANSFER_FROM_EXCHANGE"
    INCOME_STAKING_REWARD = "INCOME_STAKING_REWARD"
    INCOME_OTHER = "INCOME_OTHER"
    DEFI_BORROW = "DEFI_BORROW"
    DEFI_REPAY = "DEFI_REPAY"
    DEFI_LIQUIDITY = "DEFI_LIQUIDITY"
    NFT = "NFT"
    BURN = "BURN"
    FEE = "FEE"
    DUST = "DUST"
    OTHER = "OTHER"
    UNKNOWN = "UNKNOWN"


class TransactionStatus(str, enum.Enum):
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class FlowDirection(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"


_T = TransactionType
_C = TransactionCategory

# Categoría por defecto de cada tipo. El clasificador on-chain puede refinarla
# (p.ej. TRANSFER_OUT hacia un hot wallet conocido → TRANSFER_TO_EXCHANGE).
CATEGORY_BY_TYPE: dict[TransactionType, TransactionCategory] = {
    _T.TRANSFER_IN: _C.TRANSFER_IN,
    _T.TRANSFER_OUT: _C.TRANSFER_OUT,
    _T.SWAP: _C.DISPOSAL_SWAP,
    _T.STAKE: _C.TRANSFER_INTERNAL,
    _T.UNSTAKE: _C.TRANSFER_INTERNAL,
    _T.LP_DEPOSIT: _C.DEFI_LIQUIDITY,
    _T.LP_WITHDRAW: _C.DEFI_LIQUIDITY,
    _T.LOAN_BORROW: _C.DEFI_BORROW,
    _T.LOAN_REPAY: _C.DEFI_REPAY,
    _T.BRIDGE_OUT: _C.TRANSFER_INTERNAL,
    _T.BRIDGE_IN: _C.TRANSFER_INTERNAL,
    _T.NFT_MINT: _C.NFT,
    _T.NFT_SALE: _C.NFT,
    _T.NFT_PURCHASE: _C.NFT,
    _T.NFT_ACTIVITY: _C.NFT,
    _T.BURN: _C.BURN,
    _T.MINT: _C.INCOME_OTHER,
    _T.MEMO: _C.OTHER,
    _T.PROGRAM_INTERACTION: _C.OTHER,
    _T.EXCHANGE_TRADE: _C.DISPOSAL_SWAP,
    _T.EXCHANGE_C2C_TRADE: _C.DISPOSAL_SWAP,
    _T.EXCHANGE_DEPOSIT: _C.TRANSFER_TO_EXCHANGE,
    _T.EXCHANGE_WITHDRAWAL: _C.TRANSFER_FROM_EXCHANGE,
    _T.EXCHANGE_FIAT_BUY: _C.DISPOSAL_SWAP,
    _T.EXCHANGE_FIAT_SELL: _C.DISPOSAL_SALE,
    _T.EXCHANGE_CONVERT: _C.DISPOSAL_SWAP,
    _T.EXCHANGE_DUST_CONVERT: _C.DUST,
    _T.EXCHANGE_STAKE: _C.TRANSFER_INTERNAL,
    _T.EXCHANGE_UNSTAKE: _C.TRANSFER_INTERNAL,
    _T.EXCHANGE_INTEREST: _C.INCOME_STAKING_REWARD,
    _T.EXCHANGE_DIVIDEND: _C.INCOME_OTHER,
    _T.MARGIN_BORROW: _C.DEFI_BORROW,
    _T.MARGIN_REPAY: _C.DEFI_REPAY,
    _T.MARGIN_INTEREST: _C.FEE,
    _T.MARGIN_LIQUIDATION: _C.DISPOSAL_SALE,
    _T.UNKNOWN: _C.UNKNOWN,
}


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


# ---------------------------------------------------------------------------
# Modelos
# ---------------------------------------------------------------------------


class Transaction(TimestampMixin, Base):
    __tablename__ = "transactions"

    __table_args__ = (
        # Dedup de registros de exchange: externalId único por conexión
        sa.UniqueConstraint("exchange_connection_id", "external_id", name="uq_transactions_connection_external_id"),
        sa.Index("ix_transactions_wallet_timestamp", "wallet_id", "timestamp"),
        sa.Index("ix_transactions_connection_timestamp", "exchange_connection_id", "timestamp"),
        sa.Index("ix_transactions_type_timestamp", "type", "timestamp"),
        sa.Index("ix_transactions_needs_review", "needs_review", postgresql_where=sa.text("needs_review")),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source: Mapped[TransactionSource] = mapped_column(
        sa.Enum(TransactionSource, name="transaction_source", values_callable=_enum_values),
        nullable=False,
    )
    wallet_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("wallets.id", ondelete="CASCADE"), nullable=True
    )
    exchange_connection_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("exchange_connections.id", ondelete="CASCADE"), nullable=True
    )
    # On-chain: firma inmutable. Exchange: NULL
    signature: Mapped[str | None] = mapped_column(sa.String(128), unique=True, nullable=True)
    external_id: Mapped[str | None] = mapped_column(sa.String(200), nullable=True)
    # txId on-chain que algunos registros de exchange incluyen (depósitos/retiros)
    onchain_reference: Mapped[str | None] = mapped_column(sa.String(128), nullable=True, index=True)

    type: Mapped[TransactionType] = mapped_column(
        sa.Enum(TransactionType, name="transaction_type", values_callable=_enum_values),
        nullable=False,
    )
    category: Mapped[TransactionCategory] = mapped_column(
        sa.Enum(TransactionCategory, name="transaction_category", values_callable=_enum_values),
        nullable=False,
    )
    status: Mapped[TransactionStatus] = mapped_column(
        sa.Enum(TransactionStatus, name="transaction_status", values_callable=_enum_values),
        nullable=False,
        default=TransactionStatus.CONFIRMED,
    )

    timestamp: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
    slot: Mapped[int | None] = mapped_column(sa.BigInteger, nullable=True)
    block_time: Mapped[int | None] = mapped_column(sa.BigInteger, nullable=True)

    # NUNCA usar float: NUMERIC(36,18) para cantidades, NUMERIC(20,8) para USD
    fee: Mapped[Decimal | None] = mapped_column(sa.NUMERIC(36, 18), nullable=True)
    fee_payer: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    total_value_usd: Mapped[Decimal | None] = mapped_column(sa.NUMERIC(20, 8), nullable=True)

    summary: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    protocol_name: Mapped[str | None] = mapped_column(sa.String(100), nullable=True)

    # Enlace simétrico: A → B implica B → A. UNIQUE impide que un tercero apunte al mismo socio
    linked_transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        unique=True,
        nullable=True,
    )

    # Categoría sugerida por la reconciliación (off-ramp) pendiente de confirmar por el usuario
    needs_review: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False, server_default=sa.false())

    # Payload original para reclasificación y auditoría
    raw_data: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    # Relaciones
    flows: Mapped[list["TransactionFlow"]] = relationship(
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="TransactionFlow.position",
    )


class TransactionFlow(Base):
    __tablename__ = "transaction_flows"

    __table_args__ = (
        sa.CheckConstraint("amount > 0", name="ck_transaction_flows_amount_positive"),
        sa.CheckConstraint("decimals >= 0 AND decimals <= 18", name="ck_transaction_flows_decimals"),
        sa.Index("ix_transaction_flows_transaction", "transaction_id"),
        sa.Index("ix_transaction_flows_unpriced", "price_at_execution", "is_fee"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    # Orden de generación dentro de la transacción
    position: Mapped[int] = mapped_column(sa.SmallInteger, nullable=False, default=0)

    mint: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    symbol: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    decimals: Mapped[int] = mapped_column(sa.SmallInteger, nullable=False)
    network: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)

    amount: Mapped[Decimal] = mapped_column(sa.NUMERIC(36, 18), nullable=False)
    raw_amount: Mapped[Decimal] = mapped_column(sa.NUMERIC(60, 0), nullable=False)
    direction: Mapped[FlowDirection] = mapped_column(
        sa.Enum(FlowDirection, name="flow_direction", values_callable=_enum_values),
        nullable=False,
    )
    price_at_execution: Mapped[Decimal | None] = mapped_column(sa.NUMERIC(36, 18), nullable=True)
    value_usd: Mapped[Decimal | None] = mapped_column(sa.NUMERIC(20, 8), nullable=True)
    is_fee: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False, server_default=sa.false())

    # Relaciones
    transaction: Mapped["Transaction"] = relationship(back_populates="flows")
