"""
Modelo: price_history — velas diarias (OHLCV) por par de trading.

Actúa como caché persistente de la fuente de precios: el backfill de valoración
consulta aquí antes de llamar a la API externa y guarda cada vela obtenida.
"""

import uuid
from datetime import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base

PRICE_INTERVALS = ("1d",)


class PriceHistory(Base):
    __tablename__ = "price_history"

    __table_args__ = (
        sa.UniqueConstraint("symbol", "interval", "open_at", name="uq_price_history_symbol_interval_open_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # Par completo del exchange, p.ej. "SOLUSDT" o "USDTBRL"
    symbol: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    interval: Mapped[str] = mapped_column(
        sa.Enum(*PRICE_INTERVALS, name="price_interval"),
        nullable=False,
    )
    open_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
    open: Mapped[Decimal] = mapped_column(sa.NUMERIC(36, 18), nullable=False)
    high: Mapped[Decimal] = mapped_column(sa.NUMERIC(36, 18), nullable=False)
    low: Mapped[Decimal] = mapped_column(sa.NUMERIC(36, 18), nullable=False)
    close: Mapped[Decimal] = mapped_column(sa.NUMERIC(36, 18), nullable=False)
    volume: Mapped[Decimal] = mapped_column(sa.NUMERIC(36, 8), nullable=False)
