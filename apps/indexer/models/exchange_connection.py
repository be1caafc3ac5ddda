"""
Modelo: exchange_connections — credenciales cifradas y cursor de sincronización por fase.
"""

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin

SYNC_STATUSES = ("idle", "syncing", "error")


class ExchangeConnection(TimestampMixin, Base):
    __tablename__ = "exchange_connections"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    exchange_name: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default="binance")
    # Cifradas con AES-256-GCM (core.security). NUNCA en claro
    api_key_encrypted: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    api_secret_encrypted: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    # Pares a sincronizar en la fase de trades, p.ej. ["SOLUSDT", "BTCUSDT"]
    symbols: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    # {"phase1": {"trades:SOLUSDT": <ms>}, ..., "phase_status": {"phase1": "DONE"}}
    sync_cursor: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    sync_status: Mapped[str] = mapped_column(
        sa.Enum(*SYNC_STATUSES, name="sync_status"),
        nullable=False,
        server_default="idle",
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
