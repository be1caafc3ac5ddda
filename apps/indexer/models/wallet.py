"""
Modelo: wallets — direcciones on-chain vigiladas por un propietario.
"""

import uuid

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class Wallet(TimestampMixin, Base):
    __tablename__ = "wallets"

    __table_args__ = (
        sa.UniqueConstraint("owner_id", "address", name="uq_wallets_owner_address"),
        sa.Index("ix_wallets_address", "address"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # El propietario (usuario) vive fuera de este servicio; solo guardamos su id
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    address: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    label: Mapped[str | None] = mapped_column(sa.String(100), nullable=True)
    # Última firma ingerida (cursor de backfill on-chain)
    last_signature: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
