"""
Modelo: address_labels — etiquetas de direcciones asignadas por el usuario
o descubiertas al analizar contrapartes.
El registro global de direcciones conocidas vive en services/known_addresses.py.
"""

import uuid

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin

LABEL_SOURCES = ("USER", "COUNTERPARTY")


class AddressLabel(TimestampMixin, Base):
    __tablename__ = "address_labels"

    __table_args__ = (
        sa.UniqueConstraint("owner_id", "address", "source", name="uq_address_labels_owner_address_source"),
        sa.Index("ix_address_labels_owner", "owner_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    address: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    label: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    source: Mapped[str] = mapped_column(sa.Enum(*LABEL_SOURCES, name="address_label_source"), nullable=False)
