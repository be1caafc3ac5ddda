"""
Modelo: token_symbol_mappings — (símbolo, red) → (mint canónico, decimales).
Varias filas pueden compartir símbolo en redes distintas; como mucho una es la default.
"""

import uuid

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class TokenSymbolMapping(TimestampMixin, Base):
    __tablename__ = "token_symbol_mappings"

    __table_args__ = (
        sa.UniqueConstraint("symbol", "network", name="uq_token_symbol_mappings_symbol_network"),
        # Índice parcial: una sola fila default por símbolo
        sa.Index(
            "uq_token_symbol_mappings_default",
            "symbol",
            unique=True,
            postgresql_where=sa.text("is_default"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # Siempre en mayúsculas
    symbol: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    network: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    mint: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    decimals: Mapped[int] = mapped_column(sa.SmallInteger, nullable=False)
    is_default: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False, server_default=sa.false())
