"""
Resolución de etiquetas de direcciones para los resúmenes.

Prioridad: etiqueta del usuario > etiqueta de contraparte descubierta >
registro global de direcciones conocidas > dirección abreviada.
"""

import uuid
from collections.abc import Mapping

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.address_label import AddressLabel
from services.known_addresses import registry_label

logger = structlog.get_logger(__name__)


def short_address(address: str) -> str:
    """"5tzF...uAi9" — 4 primeros y 4 últimos caracteres."""
    if len(address) <= 10:
        return address
    return f"{address[:4]}...{address[-4:]}"


class AddressLabelResolver:
    def __init__(
        self,
        user_labels: Mapping[str, str] | None = None,
        counterparty_labels: Mapping[str, str] | None = None,
    ) -> None:
        # Claves en minúsculas: la comparación de direcciones es case-insensitive
        self._user = {k.lower(): v for k, v in (user_labels or {}).items()}
        self._counterparty = {k.lower(): v for k, v in (counterparty_labels or {}).items()}

    @classmethod
    async def load(cls, db: AsyncSession, owner_id: uuid.UUID) -> "AddressLabelResolver":
        result = await db.execute(select(AddressLabel).where(AddressLabel.owner_id == owner_id))
        user: dict[str, str] = {}
        counterparty: dict[str, str] = {}
        for row in result.scalars():
            target = user if row.source == "USER" else counterparty
            target[row.address] = row.label
        logger.debug("address_labels.loaded", owner_id=str(owner_id), user=len(user), counterparty=len(counterparty))
        return cls(user, counterparty)

    def lookup(self, address: str | None) -> str | None:
        if not address:
            return None
        key = address.lower()
        return self._user.get(key) or self._counterparty.get(key) or registry_label(address)

    def label_for(self, address: str | None) -> str | None:
        if not address:
            return None
        return self.lookup(address) or short_address(address)

    def discover(self, address: str) -> str | None:
        """
        Etiqueta automática para una contraparte nueva: solo direcciones del
        registro (exchange o programa) sin etiqueta previa. La recuerda en memoria
        para no proponerla dos veces.
        """
        key = address.lower()
        if key in self._user or key in self._counterparty:
            return None
        label = registry_label(address)
        if label:
            self._counterparty[key] = label
        return label
