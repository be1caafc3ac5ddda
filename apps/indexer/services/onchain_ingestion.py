"""
Ingesta de payloads on-chain (webhooks / backfill) al ledger canónico.

Por cada payload: clasificar → construir Transaction + flujos → insertar si la
firma no existe (re-ingestar es un no-op). El fee payer solo cuenta como
dirección propia si es otra wallet registrada del mismo propietario.
"""

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from models.address_label import AddressLabel
from models.transaction import Transaction, TransactionFlow, TransactionSource
from models.wallet import Wallet
from services.address_labels import AddressLabelResolver
from services.flows import flow_rows, max_non_fee_value
from services.onchain_classifier import ClassificationResult, OnChainClassifier
from services.token_resolver import TokenResolver

logger = structlog.get_logger(__name__)


@dataclass
class IngestionStats:
    wallet_id: uuid.UUID
    received: int = 0
    inserted: int = 0
    duplicates: int = 0
    invalid: int = 0
    labels_discovered: int = 0
    errors: list[str] = field(default_factory=list)


def payload_timestamp(payload: Mapping[str, Any]) -> datetime:
    """timestamp del proveedor (epoch en segundos); sin él, el momento de ingesta."""
    value = payload.get("timestamp") or payload.get("blockTime")
    if value is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def transaction_row(
    payload: Mapping[str, Any],
    wallet: Wallet,
    result: ClassificationResult,
) -> dict[str, Any]:
    """Valores de la fila transactions para un payload clasificado."""
    block_time = payload.get("timestamp") or payload.get("blockTime")
    return {
        "id": uuid.uuid4(),
        "source": TransactionSource.ON_CHAIN,
        "wallet_id": wallet.id,
        "signature": payload["signature"],
        "type": result.tx_type,
        "category": result.category,
        "status": result.status,
        "timestamp": payload_timestamp(payload),
        "slot": payload.get("slot"),
        "block_time": int(block_time) if block_time is not None else None,
        "fee": result.fee,
        "fee_payer": payload.get("feePayer"),
        "total_value_usd": max_non_fee_value(result.flows),
        "summary": result.summary,
        "protocol_name": result.protocol_name,
        "raw_data": dict(payload),
    }


class OnChainIngestionService:
    """
    Uso:
        service = OnChainIngestionService(db)
        stats = await service.ingest(wallet, payloads)
    """

    def __init__(
        self,
        db: AsyncSession,
        resolver: TokenResolver | None = None,
        labels: AddressLabelResolver | None = None,
    ) -> None:
        self.db = db
        self._resolver = resolver
        self._labels = labels

    async def ingest(self, wallet: Wallet, payloads: Iterable[Mapping[str, Any]]) -> IngestionStats:
        stats = IngestionStats(wallet_id=wallet.id)
        log = logger.bind(wallet_id=str(wallet.id))

        resolver = self._resolver or await TokenResolver.load(self.db)
        labels = self._labels or await AddressLabelResolver.load(self.db, wallet.owner_id)
        classifier = OnChainClassifier(token_metadata=resolver.token_metadata, labels=labels)
        owner_addresses = await self._owner_addresses(wallet.owner_id)

        batch = [p for p in payloads]
        stats.received = len(batch)
        valid = [p for p in batch if p.get("signature")]
        stats.invalid = len(batch) - len(valid)

        existing = await self._existing_signatures([p["signature"] for p in valid])
        discovered: dict[str, str] = {}

        for payload in valid:
            signature = payload["signature"]
            if signature in existing:
                stats.duplicates += 1
                continue

            fee_payer = payload.get("feePayer")
            attributed_payer = fee_payer if fee_payer and fee_payer.lower() in owner_addresses else None
            result = classifier.classify(payload, wallet.address, attributed_payer)

            if await self._insert(payload, wallet, result):
                stats.inserted += 1
                existing.add(signature)
                wallet.last_signature = signature
                for address in result.counterparties:
                    label = labels.discover(address)
                    if label:
                        discovered[address] = label
            else:
                stats.duplicates += 1

        stats.labels_discovered = await self._save_counterparty_labels(wallet.owner_id, discovered)
        await self.db.commit()
        log.info(
            "ingest.complete",
            received=stats.received,
            inserted=stats.inserted,
            duplicates=stats.duplicates,
            invalid=stats.invalid,
            labels_discovered=stats.labels_discovered,
        )
        return stats

    async def _owner_addresses(self, owner_id: uuid.UUID) -> frozenset[str]:
        result = await self.db.execute(select(Wallet.address).where(Wallet.owner_id == owner_id))
        return frozenset(address.lower() for address in result.scalars().all())

    async def _existing_signatures(self, signatures: list[str]) -> set[str]:
        if not signatures:
            return set()
        result = await self.db.execute(select(Transaction.signature).where(Transaction.signature.in_(signatures)))
        return set(result.scalars().all())

    async def _insert(self, payload: Mapping[str, Any], wallet: Wallet, result: ClassificationResult) -> bool:
        """Inserta si la firma no existe. Devuelve False si otra ingesta llegó antes."""
        row = transaction_row(payload, wallet, result)
        stmt = (
            pg_insert(Transaction)
            .values(row)
            .on_conflict_do_nothing(index_elements=["signature"])
            .returning(Transaction.id)
        )
        inserted_id = (await self.db.execute(stmt)).scalar_one_or_none()
        if inserted_id is None:
            return False
        flows = flow_rows(inserted_id, result.flows)
        if flows:
            await self.db.execute(pg_insert(TransactionFlow).values(flows))
        return True

    async def _save_counterparty_labels(self, owner_id: uuid.UUID, discovered: Mapping[str, str]) -> int:
        """Etiquetas COUNTERPARTY; las ya existentes (o de otra ingesta) se respetan."""
        if not discovered:
            return 0
        rows = [
            {"id": uuid.uuid4(), "owner_id": owner_id, "address": address, "label": label, "source": "COUNTERPARTY"}
            for address, label in discovered.items()
        ]
        await self.db.execute(
            pg_insert(AddressLabel)
            .values(rows)
            .on_conflict_do_nothing(constraint="uq_address_labels_owner_address_source")
        )
        return len(rows)
