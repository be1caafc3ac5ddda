"""
Backfill de valoración: rellena price_at_execution / value_usd en flujos sin precio.

Orden por flujo (fees excluidos):
  1. CONVERT / DUST_CONVERT: precio derivado de las propias patas si la otra es USD-like
  2. fuente externa (fiat → tipo de cambio diario; resto → cierre diario en USD)

Tras valorar un flujo, si la transacción aún no tiene total_value_usd se toma
el mayor value_usd entre sus flujos no-fee. Es idempotente: solo toca filas
con price_at_execution IS NULL. Un fallo externo cuenta como failed y nunca
se propaga.
"""

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from models.transaction import Transaction, TransactionFlow, TransactionType
from services.assets import is_usd_like
from services.flows import USD_PRECISION, max_non_fee_value
from services.price_source import PriceSource

logger = structlog.get_logger(__name__)

_CONVERT_TYPES = frozenset({TransactionType.EXCHANGE_CONVERT, TransactionType.EXCHANGE_DUST_CONVERT})


@dataclass
class BackfillStats:
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    priced: int = 0
    failed: int = 0
    transactions_updated: int = 0
    errors: list[str] = field(default_factory=list)

    def finish(self) -> None:
        self.finished_at = datetime.now(timezone.utc)


def convert_price(flow, siblings: Sequence) -> Decimal | None:
    """
    Precio implícito de un convert: importe de la pata USD-like / importe del activo.
    Solo se usa la pata no-fee de dirección opuesta.
    """
    if flow.amount is None or flow.amount <= 0:
        return None
    for other in siblings:
        if other is flow or other.is_fee or other.direction == flow.direction:
            continue
        if is_usd_like(other.symbol) and other.amount and other.amount > 0:
            return other.amount / flow.amount
    return None


class ValuationBackfill:
    """
    Uso:
        backfill = ValuationBackfill(db, CachedPriceSource(BinancePriceSource(client, db)))
        stats = await backfill.run(connection_id=connection.id)
    """

    def __init__(self, db: AsyncSession, price_source: PriceSource, batch_size: int = 500) -> None:
        self.db = db
        self.price_source = price_source
        self.batch_size = batch_size

    async def run(self, connection_id: uuid.UUID | None = None, limit: int | None = None) -> BackfillStats:
        stats = BackfillStats()
        log = logger.bind(connection_id=str(connection_id) if connection_id else None)
        log.info("backfill.start", limit=limit)

        last_id: uuid.UUID | None = None
        processed = 0
        while limit is None or processed < limit:
            size = self.batch_size if limit is None else min(self.batch_size, limit - processed)
            batch = await self._pending_flows(connection_id, last_id, size)
            if not batch:
                break

            touched: set[uuid.UUID] = set()
            for flow in batch:
                if await self._price_flow(flow, stats):
                    tx = flow.transaction
                    if tx.total_value_usd is None:
                        tx.total_value_usd = max_non_fee_value(tx.flows)
                        if tx.total_value_usd is not None:
                            touched.add(tx.id)

            await self.db.commit()
            stats.transactions_updated += len(touched)
            processed += len(batch)
            last_id = batch[-1].id
            if len(batch) < size:
                break

        stats.finish()
        log.info(
            "backfill.complete",
            priced=stats.priced,
            failed=stats.failed,
            transactions_updated=stats.transactions_updated,
        )
        return stats

    async def _pending_flows(
        self,
        connection_id: uuid.UUID | None,
        after_id: uuid.UUID | None,
        size: int,
    ) -> list[TransactionFlow]:
        # Paginación por id: los flujos que fallan siguen con precio NULL y no deben repetirse
        stmt = (
            select(TransactionFlow)
            .join(Transaction, TransactionFlow.transaction_id == Transaction.id)
            .options(selectinload(TransactionFlow.transaction).selectinload(Transaction.flows))
            .where(TransactionFlow.price_at_execution.is_(None), TransactionFlow.is_fee.is_(False))
            .order_by(TransactionFlow.id)
            .limit(size)
        )
        if connection_id is not None:
            stmt = stmt.where(Transaction.exchange_connection_id == connection_id)
        if after_id is not None:
            stmt = stmt.where(TransactionFlow.id > after_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _price_flow(self, flow: TransactionFlow, stats: BackfillStats) -> bool:
        tx = flow.transaction
        price = convert_price(flow, tx.flows) if tx.type in _CONVERT_TYPES else None

        if price is None and flow.symbol:
            try:
                price = await self.price_source.get_usd_price(flow.symbol, tx.timestamp.date())
            except Exception as exc:
                stats.errors.append(f"{flow.symbol}: {exc}")
                logger.warning("backfill.price_error", symbol=flow.symbol, error=str(exc))
                price = None

        if price is None:
            stats.failed += 1
            logger.debug("backfill.price_missing", symbol=flow.symbol, day=tx.timestamp.date().isoformat())
            return False

        flow.price_at_execution = price
        flow.value_usd = (flow.amount * price).quantize(USD_PRECISION)
        stats.priced += 1
        return True
