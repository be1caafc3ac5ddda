"""
Reconciliación entre fuentes: enlaza depósitos/retiros del exchange con la
transferencia on-chain que representa el mismo movimiento real.

Estado por transacción candidata:
  UNLINKED → LINKED (match exacto por txId o match difuso) | UNLINKED (reintento en el próximo run)

Reglas:
- Exacto: el registro del exchange trae la firma on-chain (onchain_reference).
- Difuso: DEPOSIT ↔ TRANSFER_OUT en [t − lookback, t], del más reciente al más antiguo;
  WITHDRAWAL ↔ TRANSFER_IN en [t, t + lookahead], del más antiguo al más reciente.
  Un candidato vale si tiene un flujo no-fee del mismo activo con importe dentro
  de la tolerancia relativa. Gana el primero.
- Un enlace se escribe SIEMPRE en las dos filas a la vez (link_pair).
- Las filas ya enlazadas nunca se vuelven a examinar.
- Off-ramp: un DEPOSIT enlazado seguido en menos de 24 h por una venta en la misma
  conexión (EXCHANGE_TRADE o EXCHANGE_FIAT_SELL) deja la transferencia on-chain
  como DISPOSAL_SALE pendiente de revisión.
"""

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import structlog
from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from models.exchange_connection import ExchangeConnection
from models.transaction import Transaction, TransactionCategory, TransactionSource, TransactionType
from models.wallet import Wallet
from services.token_resolver import is_synthetic_mint

logger = structlog.get_logger(__name__)

DEFAULT_AMOUNT_TOLERANCE = Decimal("0.02")
DEFAULT_DEPOSIT_LOOKBACK = timedelta(minutes=60)
DEFAULT_WITHDRAWAL_LOOKAHEAD = timedelta(minutes=120)
DEFAULT_OFF_RAMP_WINDOW = timedelta(hours=24)

# Tope de candidatos por ventana
MAX_CANDIDATES = 200

_EXCHANGE_TYPES = (TransactionType.EXCHANGE_DEPOSIT, TransactionType.EXCHANGE_WITHDRAWAL)
_SELL_TYPES = (TransactionType.EXCHANGE_TRADE, TransactionType.EXCHANGE_FIAT_SELL)


@dataclass
class ReconciliationStats:
    connection_id: uuid.UUID | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    matched_exact: int = 0
    matched_fuzzy: int = 0
    unmatched: int = 0
    off_ramps: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def matched(self) -> int:
        return self.matched_exact + self.matched_fuzzy

    def finish(self) -> None:
        self.finished_at = datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Matching puro
# ---------------------------------------------------------------------------


def amount_within_tolerance(expected: Decimal, candidate: Decimal, tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE) -> bool:
    """Diferencia relativa respecto al importe del exchange, con suelo para importes ínfimos."""
    base = max(abs(expected), Decimal("0.0001"))
    return abs(abs(candidate) - abs(expected)) / base <= tolerance


def same_asset(exchange_mint: str, exchange_symbol: str | None, candidate_mint: str, candidate_symbol: str | None) -> bool:
    if exchange_mint == candidate_mint:
        return True
    # Activo sin mapping: solo se puede comparar por símbolo
    if is_synthetic_mint(exchange_mint) and exchange_symbol and candidate_symbol:
        return exchange_symbol.upper() == candidate_symbol.upper()
    return False


def principal_flow(tx: Transaction):
    """Primer flujo no-fee: la pata económica de un depósito/retiro."""
    return next((f for f in tx.flows if not f.is_fee), None)


def find_fuzzy_match(
    exchange_tx: Transaction,
    candidates: Iterable[Transaction],
    tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE,
) -> Transaction | None:
    """
    Primer candidato (en el orden recibido) con un flujo no-fee del mismo activo
    y con importe dentro de la tolerancia. Los candidatos ya enlazados se ignoran.
    """
    target = principal_flow(exchange_tx)
    if target is None:
        return None
    for candidate in candidates:
        if candidate.linked_transaction_id is not None or candidate.id == exchange_tx.id:
            continue
        for flow in candidate.flows:
            if flow.is_fee:
                continue
            if not same_asset(target.mint, target.symbol, flow.mint, flow.symbol):
                continue
            if amount_within_tolerance(target.amount, flow.amount, tolerance):
                return candidate
    return None


def match_window(
    tx_type: TransactionType,
    timestamp: datetime,
    deposit_lookback: timedelta = DEFAULT_DEPOSIT_LOOKBACK,
    withdrawal_lookahead: timedelta = DEFAULT_WITHDRAWAL_LOOKAHEAD,
) -> tuple[TransactionType, datetime, datetime, bool]:
    """
    (tipo on-chain buscado, inicio, fin, orden descendente).
    El envío on-chain precede al depósito; la llegada on-chain sigue al retiro.
    """
    if tx_type == TransactionType.EXCHANGE_DEPOSIT:
        return TransactionType.TRANSFER_OUT, timestamp - deposit_lookback, timestamp, True
    return TransactionType.TRANSFER_IN, timestamp, timestamp + withdrawal_lookahead, False


def is_off_ramp(
    deposit_at: datetime,
    sell_timestamps: Iterable[datetime],
    window: timedelta = DEFAULT_OFF_RAMP_WINDOW,
) -> bool:
    """Hay una venta en [depósito, depósito + ventana)."""
    return any(timedelta(0) <= sold_at - deposit_at < window for sold_at in sell_timestamps)


# ---------------------------------------------------------------------------
# Enlace atómico
# ---------------------------------------------------------------------------


async def link_pair(db: AsyncSession, a_id: uuid.UUID, b_id: uuid.UUID) -> bool:
    """
    Enlaza A↔B en una única sentencia UPDATE, solo si ambas siguen sin enlazar.
    Si no cambian exactamente dos filas se deshace el SAVEPOINT: nunca queda medio enlace.
    """
    if a_id == b_id:
        return False
    stmt = (
        update(Transaction)
        .where(Transaction.id.in_([a_id, b_id]), Transaction.linked_transaction_id.is_(None))
        .values(linked_transaction_id=case((Transaction.id == a_id, b_id), else_=a_id))
        .execution_options(synchronize_session=False)
    )
    savepoint = await db.begin_nested()
    try:
        result = await db.execute(stmt)
    except IntegrityError:
        # Otro enlace concurrente ocupó una de las dos filas
        await savepoint.rollback()
        logger.warning("reconcile.link_conflict", a_id=str(a_id), b_id=str(b_id))
        return False

    if result.rowcount != 2:
        await savepoint.rollback()
        logger.debug("reconcile.link_skipped", a_id=str(a_id), b_id=str(b_id), rows=result.rowcount)
        return False

    await savepoint.commit()
    await db.commit()
    return True


async def unlink_pair(db: AsyncSession, transaction_id: uuid.UUID) -> int:
    """Deshace el enlace de una transacción y el de su pareja en la misma sentencia."""
    stmt = (
        update(Transaction)
        .where(
            or_(Transaction.id == transaction_id, Transaction.linked_transaction_id == transaction_id),
            Transaction.linked_transaction_id.is_not(None),
        )
        .values(linked_transaction_id=None)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()
    return result.rowcount or 0


async def clear_links(db: AsyncSession, transaction_ids: Sequence[uuid.UUID]) -> int:
    """
    Limpia los enlaces de un conjunto de transacciones y de sus parejas.
    Lo usa el re-sync completo antes de borrar las transacciones de una conexión.
    No hace commit: forma parte de la transacción del llamador.
    """
    if not transaction_ids:
        return 0
    ids = list(transaction_ids)
    stmt = (
        update(Transaction)
        .where(or_(Transaction.id.in_(ids), Transaction.linked_transaction_id.in_(ids)))
        .where(Transaction.linked_transaction_id.is_not(None))
        .values(linked_transaction_id=None)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Motor
# ---------------------------------------------------------------------------


class ReconciliationEngine:
    """
    Uso:
        engine = ReconciliationEngine(db)
        stats = await engine.reconcile_connection(connection)
    """

    def __init__(
        self,
        db: AsyncSession,
        amount_tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE,
        deposit_lookback: timedelta = DEFAULT_DEPOSIT_LOOKBACK,
        withdrawal_lookahead: timedelta = DEFAULT_WITHDRAWAL_LOOKAHEAD,
        off_ramp_window: timedelta = DEFAULT_OFF_RAMP_WINDOW,
    ) -> None:
        self.db = db
        self.amount_tolerance = Decimal(str(amount_tolerance))
        self.deposit_lookback = deposit_lookback
        self.withdrawal_lookahead = withdrawal_lookahead
        self.off_ramp_window = off_ramp_window

    async def reconcile_connection(self, connection: ExchangeConnection) -> ReconciliationStats:
        stats = ReconciliationStats(connection_id=connection.id)
        log = logger.bind(connection_id=str(connection.id))

        wallet_ids = await self._wallet_ids(connection.owner_id)
        pending = await self._unlinked_exchange_transfers(connection.id)
        log.info("reconcile.start", candidates=len(pending), wallets=len(wallet_ids))

        if not wallet_ids:
            stats.unmatched = len(pending)
            stats.finish()
            log.info("reconcile.no_wallets", unmatched=stats.unmatched)
            return stats

        sells = await self._sell_timestamps(connection.id)

        for exchange_tx in pending:
            partner = await self._exact_match(exchange_tx, wallet_ids)
            if partner is not None and await link_pair(self.db, exchange_tx.id, partner.id):
                stats.matched_exact += 1
                log.info("reconcile.linked", strategy="exact", exchange_tx=str(exchange_tx.id), onchain_tx=str(partner.id))
                await self._check_off_ramp(exchange_tx, partner, sells, stats)
                continue

            partner = await self._fuzzy_match(exchange_tx, wallet_ids)
            if partner is not None and await link_pair(self.db, exchange_tx.id, partner.id):
                stats.matched_fuzzy += 1
                log.info("reconcile.linked", strategy="fuzzy", exchange_tx=str(exchange_tx.id), onchain_tx=str(partner.id))
                await self._check_off_ramp(exchange_tx, partner, sells, stats)
                continue

            stats.unmatched += 1

        stats.finish()
        log.info(
            "reconcile.complete",
            matched_exact=stats.matched_exact,
            matched_fuzzy=stats.matched_fuzzy,
            unmatched=stats.unmatched,
            off_ramps=stats.off_ramps,
        )
        return stats

    async def _check_off_ramp(
        self,
        exchange_tx: Transaction,
        onchain_tx: Transaction,
        sells: list[datetime],
        stats: ReconciliationStats,
    ) -> None:
        if exchange_tx.type != TransactionType.EXCHANGE_DEPOSIT:
            return
        if not is_off_ramp(exchange_tx.timestamp, sells, self.off_ramp_window):
            return
        await self.db.execute(
            update(Transaction)
            .where(Transaction.id == onchain_tx.id)
            .values(category=TransactionCategory.DISPOSAL_SALE, needs_review=True)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        stats.off_ramps += 1
        logger.info(
            "reconcile.off_ramp",
            connection_id=str(stats.connection_id),
            exchange_tx=str(exchange_tx.id),
            onchain_tx=str(onchain_tx.id),
        )

    async def _sell_timestamps(self, connection_id: uuid.UUID) -> list[datetime]:
        result = await self.db.execute(
            select(Transaction.timestamp)
            .where(
                Transaction.exchange_connection_id == connection_id,
                Transaction.source == TransactionSource.EXCHANGE,
                Transaction.type.in_(_SELL_TYPES),
            )
            .order_by(Transaction.timestamp)
        )
        return list(result.scalars().all())

    async def _wallet_ids(self, owner_id: uuid.UUID) -> list[uuid.UUID]:
        result = await self.db.execute(select(Wallet.id).where(Wallet.owner_id == owner_id))
        return list(result.scalars().all())

    async def _unlinked_exchange_transfers(self, connection_id: uuid.UUID) -> list[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .options(selectinload(Transaction.flows))
            .where(
                Transaction.exchange_connection_id == connection_id,
                Transaction.source == TransactionSource.EXCHANGE,
                Transaction.type.in_(_EXCHANGE_TYPES),
                Transaction.linked_transaction_id.is_(None),
            )
            .order_by(Transaction.timestamp)
        )
        return list(result.scalars().all())

    async def _exact_match(self, exchange_tx: Transaction, wallet_ids: list[uuid.UUID]) -> Transaction | None:
        reference = (exchange_tx.onchain_reference or "").strip()
        if not reference:
            return None
        result = await self.db.execute(
            select(Transaction).where(
                Transaction.signature == reference,
                Transaction.source == TransactionSource.ON_CHAIN,
                Transaction.wallet_id.in_(wallet_ids),
                Transaction.linked_transaction_id.is_(None),
            )
        )
        return result.scalars().first()

    async def _fuzzy_match(self, exchange_tx: Transaction, wallet_ids: list[uuid.UUID]) -> Transaction | None:
        onchain_type, start, end, descending = match_window(
            exchange_tx.type, exchange_tx.timestamp, self.deposit_lookback, self.withdrawal_lookahead
        )
        order = Transaction.timestamp.desc() if descending else Transaction.timestamp.asc()
        result = await self.db.execute(
            select(Transaction)
            .options(selectinload(Transaction.flows))
            .where(
                Transaction.source == TransactionSource.ON_CHAIN,
                Transaction.wallet_id.in_(wallet_ids),
                Transaction.type == onchain_type,
                Transaction.linked_transaction_id.is_(None),
                Transaction.timestamp >= start,
                Transaction.timestamp <= end,
            )
            .order_by(order)
            .limit(MAX_CANDIDATES)
            .execution_options(populate_existing=True)
        )
        return find_fuzzy_match(exchange_tx, result.scalars().all(), self.amount_tolerance)
