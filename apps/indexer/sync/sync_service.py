"""
Servicio de sincronización incremental de una conexión de exchange.

Reglas:
- El scheduler es el ÚNICO proceso que escribe datos de exchanges en la BD.
- Fases en orden (phase1..phase4). Un fallo en una fase se registra y la
  siguiente continúa; el cursor solo avanza para las fases completadas.
- Idempotente: se descartan los external_id ya ingeridos y el INSERT usa
  ON CONFLICT DO NOTHING sobre (exchange_connection_id, external_id).
- Tras las fases: reconciliación con on-chain y backfill de valoración.
- Logging estructurado de cada sync con total de registros importados y errores.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.security import decrypt_credentials
from models.exchange_connection import ExchangeConnection
from models.transaction import Transaction, TransactionFlow, TransactionSource
from services.exchange_mapper import MappedTransaction, map_record
from services.flows import flow_rows
from services.price_source import BinancePriceSource, CachedPriceSource, PriceSource
from services.reconciliation import ReconciliationEngine, ReconciliationStats, clear_links
from services.token_resolver import TokenResolver
from services.valuation_backfill import BackfillStats, ValuationBackfill
from sync.binance_client import BinanceAPIError, BinanceClient
from sync.binance_connector import PHASES, BinanceConnector

logger = structlog.get_logger(__name__)

PHASE_DONE = "DONE"
PHASE_ERROR = "ERROR"


# ---------------------------------------------------------------------------
# Resultado de sincronización
# ---------------------------------------------------------------------------


@dataclass
class SyncStats:
    connection_id: uuid.UUID
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    per_phase: dict[str, int] = field(default_factory=dict)
    reconciliation: ReconciliationStats | None = None
    backfill: BackfillStats | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def total_records(self) -> int:
        return self.inserted

    @property
    def duration_seconds(self) -> float:
        if self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def finish(self) -> None:
        self.finished_at = datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Servicio principal
# ---------------------------------------------------------------------------


class ExchangeSyncService:
    """
    Ejecuta la sincronización por fases de una conexión de Binance.

    Uso:
        service = ExchangeSyncService.from_connection(db, connection)
        stats = await service.sync()

    El descifrado de API Keys se hace en from_connection (core.security);
    las claves en claro nunca se guardan en el servicio ni se loguean.
    """

    def __init__(
        self,
        db: AsyncSession,
        connection: ExchangeConnection,
        api_key: str,
        api_secret: str,
        client: BinanceClient | None = None,
        price_source: PriceSource | None = None,
    ) -> None:
        self.db = db
        self.connection = connection
        self.stats = SyncStats(connection_id=connection.id)
        self._client = client or BinanceClient(
            api_key=api_key,
            api_secret=api_secret,
            base_url=settings.BINANCE_API_BASE_URL,
        )
        self._connector = BinanceConnector(
            self._client,
            symbols=list(connection.symbols or []),
            history_start_ms=settings.SYNC_HISTORY_START_MS,
        )
        self._price_source = price_source
        self._resolver: TokenResolver | None = None

    @classmethod
    def from_connection(cls, db: AsyncSession, connection: ExchangeConnection, **kwargs: Any) -> "ExchangeSyncService":
        """Lanza MissingCredentialsError si la conexión no tiene claves utilizables."""
        api_key, api_secret = decrypt_credentials(connection.api_key_encrypted, connection.api_secret_encrypted)
        return cls(db, connection, api_key, api_secret, **kwargs)

    async def sync(self, full: bool = False) -> SyncStats:
        """
        Sincronización por fases + reconciliación + backfill de precios.
        full=True borra lo ingerido de la conexión (y sus enlaces) y reinicia el cursor.
        """
        log = logger.bind(connection_id=str(self.connection.id))
        log.info("sync.start", full=full)

        try:
            if full:
                await self._reset()
            await self._set_status("syncing")
            self._resolver = await TokenResolver.load(self.db)

            for phase in PHASES:
                await self._run_step(phase, self._sync_phase(phase))

            await self._run_step("reconcile", self._reconcile())
            await self._run_step("backfill", self._backfill_prices())

            await self._set_status("idle", self.stats.errors[-1] if self.stats.errors else None)

        except Exception as exc:
            self.stats.errors.append(str(exc))
            log.error("sync.failed", error=str(exc))
            await self.db.rollback()
            await self._set_status("error", str(exc))

        finally:
            self.stats.finish()
            await self._client.close()

        log.info(
            "sync.complete",
            fetched=self.stats.fetched,
            total_records=self.stats.total_records,
            duplicates=self.stats.duplicates,
            skipped=self.stats.skipped,
            duration_seconds=round(self.stats.duration_seconds, 2),
            errors=len(self.stats.errors),
        )
        return self.stats

    async def _run_step(self, name: str, coro) -> None:
        """Ejecuta un paso de sync capturando errores para no abortar el resto."""
        try:
            await coro
        except BinanceAPIError as exc:
            msg = f"{name}: {exc}"
            self.stats.errors.append(msg)
            logger.warning("sync.step_error", step=name, error=msg)
            await self._recover(name)
        except Exception as exc:
            msg = f"{name}: {exc}"
            self.stats.errors.append(msg)
            logger.error("sync.step_unexpected_error", step=name, error=msg)
            await self._recover(name)

    async def _recover(self, name: str) -> None:
        """Descarta lo pendiente del paso fallido y marca la fase para reintentar."""
        await self.db.rollback()
        await self.db.refresh(self.connection)
        if name in PHASES:
            self._store_cursor(name, None, PHASE_ERROR)
            await self.db.commit()

    # -----------------------------------------------------------------------
    # Fases
    # -----------------------------------------------------------------------

    async def _sync_phase(self, phase: str) -> None:
        cursor = dict(self.connection.sync_cursor or {})
        result = await self._connector.run_phase(phase, cursor.get(phase) or {})
        self.stats.fetched += len(result.records)

        mapped = []
        for record in result.records:
            tx = map_record(record, self.connection.id, self._resolver, self._connector.exchange_name)
            if tx is None:
                self.stats.skipped += 1
                continue
            mapped.append(tx)

        inserted = await self._store_transactions(mapped)
        self.stats.per_phase[phase] = inserted
        self._store_cursor(phase, result.cursor, PHASE_DONE)
        await self.db.commit()
        logger.info("sync.phase_done", phase=phase, fetched=len(result.records), inserted=inserted)

    def _store_cursor(self, phase: str, phase_cursor: dict[str, Any] | None, status: str) -> None:
        # JSONB: se reasigna un dict nuevo para que SQLAlchemy detecte el cambio
        cursor = dict(self.connection.sync_cursor or {})
        if phase_cursor is not None:
            cursor[phase] = phase_cursor
        cursor["phase_status"] = {**cursor.get("phase_status", {}), phase: status}
        self.connection.sync_cursor = cursor

    async def _store_transactions(self, mapped: list[MappedTransaction]) -> int:
        """
        Inserta las transacciones nuevas con sus flujos.
        Devuelve el número de filas insertadas; el resto cuenta como duplicado.
        """
        if not mapped:
            return 0

        existing = await self._existing_external_ids([tx.external_id for tx in mapped])
        inserted = 0
        for tx in mapped:
            if tx.external_id in existing:
                self.stats.duplicates += 1
                continue
            existing.add(tx.external_id)

            stmt = (
                pg_insert(Transaction)
                .values(self._transaction_row(tx))
                .on_conflict_do_nothing(constraint="uq_transactions_connection_external_id")
                .returning(Transaction.id)
            )
            inserted_id = (await self.db.execute(stmt)).scalar_one_or_none()
            if inserted_id is None:
                self.stats.duplicates += 1
                continue

            rows = flow_rows(inserted_id, tx.flows)
            if rows:
                await self.db.execute(pg_insert(TransactionFlow).values(rows))
            inserted += 1

        self.stats.inserted += inserted
        return inserted

    async def _existing_external_ids(self, external_ids: list[str]) -> set[str]:
        result = await self.db.execute(
            select(Transaction.external_id).where(
                Transaction.exchange_connection_id == self.connection.id,
                Transaction.external_id.in_(external_ids),
            )
        )
        return set(result.scalars().all())

    def _transaction_row(self, tx: MappedTransaction) -> dict[str, Any]:
        return {
            "id": uuid.uuid4(),
            "source": TransactionSource.EXCHANGE,
            "exchange_connection_id": self.connection.id,
            "external_id": tx.external_id,
            "onchain_reference": tx.onchain_reference,
            "type": tx.tx_type,
            "category": tx.category,
            "timestamp": tx.timestamp,
            "fee": tx.fee,
            "total_value_usd": tx.total_value_usd,
            "summary": tx.summary,
            "protocol_name": self._connector.exchange_name.capitalize(),
            "raw_data": tx.raw_data,
        }

    # -----------------------------------------------------------------------
    # Pasos finales
    # -----------------------------------------------------------------------

    async def _reconcile(self) -> None:
        engine = ReconciliationEngine(
            self.db,
            amount_tolerance=settings.RECONCILIATION_AMOUNT_TOLERANCE,
            deposit_lookback=timedelta(minutes=settings.RECONCILIATION_DEPOSIT_LOOKBACK_MINUTES),
            withdrawal_lookahead=timedelta(minutes=settings.RECONCILIATION_WITHDRAWAL_LOOKAHEAD_MINUTES),
            off_ramp_window=timedelta(minutes=settings.RECONCILIATION_OFF_RAMP_WINDOW_MINUTES),
        )
        self.stats.reconciliation = await engine.reconcile_connection(self.connection)

    async def _backfill_prices(self) -> None:
        source = self._price_source or CachedPriceSource(
            BinancePriceSource(self._client, self.db, settings.PRICE_REQUEST_DELAY_SECONDS)
        )
        backfill = ValuationBackfill(self.db, source, batch_size=settings.BACKFILL_BATCH_SIZE)
        self.stats.backfill = await backfill.run(connection_id=self.connection.id)

    # -----------------------------------------------------------------------
    # Helpers de base de datos
    # -----------------------------------------------------------------------

    async def _reset(self) -> None:
        """Re-sync completo: quita enlaces, borra transacciones (y flujos en cascada) y el cursor."""
        result = await self.db.execute(
            select(Transaction.id).where(Transaction.exchange_connection_id == self.connection.id)
        )
        ids = list(result.scalars().all())
        unlinked = await clear_links(self.db, ids)
        if ids:
            await self.db.execute(
                delete(Transaction)
                .where(Transaction.exchange_connection_id == self.connection.id)
                .execution_options(synchronize_session=False)
            )
        self.connection.sync_cursor = {}
        await self.db.commit()
        logger.info("sync.reset", connection_id=str(self.connection.id), deleted=len(ids), unlinked=unlinked)

    async def _set_status(self, status: str, error: str | None = None) -> None:
        self.connection.sync_status = status
        self.connection.last_sync_at = datetime.now(timezone.utc)
        if status != "syncing":
            self.connection.last_error = error
        await self.db.commit()
