"""
Proceso del scheduler (APScheduler) y CLI de operaciones puntuales.

El scheduler es el ÚNICO proceso que escribe datos de exchanges en la BD.

Arrancar con:
    python -m sync.scheduler                 # scheduler: sync cada SYNC_INTERVAL_MINUTES
    python -m sync.scheduler sync --full     # una sync (completa) de todas las conexiones
    python -m sync.scheduler reconcile --connection <uuid>
    python -m sync.scheduler backfill-prices --limit 1000
    python -m sync.scheduler ingest payloads.json --wallet <uuid|dirección>
    python -m sync.scheduler seed-tokens
    python -m sync.scheduler map-token JUP solana <mint> 6
    python -m sync.scheduler unlink <uuid>
"""

import argparse
import asyncio
import json
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, update

from core.config import settings
from core.database import AsyncSessionLocal
from core.logging_config import configure_logging
from core.security import MissingCredentialsError
from models.exchange_connection import ExchangeConnection
from models.wallet import Wallet
from services.onchain_ingestion import OnChainIngestionService
from services.price_source import BinancePriceSource, CachedPriceSource
from services.reconciliation import ReconciliationEngine, unlink_pair
from services.token_resolver import TokenMappingRow, TokenResolver, persist_mapping, seed_token_mappings
from services.valuation_backfill import ValuationBackfill
from sync.binance_client import BinanceClient
from sync.sync_service import ExchangeSyncService

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


async def _connection_ids(connection_id: uuid.UUID | None = None) -> list[uuid.UUID]:
    async with AsyncSessionLocal() as db:
        stmt = select(ExchangeConnection.id).order_by(ExchangeConnection.created_at)
        if connection_id is not None:
            stmt = stmt.where(ExchangeConnection.id == connection_id)
        result = await db.execute(stmt)
        return list(result.scalars().all())


def is_stale_sync(connection: ExchangeConnection, now: datetime, stale_after: timedelta) -> bool:
    """"syncing" sin run vivo: last_sync_at marca el inicio del run (o no hay registro)."""
    started = connection.last_sync_at
    return started is None or now - started >= stale_after


async def sync_connection(connection_id: uuid.UUID, full: bool = False) -> None:
    """Una sesión por conexión: un fallo no contamina la siguiente."""
    async with AsyncSessionLocal() as db:
        connection = await db.get(ExchangeConnection, connection_id)
        if connection is None:
            logger.warning("scheduler.connection_not_found", connection_id=str(connection_id))
            return
        if connection.sync_status == "syncing":
            stale_after = timedelta(minutes=settings.SYNC_STALE_AFTER_MINUTES)
            if not is_stale_sync(connection, datetime.now(timezone.utc), stale_after):
                logger.info("scheduler.already_syncing", connection_id=str(connection_id))
                return
            logger.warning(
                "scheduler.stale_sync_recovered",
                connection_id=str(connection_id),
                started_at=connection.last_sync_at.isoformat() if connection.last_sync_at else None,
            )

        try:
            service = ExchangeSyncService.from_connection(db, connection)
        except MissingCredentialsError as exc:
            connection.sync_status = "error"
            connection.last_error = str(exc)
            await db.commit()
            logger.error("scheduler.missing_credentials", connection_id=str(connection_id))
            return

        await service.sync(full=full)


async def release_interrupted_syncs() -> int:
    """
    Al arrancar el scheduler no hay ningún run vivo: todo "syncing" quedó de un
    proceso caído. Se vuelve a idle y el siguiente tick reanuda desde el cursor.
    """
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            update(ExchangeConnection)
            .where(ExchangeConnection.sync_status == "syncing")
            .values(sync_status="idle")
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    released = result.rowcount or 0
    if released:
        logger.warning("scheduler.interrupted_syncs_released", connections=released)
    return released


async def sync_all_connections(full: bool = False, connection_id: uuid.UUID | None = None) -> None:
    ids = await _connection_ids(connection_id)
    logger.info("scheduler.sync_all", connections=len(ids), full=full)
    for cid in ids:
        await sync_connection(cid, full=full)


async def reconcile_connections(connection_id: uuid.UUID | None = None) -> int:
    engine_kwargs = {
        "amount_tolerance": settings.RECONCILIATION_AMOUNT_TOLERANCE,
        "deposit_lookback": timedelta(minutes=settings.RECONCILIATION_DEPOSIT_LOOKBACK_MINUTES),
        "withdrawal_lookahead": timedelta(minutes=settings.RECONCILIATION_WITHDRAWAL_LOOKAHEAD_MINUTES),
        "off_ramp_window": timedelta(minutes=settings.RECONCILIATION_OFF_RAMP_WINDOW_MINUTES),
    }
    matched = 0
    for cid in await _connection_ids(connection_id):
        async with AsyncSessionLocal() as db:
            connection = await db.get(ExchangeConnection, cid)
            stats = await ReconciliationEngine(db, **engine_kwargs).reconcile_connection(connection)
            matched += stats.matched
    return matched


async def backfill_prices(connection_id: uuid.UUID | None = None, limit: int | None = None) -> int:
    # Las velas son públicas: el cliente no necesita API Key
    async with BinanceClient(base_url=settings.BINANCE_API_BASE_URL) as client, AsyncSessionLocal() as db:
        source = CachedPriceSource(BinancePriceSource(client, db, settings.PRICE_REQUEST_DELAY_SECONDS))
        backfill = ValuationBackfill(db, source, batch_size=settings.BACKFILL_BATCH_SIZE)
        stats = await backfill.run(connection_id=connection_id, limit=limit)
    return stats.priced


async def _find_wallet(db, wallet_ref: str) -> Wallet | None:
    try:
        return await db.get(Wallet, uuid.UUID(wallet_ref))
    except ValueError:
        result = await db.execute(select(Wallet).where(Wallet.address == wallet_ref))
        return result.scalars().first()


async def ingest_file(path: Path, wallet_ref: str) -> int:
    payloads = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payloads, dict):
        payloads = [payloads]

    async with AsyncSessionLocal() as db:
        wallet = await _find_wallet(db, wallet_ref)
        if wallet is None:
            logger.error("ingest.wallet_not_found", wallet=wallet_ref)
            return 0
        stats = await OnChainIngestionService(db).ingest(wallet, payloads)
    return stats.inserted


async def seed_tokens() -> int:
    async with AsyncSessionLocal() as db:
        return await seed_token_mappings(db)


async def add_token_mapping(symbol: str, network: str, mint: str, decimals: int) -> None:
    async with AsyncSessionLocal() as db:
        resolver = await TokenResolver.load(db)
        await persist_mapping(db, resolver, TokenMappingRow(symbol, network, mint, decimals))


async def unlink_transaction(transaction_id: uuid.UUID) -> int:
    async with AsyncSessionLocal() as db:
        return await unlink_pair(db, transaction_id)


async def run_scheduler() -> None:
    await release_interrupted_syncs()
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        sync_all_connections,
        IntervalTrigger(minutes=settings.SYNC_INTERVAL_MINUTES),
        id="sync_all_connections",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info("scheduler.started", interval_minutes=settings.SYNC_INTERVAL_MINUTES, env=settings.APP_ENV)

    try:
        await sync_all_connections()
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        logger.info("scheduler.stopped")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m sync.scheduler",
        description="Indexador: sincronización de exchanges, reconciliación y valoración",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Arranca el scheduler periódico (por defecto)")

    sync_parser = subparsers.add_parser("sync", help="Sincroniza las conexiones una vez")
    sync_parser.add_argument("--full", action="store_true", help="Borra lo ingerido y reinicia el cursor")
    sync_parser.add_argument("--connection", type=uuid.UUID, help="Solo esta conexión")

    reconcile_parser = subparsers.add_parser("reconcile", help="Enlaza depósitos/retiros con on-chain")
    reconcile_parser.add_argument("--connection", type=uuid.UUID, help="Solo esta conexión")

    backfill_parser = subparsers.add_parser("backfill-prices", help="Rellena precios USD pendientes")
    backfill_parser.add_argument("--connection", type=uuid.UUID, help="Solo esta conexión")
    backfill_parser.add_argument("--limit", type=int, help="Máximo de flujos a procesar")

    ingest_parser = subparsers.add_parser("ingest", help="Ingiere payloads on-chain desde un JSON")
    ingest_parser.add_argument("file", type=Path, help="Fichero con un payload o una lista")
    ingest_parser.add_argument("--wallet", required=True, help="Id o dirección de la wallet")

    subparsers.add_parser("seed-tokens", help="Inserta los mappings de símbolos semilla")

    token_parser = subparsers.add_parser("map-token", help="Registra un mapping símbolo → mint descubierto")
    token_parser.add_argument("symbol")
    token_parser.add_argument("network")
    token_parser.add_argument("mint")
    token_parser.add_argument("decimals", type=int)

    unlink_parser = subparsers.add_parser("unlink", help="Deshace el enlace de una transacción y su pareja")
    unlink_parser.add_argument("transaction", type=uuid.UUID)

    return parser


async def async_main(args: argparse.Namespace) -> int:
    try:
        if args.command == "sync":
            await sync_all_connections(full=args.full, connection_id=args.connection)
        elif args.command == "reconcile":
            matched = await reconcile_connections(args.connection)
            logger.info("cli.reconcile_done", matched=matched)
        elif args.command == "backfill-prices":
            priced = await backfill_prices(args.connection, args.limit)
            logger.info("cli.backfill_done", priced=priced)
        elif args.command == "ingest":
            if not args.file.exists():
                logger.error("cli.file_not_found", file=str(args.file))
                return 1
            inserted = await ingest_file(args.file, args.wallet)
            logger.info("cli.ingest_done", inserted=inserted)
        elif args.command == "seed-tokens":
            await seed_tokens()
        elif args.command == "map-token":
            await add_token_mapping(args.symbol, args.network, args.mint, args.decimals)
        elif args.command == "unlink":
            unlinked = await unlink_transaction(args.transaction)
            logger.info("cli.unlink_done", transaction=str(args.transaction), rows=unlinked)
        else:
            await run_scheduler()
        return 0
    except KeyboardInterrupt:
        return 130


def main(argv: list[str] | None = None) -> int:
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    args = create_parser().parse_args(argv)
    try:
        return asyncio.run(async_main(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
