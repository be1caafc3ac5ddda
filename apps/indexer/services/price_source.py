"""
Fuentes de precio histórico diario en USD para el backfill de valoración.

- PriceSource: interfaz inyectable (los tests usan un stub determinista).
- CachedPriceSource: memoiza por (activo, día), incluidos los fallos.
- BinancePriceSource: velas diarias públicas de Binance con la tabla
  price_history como caché persistente y pausa entre llamadas.
"""

import asyncio
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Protocol

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from models.price_history import PriceHistory
from services.assets import is_fiat, is_usd_like
from sync.binance_client import BinanceAPIError, BinanceClient

logger = structlog.get_logger(__name__)

# Cotizaciones probadas en orden para activos no fiat
PRICE_QUOTES: tuple[str, ...] = ("USDT", "USDC", "BUSD", "FDUSD")

_DAY_MS = 24 * 60 * 60 * 1000


class PriceSource(Protocol):
    async def get_usd_price(self, asset: str, day: date) -> Decimal | None:
        """Precio de cierre diario en USD, o None si no hay dato."""
        ...


class CachedPriceSource:
    """Envuelve otra fuente y evita repetir consultas (asset, día) dentro de un run."""

    def __init__(self, inner: PriceSource) -> None:
        self._inner = inner
        self._cache: dict[tuple[str, date], Decimal | None] = {}

    async def get_usd_price(self, asset: str, day: date) -> Decimal | None:
        key = (asset.upper(), day)
        if key in self._cache:
            return self._cache[key]
        if is_usd_like(key[0]):
            price: Decimal | None = Decimal(1)
        else:
            price = await self._inner.get_usd_price(key[0], day)
        self._cache[key] = price
        return price

    @property
    def cache_size(self) -> int:
        return len(self._cache)


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _to_decimal(value: object) -> Decimal | None:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class BinancePriceSource:
    """
    Uso:
        async with BinanceClient() as client:
            source = CachedPriceSource(BinancePriceSource(client, db))
            price = await source.get_usd_price("SOL", date(2024, 3, 1))
    """

    def __init__(
        self,
        client: BinanceClient,
        db: AsyncSession | None = None,
        request_delay: float = 0.05,
    ) -> None:
        self._client = client
        self._db = db
        self._request_delay = request_delay

    async def get_usd_price(self, asset: str, day: date) -> Decimal | None:
        symbol = asset.upper()
        if is_usd_like(symbol):
            return Decimal(1)
        if is_fiat(symbol):
            return await self._fiat_rate(symbol, day)

        for quote in PRICE_QUOTES:
            close = await self._daily_close(f"{symbol}{quote}", day)
            if close is not None:
                return close
        logger.info("prices.not_found", asset=symbol, day=day.isoformat())
        return None

    async def _fiat_rate(self, currency: str, day: date) -> Decimal | None:
        """USD por unidad de fiat: par directo (EURUSDT) o inverso (USDTBRL)."""
        direct = await self._daily_close(f"{currency}USDT", day)
        if direct is not None:
            return direct
        inverse = await self._daily_close(f"USDT{currency}", day)
        if inverse is not None and inverse > 0:
            return Decimal(1) / inverse
        logger.info("prices.fiat_rate_not_found", currency=currency, day=day.isoformat())
        return None

    # -----------------------------------------------------------------------
    # Velas
    # -----------------------------------------------------------------------

    async def _daily_close(self, pair: str, day: date) -> Decimal | None:
        cached = await self._cached_close(pair, day)
        if cached is not None:
            return cached

        start_ms = int(_day_start(day).timestamp() * 1000)
        try:
            klines = await self._client.get_klines(
                pair, "1d", start_time=start_ms, end_time=start_ms + _DAY_MS - 1, limit=1
            )
        except BinanceAPIError as exc:
            # -1121 = símbolo inválido: el par no existe, se prueba el siguiente
            logger.debug("prices.pair_unavailable", pair=pair, code=exc.code)
            return None
        except httpx.HTTPError as exc:
            logger.warning("prices.request_failed", pair=pair, error=str(exc))
            return None
        finally:
            await asyncio.sleep(self._request_delay)

        if not klines:
            return None
        kline = klines[0]
        close = _to_decimal(kline[4])
        if close is None or close <= 0:
            return None
        await self._store(pair, kline)
        return close

    async def _cached_close(self, pair: str, day: date) -> Decimal | None:
        if self._db is None:
            return None
        result = await self._db.execute(
            select(PriceHistory.close).where(
                PriceHistory.symbol == pair,
                PriceHistory.interval == "1d",
                PriceHistory.open_at == _day_start(day),
            )
        )
        return result.scalar_one_or_none()

    async def _store(self, pair: str, kline: list) -> None:
        if self._db is None:
            return
        stmt = pg_insert(PriceHistory).values(
            symbol=pair,
            interval="1d",
            open_at=datetime.fromtimestamp(int(kline[0]) / 1000, tz=timezone.utc),
            open=Decimal(str(kline[1])),
            high=Decimal(str(kline[2])),
            low=Decimal(str(kline[3])),
            close=Decimal(str(kline[4])),
            volume=Decimal(str(kline[5])),
        )
        await self._db.execute(stmt.on_conflict_do_nothing(index_elements=["symbol", "interval", "open_at"]))
