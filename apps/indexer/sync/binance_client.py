"""
Cliente HTTP para la API REST de Binance.

Reglas:
- Autenticación HMAC-SHA256 en todos los endpoints privados
- Respetar X-MBX-USED-WEIGHT-1M; pausar si > 1100 (límite 1200)
- Backoff exponencial en 429/418, leer Retry-After header
- Paginación: myTrades por fromId, capital y fiat por ventana de 90 días,
  convert por ventana de 30 días, fiat y dividendos además por página
"""

import asyncio
import hashlib
import hmac
import time
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

logger = structlog.get_logger(__name__)

WEIGHT_LIMIT: int = 1200
WEIGHT_PAUSE_THRESHOLD: int = 1100  # pausar antes de llegar al límite
_DAY_MS: int = 24 * 60 * 60 * 1000
_90_DAYS_MS: int = 90 * _DAY_MS
_30_DAYS_MS: int = 30 * _DAY_MS


# ---------------------------------------------------------------------------
# Excepciones
# ---------------------------------------------------------------------------


class BinanceAPIError(Exception):
    def __init__(self, status_code: int, code: int, msg: str) -> None:
        self.status_code = status_code
        self.code = code
        self.msg = msg
        super().__init__(f"Binance error {code}: {msg} (HTTP {status_code})")


class BinanceRateLimitError(BinanceAPIError):
    def __init__(self, status_code: int, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__(status_code, -1003, f"Rate limit exceeded, retry after {retry_after}s")


class BinanceAuthError(BinanceAPIError):
    pass


# ---------------------------------------------------------------------------
# Rate limit manager
# ---------------------------------------------------------------------------


class RateLimitManager:
    """
    Rastrea X-MBX-USED-WEIGHT-1M de cada respuesta.
    Si el peso acumulado supera el umbral, pausa hasta el siguiente minuto.
    """

    def __init__(self) -> None:
        self._used_weight: int = 0

    def update(self, headers: httpx.Headers) -> None:
        raw = headers.get("X-MBX-USED-WEIGHT-1M")
        if raw:
            self._used_weight = int(raw)
            logger.debug("rate_limit.weight", used=self._used_weight, limit=WEIGHT_LIMIT)

    async def check(self) -> None:
        """Bloquea si estamos cerca del límite, esperando al siguiente minuto."""
        if self._used_weight >= WEIGHT_PAUSE_THRESHOLD:
            now = time.time()
            seconds_into_minute = now % 60
            wait = 60.0 - seconds_into_minute + 1.0  # +1s de margen
            logger.warning(
                "rate_limit.pause",
                used_weight=self._used_weight,
                threshold=WEIGHT_PAUSE_THRESHOLD,
                wait_seconds=round(wait, 1),
            )
            await asyncio.sleep(wait)
            self._used_weight = 0


# ---------------------------------------------------------------------------
# Cliente principal
# ---------------------------------------------------------------------------


def _time_windows(since_ms: int | None, window_ms: int) -> list[tuple[int, int]]:
    """Parte [since_ms, ahora] en ventanas consecutivas de window_ms."""
    now_ms = int(time.time() * 1000)
    window_start = since_ms if since_ms is not None else 0
    windows: list[tuple[int, int]] = []
    while window_start < now_ms:
        window_end = min(window_start + window_ms, now_ms)
        windows.append((window_start, window_end))
        window_start = window_end + 1
    return windows


class BinanceClient:
    """
    Cliente asíncrono para la API REST de Binance.

    Uso:
        async with BinanceClient(api_key, api_secret) as client:
            trades = await client.get_trades("SOLUSDT")

    Sin credenciales solo sirven los endpoints públicos (klines).
    El http_client es inyectable para facilitar tests unitarios.
    NUNCA loguear api_key ni api_secret.
    """

    MAX_RETRIES: int = 3
    BASE_BACKOFF: float = 2.0  # segundos

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        base_url: str = "https://api.binance.com",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        # Las credenciales se guardan en atributos privados y NUNCA se loguean
        self._api_key = api_key
        self._api_secret = api_secret
        self._base_url = base_url.rstrip("/")
        self._rate_limit = RateLimitManager()
        self._client = http_client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(30.0),
            headers={"X-MBX-APIKEY": self._api_key} if self._api_key else None,
        )

    async def __aenter__(self) -> "BinanceClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # -----------------------------------------------------------------------
    # Firma HMAC-SHA256
    # -----------------------------------------------------------------------

    def _sign(self, params: dict[str, Any]) -> dict[str, Any]:
        """
        Añade timestamp, recvWindow y firma HMAC-SHA256 a los parámetros.
        Devuelve un nuevo dict para evitar mutaciones inesperadas.
        """
        signed: dict[str, Any] = {
            **params,
            "timestamp": int(time.time() * 1000),
            "recvWindow": 5000,
        }
        query_string = urlencode(signed)
        signature = hmac.new(
            self._api_secret.encode("utf-8"),
            query_string.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        signed["signature"] = signature
        return signed

    # -----------------------------------------------------------------------
    # Request base con retry y rate limit
    # -----------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        signed: bool = True,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """
        Ejecuta una petición HTTP con:
        - Firma opcional (endpoints privados)
        - Comprobación de rate limit antes de enviar
        - Retry con backoff exponencial en 429/418 y errores de red
        """
        request_params = self._sign(dict(params or {})) if signed else dict(params or {})
        last_exc: Exception | None = None

        for attempt in range(self.MAX_RETRIES):
            await self._rate_limit.check()

            try:
                response = await self._client.request(method, path, params=request_params)
            except (httpx.TimeoutException, httpx.NetworkError) as exc:
                backoff = self.BASE_BACKOFF ** (attempt + 1)
                logger.warning(
                    "binance.network_error",
                    path=path,
                    attempt=attempt,
                    backoff=backoff,
                    error=str(exc),
                )
                last_exc = exc
                if attempt < self.MAX_RETRIES - 1:
                    await asyncio.sleep(backoff)
                continue

            self._rate_limit.update(response.headers)

            # Binance devuelve 429 al superar el límite y 418 cuando banea la IP
            if response.status_code in (429, 418):
                retry_after = int(response.headers.get("Retry-After", 60))
                logger.warning(
                    "binance.rate_limit_hit",
                    status=response.status_code,
                    retry_after=retry_after,
                    attempt=attempt,
                    path=path,
                )
                if attempt < self.MAX_RETRIES - 1:
                    await asyncio.sleep(retry_after)
                    # Re-firmar con nuevo timestamp tras la espera
                    if signed:
                        request_params = self._sign(dict(params or {}))
                    continue
                raise BinanceRateLimitError(response.status_code, retry_after)

            if response.status_code == 401:
                data = response.json()
                raise BinanceAuthError(401, data.get("code", -2014), data.get("msg", "Auth error"))

            if response.status_code >= 400:
                data = response.json()
                raise BinanceAPIError(
                    response.status_code,
                    data.get("code", -1),
                    data.get("msg", "Unknown error"),
                )

            return response.json()

        raise last_exc or RuntimeError(f"Max retries exceeded for {path}")

    @staticmethod
    def _time_params(start_time: int | None, end_time: int | None, *, begin_key: str = "startTime") -> dict[str, Any]:
        params: dict[str, Any] = {}
        if start_time is not None:
            params[begin_key] = start_time
        if end_time is not None:
            params["endTime"] = end_time
        return params

    # -----------------------------------------------------------------------
    # Endpoints públicos
    # -----------------------------------------------------------------------

    async def get_klines(
        self,
        symbol: str,
        interval: str,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int = 1000,
    ) -> list[list]:
        """
        GET /api/v3/klines — OHLCV histórico. Endpoint público, sin firma.
        Cada vela: [openTime, open, high, low, close, volume, closeTime, ...]
        """
        params: dict[str, Any] = {"symbol": symbol, "interval": interval, "limit": limit}
        params.update(self._time_params(start_time, end_time))
        return await self._request("GET", "/api/v3/klines", signed=False, params=params)

    # -----------------------------------------------------------------------
    # Endpoints privados — trades spot (fase 1)
    # -----------------------------------------------------------------------

    async def get_trades(
        self,
        symbol: str,
        from_id: int | None = None,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int = 1000,
    ) -> list[dict]:
        """
        GET /api/v3/myTrades — trades para un par.
        Máximo 1000 por request. fromId tiene prioridad y descarta startTime/endTime.
        """
        params: dict[str, Any] = {"symbol": symbol, "limit": limit}
        if from_id is not None:
            params["fromId"] = from_id
        else:
            params.update(self._time_params(start_time, end_time))
        return await self._request("GET", "/api/v3/myTrades", params=params)

    async def get_all_trades(
        self,
        symbol: str,
        from_id: int | None = None,
    ) -> AsyncIterator[list[dict]]:
        """Paginación incremental por fromId. Yield: lotes de hasta 1000 trades."""
        current_from_id = from_id
        while True:
            batch = await self.get_trades(symbol, from_id=current_from_id)
            if not batch:
                break
            yield batch
            if len(batch) < 1000:
                break
            current_from_id = int(batch[-1]["id"]) + 1

    async def get_all_trades_by_time(
        self,
        symbol: str,
        start_time_ms: int = 0,
    ) -> AsyncIterator[list[dict]]:
        """
        Historial completo desde start_time_ms. Solo startTime (sin endTime)
        para esquivar el límite de 24 h de la API (-1127).
        """
        current_start = start_time_ms
        while True:
            batch = await self.get_trades(symbol, start_time=current_start)
            if not batch:
                break
            yield batch
            if len(batch) < 1000:
                break
            current_start = int(batch[-1]["time"]) + 1

    # -----------------------------------------------------------------------
    # Endpoints privados — depósitos y retiros de cripto (fase 2)
    # -----------------------------------------------------------------------

    async def get_deposits(
        self,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int = 1000,
    ) -> list[dict]:
        """GET /sapi/v1/capital/deposit/hisrec — depósitos de cripto."""
        params: dict[str, Any] = {"limit": limit, **self._time_params(start_time, end_time)}
        return await self._request("GET", "/sapi/v1/capital/deposit/hisrec", params=params)

    async def get_all_deposits(self, since_ms: int | None = None) -> AsyncIterator[list[dict]]:
        """Itera depósitos en ventanas de 90 días (límite de la API) hasta ahora."""
        for window_start, window_end in _time_windows(since_ms, _90_DAYS_MS):
            batch = await self.get_deposits(start_time=window_start, end_time=window_end)
            if batch:
                yield batch

    async def get_withdrawals(
        self,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int = 1000,
    ) -> list[dict]:
        """GET /sapi/v1/capital/withdraw/history — retiros de cripto."""
        params: dict[str, Any] = {"limit": limit, **self._time_params(start_time, end_time)}
        return await self._request("GET", "/sapi/v1/capital/withdraw/history", params=params)

    async def get_all_withdrawals(self, since_ms: int | None = None) -> AsyncIterator[list[dict]]:
        """Itera retiros en ventanas de 90 días."""
        for window_start, window_end in _time_windows(since_ms, _90_DAYS_MS):
            batch = await self.get_withdrawals(start_time=window_start, end_time=window_end)
            if batch:
                yield batch

    # -----------------------------------------------------------------------
    # Endpoints privados — fiat (fase 3)
    # -----------------------------------------------------------------------

    async def get_fiat_orders(
        self,
        transaction_type: int,
        begin_time: int | None = None,
        end_time: int | None = None,
        page: int = 1,
        rows: int = 500,
    ) -> dict:
        """
        GET /sapi/v1/fiat/orders — depósitos (0) y retiros (1) bancarios.
        Requiere permiso "Enable Fiat" en el API Key.
        """
        params: dict[str, Any] = {
            "transactionType": transaction_type,
            "page": page,
            "rows": rows,
            **self._time_params(begin_time, end_time, begin_key="beginTime"),
        }
        return await self._request("GET", "/sapi/v1/fiat/orders", params=params)

    async def get_fiat_payments(
        self,
        transaction_type: int,
        begin_time: int | None = None,
        end_time: int | None = None,
        page: int = 1,
        rows: int = 500,
    ) -> dict:
        """
        GET /sapi/v1/fiat/payments — compras (0) y ventas (1) de cripto con tarjeta/fiat.
        Cada fila: sourceAmount, fiatCurrency, obtainAmount, cryptoCurrency, totalFee, price.
        """
        params: dict[str, Any] = {
            "transactionType": transaction_type,
            "page": page,
            "rows": rows,
            **self._time_params(begin_time, end_time, begin_key="beginTime"),
        }
        return await self._request("GET", "/sapi/v1/fiat/payments", params=params)

    async def _paginate_fiat(self, fetch, transaction_type: int, since_ms: int | None) -> AsyncIterator[list[dict]]:
        for window_start, window_end in _time_windows(since_ms, _90_DAYS_MS):
            page = 1
            while True:
                result = await fetch(
                    transaction_type=transaction_type,
                    begin_time=window_start,
                    end_time=window_end,
                    page=page,
                )
                data: list[dict] = result.get("data") or []
                if not data:
                    break
                yield data
                if len(data) < 500:
                    break
                page += 1

    def get_all_fiat_orders(self, transaction_type: int, since_ms: int | None = None) -> AsyncIterator[list[dict]]:
        """
        Itera órdenes fiat en ventanas de 90 días y páginas de 500.
        Sin permiso fiat la llamada lanza BinanceAPIError (-2015) que el caller captura.
        """
        return self._paginate_fiat(self.get_fiat_orders, transaction_type, since_ms)

    def get_all_fiat_payments(self, transaction_type: int, since_ms: int | None = None) -> AsyncIterator[list[dict]]:
        """Itera compras/ventas de cripto con fiat en ventanas de 90 días."""
        return self._paginate_fiat(self.get_fiat_payments, transaction_type, since_ms)

    # -----------------------------------------------------------------------
    # Endpoints privados — convert, dust y dividendos (fase 4)
    # -----------------------------------------------------------------------

    async def get_convert_history(self, start_time: int, end_time: int, limit: int = 1000) -> dict:
        """
        GET /sapi/v1/convert/tradeFlow — conversiones. Ventana máxima de 30 días.
        Respuesta: {"list": [{quoteId, orderId, orderStatus, fromAsset, fromAmount,
        toAsset, toAmount, ratio, createTime}], "moreData": bool}
        """
        params = {"startTime": start_time, "endTime": end_time, "limit": limit}
        return await self._request("GET", "/sapi/v1/convert/tradeFlow", params=params)

    async def get_all_convert_history(self, since_ms: int | None = None) -> AsyncIterator[list[dict]]:
        for window_start, window_end in _time_windows(since_ms, _30_DAYS_MS):
            result = await self.get_convert_history(window_start, window_end)
            rows: list[dict] = result.get("list") or []
            if rows:
                yield rows

    async def get_dust_log(self, start_time: int | None = None, end_time: int | None = None) -> dict:
        """
        GET /sapi/v1/asset/dribblet — conversiones de saldos pequeños a BNB.
        Respuesta: {"userAssetDribblets": [{operateTime, transId, totalTransferedAmount,
        userAssetDribbletDetails: [{fromAsset, amount, transferedAmount, serviceChargeAmount}]}]}
        """
        return await self._request("GET", "/sapi/v1/asset/dribblet", params=self._time_params(start_time, end_time))

    async def get_all_dust_log(self, since_ms: int | None = None) -> AsyncIterator[list[dict]]:
        for window_start, window_end in _time_windows(since_ms, _90_DAYS_MS):
            result = await self.get_dust_log(window_start, window_end)
            rows: list[dict] = result.get("userAssetDribblets") or []
            if rows:
                yield rows

    async def get_asset_dividends(
        self,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int = 500,
    ) -> dict:
        """
        GET /sapi/v1/asset/assetDividend — distribuciones (staking, earn, airdrops).
        Respuesta: {"rows": [{id, amount, asset, divTime, enInfo, tranId}], "total": n}
        """
        params: dict[str, Any] = {"limit": limit, **self._time_params(start_time, end_time)}
        return await self._request("GET", "/sapi/v1/asset/assetDividend", params=params)

    async def get_all_asset_dividends(self, since_ms: int | None = None) -> AsyncIterator[list[dict]]:
        """
        Ventanas de 90 días; si una ventana llena el límite de 500 se avanza el
        inicio al divTime más reciente + 1 ms dentro de la misma ventana.
        """
        for window_start, window_end in _time_windows(since_ms, _90_DAYS_MS):
            current_start = window_start
            while current_start < window_end:
                result = await self.get_asset_dividends(current_start, window_end)
                rows: list[dict] = result.get("rows") or []
                if not rows:
                    break
                yield rows
                if len(rows) < 500:
                    break
                current_start = max(int(r["divTime"]) for r in rows) + 1
