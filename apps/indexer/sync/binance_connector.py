"""
Conector de Binance: descarga el historial por fases y lo normaliza a ExchangeRecord.

Fases (en este orden):
  phase1 — trades spot por par (cursor: próximo fromId por par)
  phase2 — depósitos y retiros de cripto
  phase3 — órdenes fiat (banco) y pagos fiat (compra/venta de cripto)
  phase4 — convert, dust → BNB y distribuciones (staking / earn)

Cada fase recibe el cursor previo y devuelve los registros junto al cursor
nuevo. Las fases por ventana temporal guardan el fin de la ventana y al
reanudar solapan un día: la deduplicación por external_id absorbe repeticiones.
"""

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import structlog

from services.assets import is_usd_like
from services.exchange_mapper import ExchangeRecord, ExchangeRecordType, parse_timestamp, split_trade_pair
from services.flows import to_decimal
from sync.binance_client import BinanceAPIError, BinanceClient

logger = structlog.get_logger(__name__)

PHASES: tuple[str, ...] = ("phase1", "phase2", "phase3", "phase4")

# Solape al reanudar fases por ventana temporal
RESUME_OVERLAP_MS = 24 * 60 * 60 * 1000

# -2015 = API-key sin permiso; -1002 = no autorizado; -2014 = formato de key inválido
FIAT_PERMISSION_CODES = (-2015, -1002, -2014)

# Estados de éxito de la API
_DEPOSIT_SUCCESS = {1, 6}
_WITHDRAWAL_SUCCESS = {6}
_FIAT_ORDER_SUCCESS = {"Successful", "Completed"}
_CONVERT_SUCCESS = {"SUCCESS"}

# Prefijos de txId que no corresponden a una transacción on-chain
_OFFCHAIN_TX_PREFIXES = ("Internal transfer", "Off-chain transfer")

# Palabras de enInfo que indican una distribución y no un rendimiento
_DIVIDEND_HINTS = ("airdrop", "distribution", "dividend")


@dataclass
class PhaseResult:
    records: list[ExchangeRecord] = field(default_factory=list)
    cursor: dict[str, Any] = field(default_factory=dict)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _resume_from(cursor: Mapping[str, Any], key: str, default_ms: int) -> int:
    last = cursor.get(key)
    if last is None:
        return default_ms
    return max(default_ms, int(last) - RESUME_OVERLAP_MS)


def _onchain_tx_id(raw_tx_id: Any) -> str | None:
    if not raw_tx_id:
        return None
    tx_id = str(raw_tx_id).strip()
    if not tx_id or tx_id.startswith(_OFFCHAIN_TX_PREFIXES):
        return None
    return tx_id


# ---------------------------------------------------------------------------
# Mapeo de payloads crudos → ExchangeRecord
# ---------------------------------------------------------------------------


def map_trade(raw: Mapping[str, Any], symbol: str) -> ExchangeRecord:
    """/api/v3/myTrades no devuelve baseAsset/quoteAsset: se parten del par."""
    pair = raw.get("symbol", symbol)
    base, quote = split_trade_pair(pair)
    qty = Decimal(str(raw["qty"]))
    price = Decimal(str(raw["price"]))
    quote_qty = to_decimal(raw.get("quoteQty")) or (price * qty)
    usd_quote = is_usd_like(quote)
    return ExchangeRecord(
        external_id=f"trade-{pair}-{raw['id']}",
        type=ExchangeRecordType.TRADE,
        timestamp=parse_timestamp(int(raw["time"])),
        asset=base or pair,
        amount=qty,
        price_usd=price if usd_quote else None,
        total_value_usd=quote_qty if usd_quote else None,
        fee_amount=to_decimal(raw.get("commission")),
        fee_asset=raw.get("commissionAsset"),
        side="BUY" if raw.get("isBuyer") else "SELL",
        trade_pair=pair,
        quote_asset=quote,
        quote_amount=quote_qty,
        raw_data=dict(raw),
    )


def map_deposit(raw: Mapping[str, Any]) -> ExchangeRecord:
    return ExchangeRecord(
        external_id=f"deposit-{raw.get('id') or raw.get('txId')}",
        type=ExchangeRecordType.DEPOSIT,
        timestamp=parse_timestamp(int(raw["insertTime"])),
        asset=raw["coin"],
        amount=Decimal(str(raw["amount"])),
        network=raw.get("network"),
        tx_id=_onchain_tx_id(raw.get("txId")),
        raw_data=dict(raw),
    )


def map_withdrawal(raw: Mapping[str, Any]) -> ExchangeRecord:
    # applyTime llega como "YYYY-MM-DD HH:MM:SS" en UTC
    return ExchangeRecord.from_dict({
        "external_id": f"withdrawal-{raw['id']}",
        "type": ExchangeRecordType.WITHDRAWAL.value,
        "timestamp": raw["applyTime"],
        "asset": raw["coin"],
        "amount": raw["amount"],
        "fee_amount": raw.get("transactionFee"),
        "fee_asset": raw["coin"],
        "network": raw.get("network"),
        "tx_id": _onchain_tx_id(raw.get("txId")),
        "raw_data": dict(raw),
    })


def map_fiat_order(raw: Mapping[str, Any], transaction_type: int) -> ExchangeRecord:
    """Movimiento bancario: el mapper lo reclasifica a FIAT_BUY/FIAT_SELL por ser fiat."""
    record_type = ExchangeRecordType.DEPOSIT if transaction_type == 0 else ExchangeRecordType.WITHDRAWAL
    return ExchangeRecord.from_dict({
        "external_id": f"fiat-order-{raw['orderNo']}",
        "type": record_type.value,
        "timestamp": raw["createTime"],
        "asset": raw.get("fiatCurrency", "EUR"),
        "amount": raw.get("amount") or raw.get("indicatedAmount"),
        "fee_amount": raw.get("totalFee"),
        "fee_asset": raw.get("fiatCurrency"),
        "raw_data": dict(raw),
    })


def map_fiat_payment(raw: Mapping[str, Any], transaction_type: int) -> ExchangeRecord:
    """Compra (0) o venta (1) de cripto pagada/cobrada en fiat."""
    buy = transaction_type == 0
    fiat = raw.get("fiatCurrency")
    crypto_amount = raw.get("obtainAmount") if buy else raw.get("sourceAmount")
    fiat_amount = raw.get("sourceAmount") if buy else raw.get("obtainAmount")
    return ExchangeRecord.from_dict({
        "external_id": f"fiat-payment-{raw['orderNo']}",
        "type": (ExchangeRecordType.FIAT_BUY if buy else ExchangeRecordType.FIAT_SELL).value,
        "timestamp": raw["createTime"],
        "asset": raw["cryptoCurrency"],
        "amount": crypto_amount,
        "price_usd": raw.get("price") if is_usd_like(fiat) else None,
        "quote_asset": fiat,
        "quote_amount": fiat_amount,
        "fee_amount": raw.get("totalFee"),
        "fee_asset": fiat,
        "raw_data": dict(raw),
    })


def map_convert(raw: Mapping[str, Any]) -> ExchangeRecord:
    return ExchangeRecord.from_dict({
        "external_id": f"convert-{raw.get('orderId') or raw.get('quoteId')}",
        "type": ExchangeRecordType.CONVERT.value,
        "timestamp": raw["createTime"],
        "asset": raw["fromAsset"],
        "amount": raw["fromAmount"],
        "quote_asset": raw["toAsset"],
        "quote_amount": raw["toAmount"],
        "raw_data": dict(raw),
    })


def map_dust(dribblet: Mapping[str, Any]) -> list[ExchangeRecord]:
    """Un registro DUST_CONVERT por activo convertido a BNB."""
    records = []
    for detail in dribblet.get("userAssetDribbletDetails") or []:
        trans_id = detail.get("transId") or dribblet.get("transId")
        records.append(ExchangeRecord.from_dict({
            "external_id": f"dust-{trans_id}-{detail['fromAsset']}",
            "type": ExchangeRecordType.DUST_CONVERT.value,
            "timestamp": detail.get("operateTime") or dribblet["operateTime"],
            "asset": detail["fromAsset"],
            "amount": detail["amount"],
            "quote_asset": "BNB",
            "quote_amount": detail.get("transferedAmount"),
            "fee_amount": detail.get("serviceChargeAmount"),
            "fee_asset": "BNB",
            "raw_data": dict(detail),
        }))
    return records


def map_dividend(raw: Mapping[str, Any]) -> ExchangeRecord:
    info = str(raw.get("enInfo") or "").lower()
    is_dividend = any(hint in info for hint in _DIVIDEND_HINTS)
    return ExchangeRecord.from_dict({
        "external_id": f"dividend-{raw.get('tranId') or raw.get('id')}",
        "type": (ExchangeRecordType.DIVIDEND if is_dividend else ExchangeRecordType.INTEREST).value,
        "timestamp": raw["divTime"],
        "asset": raw["asset"],
        "amount": raw["amount"],
        "raw_data": dict(raw),
    })


# ---------------------------------------------------------------------------
# Conector
# ---------------------------------------------------------------------------


class BinanceConnector:
    """
    Uso:
        connector = BinanceConnector(client, symbols=["SOLUSDT"])
        result = await connector.run_phase("phase2", cursor.get("phase2", {}))
    """

    exchange_name = "binance"

    def __init__(
        self,
        client: BinanceClient,
        symbols: list[str] | None = None,
        history_start_ms: int = 1_609_459_200_000,
    ) -> None:
        self._client = client
        self._symbols = [s.upper() for s in (symbols or [])]
        self._history_start_ms = history_start_ms

    async def run_phase(self, phase: str, cursor: Mapping[str, Any] | None = None) -> PhaseResult:
        handlers = {
            "phase1": self.fetch_trades,
            "phase2": self.fetch_transfers,
            "phase3": self.fetch_fiat,
            "phase4": self.fetch_earn_and_convert,
        }
        if phase not in handlers:
            raise ValueError(f"Fase desconocida: {phase}")
        return await handlers[phase](dict(cursor or {}))

    # -----------------------------------------------------------------------
    # Fase 1: trades
    # -----------------------------------------------------------------------

    async def fetch_trades(self, cursor: dict[str, Any]) -> PhaseResult:
        result = PhaseResult(cursor=dict(cursor))
        for symbol in self._symbols:
            next_id = cursor.get(symbol)
            if next_id is None:
                batches = self._client.get_all_trades_by_time(symbol, start_time_ms=self._history_start_ms)
            else:
                batches = self._client.get_all_trades(symbol, from_id=int(next_id))

            count = 0
            async for batch in batches:
                result.records.extend(map_trade(t, symbol) for t in batch)
                result.cursor[symbol] = max(int(t["id"]) for t in batch) + 1
                count += len(batch)
            logger.info("binance.trades_fetched", symbol=symbol, count=count)
        return result

    # -----------------------------------------------------------------------
    # Fase 2: depósitos y retiros
    # -----------------------------------------------------------------------

    async def fetch_transfers(self, cursor: dict[str, Any]) -> PhaseResult:
        result = PhaseResult(cursor=dict(cursor))
        window_end = _now_ms()

        async for batch in self._client.get_all_deposits(
            since_ms=_resume_from(cursor, "deposits", self._history_start_ms)
        ):
            result.records.extend(map_deposit(d) for d in batch if d.get("status") in _DEPOSIT_SUCCESS)
        result.cursor["deposits"] = window_end

        async for batch in self._client.get_all_withdrawals(
            since_ms=_resume_from(cursor, "withdrawals", self._history_start_ms)
        ):
            result.records.extend(map_withdrawal(w) for w in batch if w.get("status") in _WITHDRAWAL_SUCCESS)
        result.cursor["withdrawals"] = window_end

        logger.info("binance.transfers_fetched", count=len(result.records))
        return result

    # -----------------------------------------------------------------------
    # Fase 3: fiat
    # -----------------------------------------------------------------------

    async def fetch_fiat(self, cursor: dict[str, Any]) -> PhaseResult:
        """
        Requiere el permiso "Enable Fiat" en el API Key. Sin él Binance responde
        -2015 y la fase se da por vacía con un warning (no es un error del sync).
        """
        result = PhaseResult(cursor=dict(cursor))
        window_end = _now_ms()

        streams = (
            ("fiat_deposits", self._client.get_all_fiat_orders, 0, map_fiat_order),
            ("fiat_withdrawals", self._client.get_all_fiat_orders, 1, map_fiat_order),
            ("fiat_buys", self._client.get_all_fiat_payments, 0, map_fiat_payment),
            ("fiat_sells", self._client.get_all_fiat_payments, 1, map_fiat_payment),
        )
        for key, fetch, transaction_type, mapper in streams:
            try:
                async for batch in fetch(transaction_type, since_ms=_resume_from(cursor, key, self._history_start_ms)):
                    result.records.extend(
                        mapper(item, transaction_type) for item in batch if item.get("status") in _FIAT_ORDER_SUCCESS
                    )
            except BinanceAPIError as exc:
                if exc.code in FIAT_PERMISSION_CODES:
                    logger.warning(
                        "binance.fiat_permission_missing",
                        stream=key,
                        error_code=exc.code,
                        hint="El API Key necesita el permiso 'Enable Fiat' para importar el historial fiat.",
                    )
                    continue
                raise
            result.cursor[key] = window_end

        logger.info("binance.fiat_fetched", count=len(result.records))
        return result

    # -----------------------------------------------------------------------
    # Fase 4: convert, dust y distribuciones
    # -----------------------------------------------------------------------

    async def fetch_earn_and_convert(self, cursor: dict[str, Any]) -> PhaseResult:
        result = PhaseResult(cursor=dict(cursor))
        window_end = _now_ms()

        async for batch in self._client.get_all_convert_history(
            since_ms=_resume_from(cursor, "convert", self._history_start_ms)
        ):
            result.records.extend(map_convert(c) for c in batch if c.get("orderStatus") in _CONVERT_SUCCESS)
        result.cursor["convert"] = window_end

        async for batch in self._client.get_all_dust_log(
            since_ms=_resume_from(cursor, "dust", self._history_start_ms)
        ):
            for dribblet in batch:
                result.records.extend(map_dust(dribblet))
        result.cursor["dust"] = window_end

        async for batch in self._client.get_all_asset_dividends(
            since_ms=_resume_from(cursor, "dividends", self._history_start_ms)
        ):
            result.records.extend(map_dividend(d) for d in batch)
        result.cursor["dividends"] = window_end

        logger.info("binance.earn_convert_fetched", count=len(result.records))
        return result
