"""
Mapper de registros de exchange → transacción canónica + flujos.

Cada ExchangeRecordType tiene una regla fija de generación de flujos. El
mapper es puro y re-invocable: la deduplicación por (connection_id,
external_id) es responsabilidad del llamador antes de persistir.
"""

import enum
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import structlog

from models.transaction import (
    CATEGORY_BY_TYPE,
    FlowDirection,
    TransactionCategory,
    TransactionType,
)
from services.assets import is_fiat
from services.flows import FlowData, make_flow, max_non_fee_value, to_decimal
from services.summary import SummaryContext, build_summary
from services.token_resolver import TokenResolver

logger = structlog.get_logger(__name__)

_T = TransactionType
_IN, _OUT = FlowDirection.IN, FlowDirection.OUT

# Sufijos de cotización reconocidos al partir pares sin separador ("SOLUSDC")
QUOTE_SUFFIXES: tuple[str, ...] = (
    "USDT", "USDC", "BUSD", "FDUSD", "BTC", "ETH", "BNB", "BRL", "EUR", "USD", "TRY",
)


class ExchangeRecordType(str, enum.Enum):
    TRADE = "TRADE"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    FIAT_BUY = "FIAT_BUY"
    FIAT_SELL = "FIAT_SELL"
    CONVERT = "CONVERT"
    DUST_CONVERT = "DUST_CONVERT"
    C2C_TRADE = "C2C_TRADE"
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    INTEREST = "INTEREST"
    MINING = "MINING"
    DIVIDEND = "DIVIDEND"
    MARGIN_BORROW = "MARGIN_BORROW"
    MARGIN_REPAY = "MARGIN_REPAY"
    MARGIN_INTEREST = "MARGIN_INTEREST"
    MARGIN_LIQUIDATION = "MARGIN_LIQUIDATION"


def parse_timestamp(value: Any) -> datetime:
    """Acepta datetime, epoch en ms/s o ISO-8601. Siempre devuelve UTC aware."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        number = float(value)
        # Binance devuelve milisegundos
        seconds = number / 1000 if number > 10_000_000_000 else number
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ExchangeRecord:
    """Registro crudo normalizado por el conector del exchange."""

    external_id: str | None
    type: ExchangeRecordType | str
    timestamp: datetime
    asset: str
    amount: Decimal
    price_usd: Decimal | None = None
    total_value_usd: Decimal | None = None
    fee_amount: Decimal | None = None
    fee_asset: str | None = None
    side: str | None = None
    trade_pair: str | None = None
    quote_asset: str | None = None
    quote_amount: Decimal | None = None
    network: str | None = None
    tx_id: str | None = None
    raw_data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExchangeRecord":
        """Construye desde un dict con claves snake_case o camelCase."""

        def pick(*keys: str) -> Any:
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        raw_type = str(pick("type") or "").upper()
        try:
            record_type: ExchangeRecordType | str = ExchangeRecordType(raw_type)
        except ValueError:
            record_type = raw_type

        return cls(
            external_id=pick("external_id", "externalId"),
            type=record_type,
            timestamp=parse_timestamp(pick("timestamp")),
            asset=str(pick("asset") or ""),
            amount=to_decimal(pick("amount")) or Decimal(0),
            price_usd=to_decimal(pick("price_usd", "priceUsd")),
            total_value_usd=to_decimal(pick("total_value_usd", "totalValueUsd")),
            fee_amount=to_decimal(pick("fee_amount", "feeAmount")),
            fee_asset=pick("fee_asset", "feeAsset"),
            side=pick("side"),
            trade_pair=pick("trade_pair", "tradePair"),
            quote_asset=pick("quote_asset", "quoteAsset"),
            quote_amount=to_decimal(pick("quote_amount", "quoteAmount")),
            network=pick("network"),
            tx_id=pick("tx_id", "txId"),
            raw_data=dict(pick("raw_data", "rawData") or {}),
        )


@dataclass(frozen=True)
class MappedTransaction:
    exchange_connection_id: uuid.UUID | None
    external_id: str
    tx_type: TransactionType
    category: TransactionCategory
    timestamp: datetime
    flows: tuple[FlowData, ...]
    summary: str
    fee: Decimal | None = None
    total_value_usd: Decimal | None = None
    onchain_reference: str | None = None
    raw_data: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def split_trade_pair(trade_pair: str | None, base_asset: str | None = None) -> tuple[str | None, str | None]:
    """
    "SOL/USDC" → ("SOL", "USDC"); "SOLUSDC" → ("SOL", "USDC") por sufijo
    conocido. Devuelve (None, None) si no se puede partir.
    """
    if not trade_pair:
        return None, None
    pair = trade_pair.strip().upper()
    for separator in ("/", "-", "_"):
        if separator in pair:
            base, _, quote = pair.partition(separator)
            return base or None, quote or None
    if base_asset and pair.startswith(base_asset.upper()) and len(pair) > len(base_asset):
        return base_asset.upper(), pair[len(base_asset):]
    for suffix in QUOTE_SUFFIXES:
        if pair.endswith(suffix) and len(pair) > len(suffix):
            return pair[: -len(suffix)], suffix
    return None, None


def quote_asset_of(record: ExchangeRecord) -> str | None:
    if record.quote_asset:
        return record.quote_asset.upper()
    return split_trade_pair(record.trade_pair, record.asset)[1]


def _external_id(record: ExchangeRecord, exchange_name: str) -> str:
    if record.external_id:
        return str(record.external_id)
    type_tag = record.type.value if isinstance(record.type, ExchangeRecordType) else record.type
    return f"{exchange_name}-{type_tag}-{int(record.timestamp.timestamp() * 1000)}"


def _transaction_fee(record: ExchangeRecord) -> Decimal | None:
    """Transaction.fee no lleva unidad: solo se guarda si la comisión es del activo principal."""
    if record.fee_amount is None or record.fee_amount <= 0:
        return None
    if record.fee_asset and record.fee_asset.upper() != record.asset.upper():
        return None
    return record.fee_amount


class _FlowBuilder:
    """Acumula flujos resueltos para un registro; descarta patas con importe cero."""

    def __init__(self, record: ExchangeRecord, resolver: TokenResolver) -> None:
        self._record = record
        self._resolver = resolver
        self.flows: list[FlowData] = []

    def add(
        self,
        symbol: str | None,
        amount: Decimal | None,
        direction: FlowDirection,
        *,
        price_usd: Decimal | None = None,
        is_fee: bool = False,
        network: str | None = None,
    ) -> None:
        if not symbol or amount is None:
            return
        token = self._resolver.resolve(symbol, network)
        flow = make_flow(
            token.mint,
            token.symbol,
            token.decimals,
            amount,
            direction,
            network=token.network,
            price_usd=price_usd,
            is_fee=is_fee,
        )
        if flow is not None:
            self.flows.append(flow)

    def base(self, direction: FlowDirection) -> None:
        record = self._record
        self.add(record.asset, record.amount, direction, price_usd=record.price_usd, network=record.network)

    def quote(self, direction: FlowDirection) -> None:
        self.add(quote_asset_of(self._record), self._record.quote_amount, direction)

    def fee(self) -> None:
        record = self._record
        if record.fee_amount is None or not record.fee_asset:
            return
        # El precio del activo base solo vale para la comisión si es el mismo activo
        same_asset = record.fee_asset.upper() == record.asset.upper()
        self.add(
            record.fee_asset,
            record.fee_amount,
            _OUT,
            price_usd=record.price_usd if same_asset else None,
            is_fee=True,
        )


# ---------------------------------------------------------------------------
# Reglas por tipo de registro
# ---------------------------------------------------------------------------


def _is_buy(record: ExchangeRecord) -> bool:
    return (record.side or "").strip().upper() == "BUY"


def _trade(record: ExchangeRecord, flows: _FlowBuilder) -> TransactionType:
    buy = _is_buy(record)
    flows.base(_IN if buy else _OUT)
    flows.quote(_OUT if buy else _IN)
    flows.fee()
    return _T.EXCHANGE_C2C_TRADE if record.type == ExchangeRecordType.C2C_TRADE else _T.EXCHANGE_TRADE


def _deposit(record: ExchangeRecord, flows: _FlowBuilder) -> TransactionType:
    flows.base(_IN)
    return _T.EXCHANGE_FIAT_BUY if is_fiat(record.asset) else _T.EXCHANGE_DEPOSIT


def _withdrawal(record: ExchangeRecord, flows: _FlowBuilder) -> TransactionType:
    flows.base(_OUT)
    return _T.EXCHANGE_FIAT_SELL if is_fiat(record.asset) else _T.EXCHANGE_WITHDRAWAL


def _fiat_buy(record: ExchangeRecord, flows: _FlowBuilder) -> TransactionType:
    flows.base(_IN)
    flows.quote(_OUT)
    flows.fee()
    return _T.EXCHANGE_FIAT_BUY


def _fiat_sell(record: ExchangeRecord, flows: _FlowBuilder) -> TransactionType:
    flows.base(_OUT)
    flows.quote(_IN)
    flows.fee()
    return _T.EXCHANGE_FIAT_SELL


def _convert(record: ExchangeRecord, flows: _FlowBuilder) -> TransactionType:
    flows.base(_OUT)
    flows.quote(_IN)
    flows.fee()
    return _T.EXCHANGE_DUST_CONVERT if record.type == ExchangeRecordType.DUST_CONVERT else _T.EXCHANGE_CONVERT


def _stake(record: ExchangeRecord, flows: _FlowBuilder) -> TransactionType:
    flows.base(_OUT)
    flows.quote(_IN)
    return _T.EXCHANGE_STAKE


def _unstake(record: ExchangeRecord, flows: _FlowBuilder) -> TransactionType:
    flows.base(_IN)
    flows.quote(_OUT)
    return _T.EXCHANGE_UNSTAKE


def _single(direction: FlowDirection, tx_type: TransactionType) -> Callable[[ExchangeRecord, _FlowBuilder], TransactionType]:
    def rule(record: ExchangeRecord, flows: _FlowBuilder) -> TransactionType:
        flows.base(direction)
        return tx_type

    return rule


def _liquidation(record: ExchangeRecord, flows: _FlowBuilder) -> TransactionType:
    flows.base(_OUT)
    flows.quote(_IN)
    flows.fee()
    return _T.MARGIN_LIQUIDATION


_R = ExchangeRecordType

RECORD_RULES: dict[ExchangeRecordType, Callable[[ExchangeRecord, _FlowBuilder], TransactionType]] = {
    _R.TRADE: _trade,
    _R.C2C_TRADE: _trade,
    _R.DEPOSIT: _deposit,
    _R.WITHDRAWAL: _withdrawal,
    _R.FIAT_BUY: _fiat_buy,
    _R.FIAT_SELL: _fiat_sell,
    _R.CONVERT: _convert,
    _R.DUST_CONVERT: _convert,
    _R.STAKE: _stake,
    _R.UNSTAKE: _unstake,
    _R.INTEREST: _single(_IN, _T.EXCHANGE_INTEREST),
    _R.MINING: _single(_IN, _T.EXCHANGE_INTEREST),
    _R.DIVIDEND: _single(_IN, _T.EXCHANGE_DIVIDEND),
    _R.MARGIN_BORROW: _single(_IN, _T.MARGIN_BORROW),
    _R.MARGIN_REPAY: _single(_OUT, _T.MARGIN_REPAY),
    _R.MARGIN_INTEREST: _single(_OUT, _T.MARGIN_INTEREST),
    _R.MARGIN_LIQUIDATION: _liquidation,
}


def map_record(
    record: ExchangeRecord,
    connection_id: uuid.UUID | None,
    resolver: TokenResolver,
    exchange_name: str = "binance",
) -> MappedTransaction | None:
    """
    Registro → MappedTransaction, o None si el tipo no es reconocido o el
    registro no produce ningún flujo con importe positivo.
    """
    rule = RECORD_RULES.get(record.type) if isinstance(record.type, ExchangeRecordType) else None
    if rule is None:
        logger.debug("mapper.unknown_record_type", type=str(record.type), external_id=record.external_id)
        return None

    builder = _FlowBuilder(record, resolver)
    tx_type = rule(record, builder)
    if not builder.flows:
        logger.debug("mapper.empty_record", type=record.type.value, external_id=record.external_id)
        return None

    flows = tuple(builder.flows)
    total = record.total_value_usd if record.total_value_usd is not None else max_non_fee_value(flows)
    return MappedTransaction(
        exchange_connection_id=connection_id,
        external_id=_external_id(record, exchange_name),
        tx_type=tx_type,
        category=CATEGORY_BY_TYPE.get(tx_type, TransactionCategory.UNKNOWN),
        timestamp=record.timestamp,
        flows=flows,
        summary=build_summary(SummaryContext(tx_type=tx_type, flows=flows)),
        # En retiradas la comisión de red no es un flujo aparte: vive aquí
        fee=_transaction_fee(record),
        total_value_usd=total,
        onchain_reference=record.tx_id or None,
        raw_data=record.raw_data,
    )
