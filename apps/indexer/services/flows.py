"""
Flujo canónico (FlowData): un movimiento direccional de un activo.

Lo producen tanto el mapper de exchange como el clasificador on-chain antes de
persistir. Invariantes: amount > 0 siempre (el signo vive en direction) y
decimals acotado a MAX_DECIMALS.
"""

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any

from models.transaction import FlowDirection
from services.assets import is_usd_like

MAX_DECIMALS = 18
USD_PRECISION = Decimal("0.00000001")
_AMOUNT_PRECISION = Decimal(1).scaleb(-MAX_DECIMALS)


@dataclass(frozen=True)
class FlowData:
    mint: str
    symbol: str | None
    decimals: int
    amount: Decimal
    direction: FlowDirection
    network: str | None = None
    price_usd: Decimal | None = None
    value_usd: Decimal | None = None
    is_fee: bool = False

    @property
    def raw_amount(self) -> Decimal:
        """Importe en unidades mínimas (amount × 10^decimals), truncado."""
        return (self.amount.scaleb(self.decimals)).to_integral_value(rounding=ROUND_DOWN)


def to_decimal(value: object) -> Decimal | None:
    """
    Convierte números y strings a Decimal. Los float pasan por str() para no
    arrastrar ruido binario. Devuelve None si el valor no es numérico.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def clamp_decimals(decimals: object, default: int = 8) -> int:
    try:
        value = int(decimals)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        value = default
    return max(0, min(value, MAX_DECIMALS))


def make_flow(
    mint: str,
    symbol: str | None,
    decimals: object,
    amount: object,
    direction: FlowDirection,
    *,
    network: str | None = None,
    price_usd: object = None,
    is_fee: bool = False,
) -> FlowData | None:
    """
    Construye un FlowData normalizado o None si el importe es cero/no numérico.
    - amount en valor absoluto (nunca se pliega el signo en el número)
    - el símbolo se guarda tal cual (mSOL, jitoSOL); el resolver ya lo da canónico en exchange
    - sin precio explícito y activo USD-like → precio exacto 1
    - value_usd = amount × price con 8 decimales
    """
    value = to_decimal(amount)
    if value is None:
        return None
    value = abs(value).quantize(_AMOUNT_PRECISION, rounding=ROUND_DOWN)
    if value <= 0:
        return None

    symbol = symbol.strip() if symbol and symbol.strip() else None
    price = to_decimal(price_usd)
    if price is not None and price <= 0:
        price = None
    if price is None and is_usd_like(symbol):
        price = Decimal(1)

    value_usd = (value * price).quantize(USD_PRECISION) if price is not None else None

    return FlowData(
        mint=mint,
        symbol=symbol,
        decimals=clamp_decimals(decimals),
        amount=value,
        direction=direction,
        network=network,
        price_usd=price,
        value_usd=value_usd,
        is_fee=is_fee,
    )


def max_non_fee_value(flows: Iterable) -> Decimal | None:
    """
    Tamaño nocional del evento: el mayor value_usd entre los flujos no-fee valorados.
    Acepta FlowData o filas TransactionFlow (ambos tienen value_usd e is_fee).
    """
    values = [f.value_usd for f in flows if not f.is_fee and f.value_usd is not None]
    return max(values) if values else None


def flow_rows(transaction_id: uuid.UUID, flows: Iterable[FlowData]) -> list[dict[str, Any]]:
    """Filas de transaction_flows para un INSERT en bloque, en orden de generación."""
    return [
        {
            "id": uuid.uuid4(),
            "transaction_id": transaction_id,
            "position": position,
            "mint": flow.mint,
            "symbol": flow.symbol,
            "decimals": flow.decimals,
            "network": flow.network,
            "amount": flow.amount,
            "raw_amount": flow.raw_amount,
            "direction": flow.direction,
            "price_at_execution": flow.price_usd,
            "value_usd": flow.value_usd,
            "is_fee": flow.is_fee,
        }
        for position, flow in enumerate(flows)
    ]
