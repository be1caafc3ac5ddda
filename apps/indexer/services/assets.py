"""
Clasificación de activos: stablecoins, monedas fiat y el activo nativo de Solana.
Todas las comparaciones son por símbolo en mayúsculas.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal

SOL_MINT = "So11111111111111111111111111111111111111112"
SOL_DECIMALS = 9
LAMPORTS_PER_SOL = Decimal(10) ** SOL_DECIMALS

STABLECOINS: frozenset[str] = frozenset({
    "USDT", "USDC", "BUSD", "FDUSD", "USD1", "DAI", "TUSD", "USDP", "GUSD",
    "FRAX", "PYUSD", "USDD", "CUSD", "SUSD", "LUSD", "EURC", "AEUR",
})

FIAT_CURRENCIES: frozenset[str] = frozenset({
    "USD", "BRL", "EUR", "GBP", "AUD", "CAD", "JPY", "TRY", "RUB", "NGN",
    "ARS", "COP", "KES", "ZAR", "INR", "IDR", "PHP", "VND", "THB", "MYR",
})

# Stablecoins que NO cotizan a 1 USD
_NON_USD_STABLES: frozenset[str] = frozenset({"EURC", "AEUR"})


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    decimals: int


NATIVE_TOKEN = TokenInfo(symbol="SOL", decimals=SOL_DECIMALS)


def is_stablecoin(symbol: str | None) -> bool:
    return bool(symbol) and symbol.upper() in STABLECOINS


def is_fiat(symbol: str | None) -> bool:
    return bool(symbol) and symbol.upper() in FIAT_CURRENCIES


def is_usd_like(symbol: str | None) -> bool:
    """Stablecoin anclada al dólar o el propio "USD": precio exacto 1.0."""
    if not symbol:
        return False
    upper = symbol.upper()
    if upper == "USD":
        return True
    return upper in STABLECOINS and upper not in _NON_USD_STABLES


def display_symbol(mint: str, token_metadata: Mapping[str, TokenInfo]) -> str:
    """Símbolo conocido del mint, o sus 6 primeros caracteres si no hay metadata."""
    if mint == SOL_MINT:
        return NATIVE_TOKEN.symbol
    info = token_metadata.get(mint)
    return info.symbol if info else mint[:6]
