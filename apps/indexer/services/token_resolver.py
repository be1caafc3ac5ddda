"""
Resolución de símbolos de exchange a activos canónicos.

resolve(symbol, network) sigue un orden fijo:
  1. fila exacta (símbolo, red)
  2. fila del símbolo marcada is_default
  3. cualquier fila del símbolo
  4. placeholder sintético "exchange:<SÍMBOLO>" con 8 decimales

Nunca lanza: un activo desconocido no puede bloquear la ingesta.
Las filas se cargan una vez por ejecución (load) y la resolución es pura.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from models.token_symbol_mapping import TokenSymbolMapping
from services.assets import NATIVE_TOKEN, SOL_MINT, TokenInfo

logger = structlog.get_logger(__name__)

SYNTHETIC_PREFIX = "exchange:"
DEFAULT_DECIMALS = 8

# Códigos de red de los exchanges → nombre canónico
_NETWORK_ALIASES: dict[str, str] = {
    "SOL": "solana",
    "SOLANA": "solana",
    "SPL": "solana",
    "ETH": "ethereum",
    "ERC20": "ethereum",
    "ETHEREUM": "ethereum",
    "BSC": "bsc",
    "BEP20": "bsc",
    "BNB": "bsc",
    "TRX": "tron",
    "TRC20": "tron",
    "BTC": "bitcoin",
    "MATIC": "polygon",
    "POLYGON": "polygon",
    "ARBITRUM": "arbitrum",
    "ARB": "arbitrum",
}


def normalize_network(network: str | None) -> str | None:
    if not network or not network.strip():
        return None
    key = network.strip().upper()
    return _NETWORK_ALIASES.get(key, network.strip().lower())


@dataclass(frozen=True)
class TokenMappingRow:
    symbol: str
    network: str
    mint: str
    decimals: int
    is_default: bool = False


@dataclass(frozen=True)
class ResolvedToken:
    mint: str
    decimals: int
    symbol: str
    network: str | None = None
    is_synthetic: bool = False


# ---------------------------------------------------------------------------
# Estrategias de resolución (orden fijo, la primera que devuelve fila gana)
# ---------------------------------------------------------------------------


def _match_network(rows: list[TokenMappingRow], network: str | None) -> TokenMappingRow | None:
    if network is None:
        return None
    return next((r for r in rows if r.network == network), None)


def _match_default(rows: list[TokenMappingRow], network: str | None) -> TokenMappingRow | None:
    return next((r for r in rows if r.is_default), None)


def _match_any(rows: list[TokenMappingRow], network: str | None) -> TokenMappingRow | None:
    return rows[0] if rows else None


_RESOLUTION_ORDER: tuple[Callable[[list[TokenMappingRow], str | None], TokenMappingRow | None], ...] = (
    _match_network,
    _match_default,
    _match_any,
)


class TokenResolver:
    """
    Índice en memoria de token_symbol_mappings.

    Uso:
        resolver = await TokenResolver.load(db)
        token = resolver.resolve("usdc", "SOL")
    """

    def __init__(self, mappings: Iterable[Any] = ()) -> None:
        self._by_symbol: dict[str, list[TokenMappingRow]] = {}
        self._by_mint: dict[str, TokenInfo] = {SOL_MINT: NATIVE_TOKEN}
        for mapping in mappings:
            self.register(mapping)

    @classmethod
    async def load(cls, db: AsyncSession) -> "TokenResolver":
        result = await db.execute(select(TokenSymbolMapping).order_by(TokenSymbolMapping.symbol))
        rows = result.scalars().all()
        logger.debug("token_resolver.loaded", mappings=len(rows))
        return cls(rows)

    def register(self, mapping: Any) -> TokenMappingRow:
        """Añade una fila (TokenMappingRow o TokenSymbolMapping) al índice."""
        row = TokenMappingRow(
            symbol=mapping.symbol.strip().upper(),
            network=normalize_network(mapping.network) or "",
            mint=mapping.mint,
            decimals=int(mapping.decimals),
            is_default=bool(mapping.is_default),
        )
        bucket = self._by_symbol.setdefault(row.symbol, [])
        if row.is_default:
            # Una sola default por símbolo: la nueva desplaza a la anterior
            bucket[:] = [
                TokenMappingRow(r.symbol, r.network, r.mint, r.decimals, False) if r.is_default else r
                for r in bucket
            ]
        bucket.append(row)
        self._by_mint.setdefault(row.mint, TokenInfo(symbol=row.symbol, decimals=row.decimals))
        return row

    def resolve(self, symbol: str, network: str | None = None) -> ResolvedToken:
        canonical = (symbol or "").strip().upper()
        net = normalize_network(network)
        rows = self._by_symbol.get(canonical, [])

        for strategy in _RESOLUTION_ORDER:
            row = strategy(rows, net)
            if row is not None:
                return ResolvedToken(
                    mint=row.mint,
                    decimals=row.decimals,
                    symbol=canonical,
                    network=row.network or None,
                )

        return ResolvedToken(
            mint=f"{SYNTHETIC_PREFIX}{canonical}",
            decimals=DEFAULT_DECIMALS,
            symbol=canonical,
            network=net,
            is_synthetic=True,
        )

    def metadata_for(self, mint: str) -> TokenInfo | None:
        """Búsqueda inversa mint → (símbolo, decimales) para payloads on-chain."""
        return self._by_mint.get(mint)

    @property
    def token_metadata(self) -> dict[str, TokenInfo]:
        return dict(self._by_mint)


def is_synthetic_mint(mint: str | None) -> bool:
    return bool(mint) and mint.startswith(SYNTHETIC_PREFIX)


# ---------------------------------------------------------------------------
# Semilla y descubrimiento
# ---------------------------------------------------------------------------

SEED_TOKEN_MAPPINGS: tuple[TokenMappingRow, ...] = (
    TokenMappingRow("SOL", "solana", SOL_MINT, 9, True),
    TokenMappingRow("WSOL", "solana", SOL_MINT, 9, True),
    TokenMappingRow("USDC", "solana", "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", 6, True),
    TokenMappingRow("USDC", "ethereum", "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48", 6),
    TokenMappingRow("USDT", "solana", "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB", 6, True),
    TokenMappingRow("USDT", "ethereum", "0xdac17f958d2ee523a2206206994597c13d831ec7", 6),
    TokenMappingRow("PYUSD", "solana", "2b1kV6DkPAnxd5ixfnxCpjxmKwqjjaYmCZfHsFu24GXo", 6, True),
    TokenMappingRow("JUP", "solana", "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN", 6, True),
    TokenMappingRow("BONK", "solana", "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263", 5, True),
    TokenMappingRow("RAY", "solana", "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R", 6, True),
    TokenMappingRow("WIF", "solana", "EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm", 6, True),
    TokenMappingRow("PYTH", "solana", "HZ1JovNiVvGrGNiiYvEozEVgZ58xaU3RKwX8eACQBCt3", 6, True),
    TokenMappingRow("JTO", "solana", "jtojtomepa8beP8AuQc6eXt5FriJwfFMwQx2v2f9mCL", 9, True),
    TokenMappingRow("MSOL", "solana", "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So", 9, True),
    TokenMappingRow("JITOSOL", "solana", "J1toso1uCk3RLmjorhTtrVwY9HJ7X8V9yYac6Y7kGCPn", 9, True),
    TokenMappingRow("BSOL", "solana", "bSo13r4TkiE4KumL71LsHTPpL2euBYLFx6h9HP3piy1", 9, True),
    TokenMappingRow("ETH", "ethereum", "ethereum:native", 18, True),
    TokenMappingRow("ETH", "solana", "7vfCXTUXx5WJV5JADk17DUJ4ksgau7utNKj4b963voxs", 8),
    TokenMappingRow("BTC", "bitcoin", "bitcoin:native", 8, True),
)


def _mapping_values(row: TokenMappingRow) -> dict[str, Any]:
    return {
        "symbol": row.symbol,
        "network": row.network,
        "mint": row.mint,
        "decimals": row.decimals,
        "is_default": row.is_default,
    }


async def seed_token_mappings(db: AsyncSession) -> int:
    """Inserta las filas semilla que falten. Idempotente (ON CONFLICT DO NOTHING)."""
    stmt = pg_insert(TokenSymbolMapping).values([_mapping_values(r) for r in SEED_TOKEN_MAPPINGS])
    stmt = stmt.on_conflict_do_nothing()
    result = await db.execute(stmt)
    await db.commit()
    inserted = result.rowcount or 0
    logger.info("token_resolver.seeded", inserted=inserted, total=len(SEED_TOKEN_MAPPINGS))
    return inserted


async def persist_mapping(db: AsyncSession, resolver: TokenResolver, row: TokenMappingRow) -> None:
    """Registra un mapping descubierto en memoria y en BD (si no existía). Nunca es default."""
    stored = resolver.register(replace(row, is_default=False))
    await db.execute(pg_insert(TokenSymbolMapping).values(_mapping_values(stored)).on_conflict_do_nothing())
    await db.commit()
    logger.info("token_resolver.mapping_discovered", symbol=stored.symbol, network=stored.network, mint=stored.mint)
