"""
Clasificador heurístico de payloads on-chain (formato enhanced transaction de Helius).

classify(payload, wallet_address, fee_payer) → tipo semántico + flujos
direccionales + resumen legible. Orden de reglas:
  1. programa conocido (staking, DEX, NFT, lending, LP, bridge, loaders)
  2. tipo sugerido por el proveedor (campo "type")
  3. solo memo → MEMO
  4. forma de las transferencias (IN+OUT de activos distintos → SWAP, IN → TRANSFER_IN, OUT → TRANSFER_OUT)
  5. deltas de balance de una dirección propia con signos opuestos en 2+ tokens → SWAP
  6. UNKNOWN

La taxonomía es cerrada: todo payload produce exactamente un tipo y la
clasificación nunca lanza por datos raros pero bien tipados.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import structlog

from models.transaction import (
    CATEGORY_BY_TYPE,
    FlowDirection,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
)
from services.address_labels import AddressLabelResolver
from services.assets import SOL_DECIMALS, SOL_MINT, TokenInfo, display_symbol
from services.flows import FlowData, make_flow, to_decimal
from services.known_addresses import (
    NEUTRAL_PROGRAM_KINDS,
    KnownProgram,
    ProgramKind,
    get_known_exchange,
    get_known_program,
)
from services.summary import SummaryContext, build_summary
from services.swap_resolver import SwapLegs, has_owner_swap_deltas, lamports_to_sol, resolve_swap

logger = structlog.get_logger(__name__)

_T = TransactionType
_IN, _OUT = FlowDirection.IN, FlowDirection.OUT

# Decimales por defecto de un token SPL sin metadata
_DEFAULT_TOKEN_DECIMALS = 9

# Tipos del proveedor con traducción directa. Los ausentes (TRANSFER,
# CLOSE_ACCOUNT, UNKNOWN, ...) se resuelven por la forma de las transferencias.
PROVIDER_TYPE_HINTS: dict[str, TransactionType] = {
    "SWAP": _T.SWAP,
    "BURN": _T.BURN,
    "BURN_NFT": _T.BURN,
    "COMPRESSED_NFT_BURN": _T.BURN,
    "TOKEN_MINT": _T.MINT,
    "STAKE_SOL": _T.STAKE,
    "INIT_STAKE": _T.STAKE,
    "MERGE_STAKE": _T.STAKE,
    "SPLIT_STAKE": _T.STAKE,
    "UNSTAKE_SOL": _T.UNSTAKE,
    "WITHDRAW_STAKE": _T.UNSTAKE,
    "ADD_LIQUIDITY": _T.LP_DEPOSIT,
    "REMOVE_LIQUIDITY": _T.LP_WITHDRAW,
    "LOAN": _T.LOAN_BORROW,
    "BORROW_FOX": _T.LOAN_BORROW,
    "REPAY_LOAN": _T.LOAN_REPAY,
    "NFT_MINT": _T.NFT_MINT,
    "COMPRESSED_NFT_MINT": _T.NFT_MINT,
    "NFT_LISTING": _T.NFT_ACTIVITY,
    "NFT_CANCEL_LISTING": _T.NFT_ACTIVITY,
    "NFT_BID": _T.NFT_ACTIVITY,
    "NFT_BID_CANCELLED": _T.NFT_ACTIVITY,
    "COMPRESSED_NFT_TRANSFER": _T.NFT_ACTIVITY,
    "UPGRADE_PROGRAM_INSTRUCTION": _T.PROGRAM_INTERACTION,
    "INITIALIZE_ACCOUNT": _T.PROGRAM_INTERACTION,
}

# Programas que pueden acompañar a un memo sin cambiar su naturaleza
_MEMO_COMPANIONS: frozenset[ProgramKind] = frozenset({ProgramKind.MEMO, ProgramKind.INFRA})


@dataclass(frozen=True)
class _Transfer:
    mint: str
    amount: Decimal
    direction: FlowDirection
    counterparty: str
    decimals: int | None = None


@dataclass(frozen=True)
class ClassificationResult:
    tx_type: TransactionType
    category: TransactionCategory
    status: TransactionStatus
    flows: tuple[FlowData, ...]
    summary: str
    protocol_name: str | None = None
    swap: SwapLegs | None = None
    counterparty: str | None = None
    fee: Decimal | None = None
    program_ids: tuple[str, ...] = field(default_factory=tuple)
    # Otros extremos de las transferencias propias, en orden de aparición
    counterparties: tuple[str, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Extracción de datos del payload
# ---------------------------------------------------------------------------


def program_ids(payload: Mapping[str, Any]) -> list[str]:
    """programIds de instrucciones e instrucciones internas, sin duplicados y en orden."""
    seen: dict[str, None] = {}
    for ix in payload.get("instructions") or []:
        if ix.get("programId"):
            seen.setdefault(ix["programId"], None)
        for inner in ix.get("innerInstructions") or []:
            if inner.get("programId"):
                seen.setdefault(inner["programId"], None)
    return list(seen)


def _side(entry: Mapping[str, Any], direct: str, alias: str) -> tuple[str, str]:
    return str(entry.get(direct) or ""), str(entry.get(alias) or "")


def _direction(entry: Mapping[str, Any], known: frozenset[str]) -> tuple[FlowDirection, str] | None:
    """
    IN si el destino (o su userAccount) es una dirección propia; si no, OUT si
    lo es el origen. Devuelve también la contraparte (el otro extremo).
    """
    to_addr, to_user = _side(entry, "to", "toUserAccount")
    from_addr, from_user = _side(entry, "from", "fromUserAccount")
    if to_addr.lower() in known or to_user.lower() in known:
        return _IN, from_user or from_addr
    if from_addr.lower() in known or from_user.lower() in known:
        return _OUT, to_user or to_addr
    return None


def _payload_decimals(payload: Mapping[str, Any]) -> dict[str, int]:
    """Decimales por mint según accountData.tokenBalanceChanges."""
    decimals: dict[str, int] = {}
    for entry in payload.get("accountData") or []:
        for change in entry.get("tokenBalanceChanges") or []:
            raw = change.get("rawTokenAmount") or {}
            if change.get("mint") and raw.get("decimals") is not None:
                try:
                    decimals.setdefault(change["mint"], int(raw["decimals"]))
                except (TypeError, ValueError):
                    continue
    return decimals


def attributed_transfers(payload: Mapping[str, Any], known: frozenset[str]) -> list[_Transfer]:
    """Transferencias nativas y de tokens atribuibles a las direcciones propias."""
    transfers: list[_Transfer] = []

    for entry in payload.get("nativeTransfers") or []:
        amount = lamports_to_sol(entry.get("amount"))
        if amount == 0:
            continue
        attributed = _direction(entry, known)
        if attributed is None:
            continue
        direction, counterparty = attributed
        transfers.append(_Transfer(SOL_MINT, abs(amount), direction, counterparty, SOL_DECIMALS))

    for entry in payload.get("tokenTransfers") or []:
        amount = to_decimal(entry.get("tokenAmount"))
        mint = entry.get("mint")
        if not mint or not amount:
            continue
        attributed = _direction(entry, known)
        if attributed is None:
            continue
        direction, counterparty = attributed
        decimals = entry.get("decimals")
        transfers.append(
            _Transfer(mint, abs(amount), direction, counterparty, int(decimals) if decimals is not None else None)
        )

    return transfers


# ---------------------------------------------------------------------------
# Clasificador
# ---------------------------------------------------------------------------


class OnChainClassifier:
    """
    Uso:
        classifier = OnChainClassifier(token_metadata=resolver.token_metadata, labels=labels)
        result = classifier.classify(payload, wallet.address)
    """

    def __init__(
        self,
        token_metadata: Mapping[str, TokenInfo] | None = None,
        labels: AddressLabelResolver | None = None,
    ) -> None:
        self._tokens: Mapping[str, TokenInfo] = token_metadata or {}
        self._labels = labels or AddressLabelResolver()

    def classify(
        self,
        payload: Mapping[str, Any],
        wallet_address: str,
        fee_payer: str | Iterable[str] | None = None,
    ) -> ClassificationResult:
        extra = [fee_payer] if isinstance(fee_payer, str) else list(fee_payer or [])
        known = frozenset(a.lower() for a in [wallet_address, *extra] if a)

        transfers = attributed_transfers(payload, known)
        programs = program_ids(payload)
        program = _match_program(programs)
        failed = payload.get("transactionError") is not None

        tx_type = self._resolve_type(payload, known, transfers, programs, program)
        protocol_name = program.name if program else None

        flows = [] if failed else self._build_flows(payload, transfers)
        swap = resolve_swap(payload, known, self._tokens) if tx_type == _T.SWAP else None
        if tx_type == _T.SWAP and swap is not None and not flows and not failed:
            flows = self._flows_from_swap(swap)

        fee = lamports_to_sol(payload.get("fee"))
        fee_flow = self._fee_flow(payload, known, fee)
        if fee_flow is not None:
            flows.append(fee_flow)

        counterparty = _counterparty(tx_type, transfers)
        category = _refine_category(tx_type, counterparty)
        summary = build_summary(
            SummaryContext(
                tx_type=tx_type,
                flows=flows,
                swap=swap,
                protocol_name=protocol_name,
                liquid_staking=bool(program and program.liquid_staking),
                counterparty_label=self._labels.label_for(counterparty),
            )
        )

        if tx_type == _T.UNKNOWN:
            logger.debug("classifier.unknown", signature=payload.get("signature"), programs=programs)

        return ClassificationResult(
            tx_type=tx_type,
            category=category,
            status=TransactionStatus.FAILED if failed else TransactionStatus.CONFIRMED,
            flows=tuple(flows),
            summary=summary,
            protocol_name=protocol_name,
            swap=swap,
            counterparty=counterparty,
            fee=fee if fee > 0 else None,
            program_ids=tuple(programs),
            counterparties=counterparties_of(transfers, known),
        )

    # -----------------------------------------------------------------------
    # Tipo
    # -----------------------------------------------------------------------

    def _resolve_type(
        self,
        payload: Mapping[str, Any],
        known: frozenset[str],
        transfers: list[_Transfer],
        programs: list[str],
        program: KnownProgram | None,
    ) -> TransactionType:
        hint = PROVIDER_TYPE_HINTS.get(str(payload.get("type") or "").upper())

        if program is not None:
            by_program = _type_from_program(program, payload, transfers, hint)
            if by_program is not None:
                return by_program

        if hint is not None:
            return hint
        if str(payload.get("type") or "").upper() == "NFT_SALE":
            return _nft_trade_type(transfers)

        if _is_memo_only(programs) and not transfers:
            return _T.MEMO

        by_shape = _type_from_shape(transfers)
        if by_shape is not None:
            return by_shape

        # Rutas multi-hop sin transferencias atribuibles: solo queda accountData
        if has_owner_swap_deltas(payload, known):
            return _T.SWAP

        if program is not None and program.tx_type is not None:
            return program.tx_type
        return _T.UNKNOWN

    # -----------------------------------------------------------------------
    # Flujos
    # -----------------------------------------------------------------------

    def _decimals_for(self, mint: str, transfer_decimals: int | None, payload_decimals: dict[str, int]) -> int:
        info = self._tokens.get(mint)
        if mint == SOL_MINT:
            return SOL_DECIMALS
        if info is not None:
            return info.decimals
        if transfer_decimals is not None:
            return transfer_decimals
        return payload_decimals.get(mint, _DEFAULT_TOKEN_DECIMALS)

    def _build_flows(self, payload: Mapping[str, Any], transfers: list[_Transfer]) -> list[FlowData]:
        """Agrega por (mint, dirección) conservando el orden de primera aparición."""
        totals: dict[tuple[str, FlowDirection], Decimal] = {}
        decimals: dict[str, int | None] = {}
        for transfer in transfers:
            key = (transfer.mint, transfer.direction)
            totals[key] = totals.get(key, Decimal(0)) + transfer.amount
            decimals.setdefault(transfer.mint, transfer.decimals)

        payload_decimals = _payload_decimals(payload)
        flows: list[FlowData] = []
        for (mint, direction), amount in totals.items():
            flow = make_flow(
                mint,
                display_symbol(mint, self._tokens),
                self._decimals_for(mint, decimals.get(mint), payload_decimals),
                amount,
                direction,
                network="solana",
            )
            if flow is not None:
                flows.append(flow)
        return flows

    def _flows_from_swap(self, swap: SwapLegs) -> list[FlowData]:
        flows = []
        for leg, direction in ((swap.sent, _OUT), (swap.received, _IN)):
            flow = make_flow(
                leg.mint,
                leg.symbol,
                self._decimals_for(leg.mint, None, {}),
                leg.amount,
                direction,
                network="solana",
            )
            if flow is not None:
                flows.append(flow)
        return flows

    def _fee_flow(self, payload: Mapping[str, Any], known: frozenset[str], fee: Decimal) -> FlowData | None:
        payer = str(payload.get("feePayer") or "").lower()
        if fee <= 0 or payer not in known:
            return None
        return make_flow(SOL_MINT, "SOL", SOL_DECIMALS, fee, _OUT, network="solana", is_fee=True)


# ---------------------------------------------------------------------------
# Reglas
# ---------------------------------------------------------------------------


def _match_program(programs: list[str]) -> KnownProgram | None:
    """Primer programa con intención propia; si no hay, el primero con tipo fijo (loaders)."""
    known = [p for p in (get_known_program(pid) for pid in programs) if p is not None]
    for program in known:
        if program.kind not in NEUTRAL_PROGRAM_KINDS:
            return program
    return next((p for p in known if p.tx_type is not None), None)


def _directions(transfers: list[_Transfer]) -> tuple[bool, bool]:
    return any(t.direction == _IN for t in transfers), any(t.direction == _OUT for t in transfers)


def _native_directions(transfers: list[_Transfer]) -> tuple[bool, bool]:
    return _directions([t for t in transfers if t.mint == SOL_MINT])


def _nft_trade_type(transfers: list[_Transfer]) -> TransactionType:
    native_in, native_out = _native_directions(transfers)
    if native_in and not native_out:
        return _T.NFT_SALE
    if native_out:
        return _T.NFT_PURCHASE
    return _T.NFT_ACTIVITY


def _type_from_program(
    program: KnownProgram,
    payload: Mapping[str, Any],
    transfers: list[_Transfer],
    hint: TransactionType | None,
) -> TransactionType | None:
    has_in, has_out = _directions(transfers)

    if program.kind == ProgramKind.STAKING:
        if hint in (_T.STAKE, _T.UNSTAKE):
            return hint
        native_in, native_out = _native_directions(transfers)
        return _T.UNSTAKE if native_in and not native_out else _T.STAKE

    if program.kind == ProgramKind.DEX:
        has_token_activity = bool(payload.get("tokenTransfers")) or bool((payload.get("events") or {}).get("swap"))
        return _T.SWAP if has_token_activity else None

    if program.kind == ProgramKind.NFT_METADATA:
        return _T.NFT_MINT

    if program.kind == ProgramKind.NFT_MARKETPLACE:
        return _nft_trade_type(transfers)

    if program.kind == ProgramKind.LENDING:
        if hint in (_T.LOAN_BORROW, _T.LOAN_REPAY):
            return hint
        if has_in and not has_out:
            return _T.LOAN_BORROW
        if has_out and not has_in:
            return _T.LOAN_REPAY
        return _T.PROGRAM_INTERACTION

    if program.kind == ProgramKind.LP:
        if hint in (_T.LP_DEPOSIT, _T.LP_WITHDRAW):
            return hint
        if has_in and not has_out:
            return _T.LP_WITHDRAW
        if has_out:
            # Rebalanceos (IN + OUT) cuentan como depósito
            return _T.LP_DEPOSIT
        return _T.PROGRAM_INTERACTION

    if program.kind == ProgramKind.BRIDGE:
        if has_out and not has_in:
            return _T.BRIDGE_OUT
        if has_in and not has_out:
            return _T.BRIDGE_IN
        return _T.PROGRAM_INTERACTION

    # Programas neutrales (loaders): solo deciden si no hay transferencias que lo hagan
    if program.tx_type is not None and not transfers:
        return program.tx_type
    return None


def _is_memo_only(programs: list[str]) -> bool:
    known = [get_known_program(pid) for pid in programs]
    if not known or any(p is None or p.kind not in _MEMO_COMPANIONS for p in known):
        return False
    return any(p.kind == ProgramKind.MEMO for p in known if p is not None)


def _type_from_shape(transfers: list[_Transfer]) -> TransactionType | None:
    if not transfers:
        return None
    in_mints = {t.mint for t in transfers if t.direction == _IN}
    out_mints = {t.mint for t in transfers if t.direction == _OUT}
    if in_mints and out_mints:
        if in_mints != out_mints:
            return _T.SWAP
        # Mismo activo en ambos sentidos: decide el neto
        received = sum((t.amount for t in transfers if t.direction == _IN), Decimal(0))
        sent = sum((t.amount for t in transfers if t.direction == _OUT), Decimal(0))
        return _T.TRANSFER_IN if received >= sent else _T.TRANSFER_OUT
    return _T.TRANSFER_IN if in_mints else _T.TRANSFER_OUT


def _counterparty(tx_type: TransactionType, transfers: list[_Transfer]) -> str | None:
    if tx_type == _T.TRANSFER_IN:
        direction = _IN
    elif tx_type == _T.TRANSFER_OUT:
        direction = _OUT
    else:
        return None
    return next((t.counterparty for t in transfers if t.direction == direction and t.counterparty), None)


def counterparties_of(transfers: list[_Transfer], known: frozenset[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for transfer in transfers:
        address = transfer.counterparty
        if address and address.lower() not in known:
            seen.setdefault(address, None)
    return tuple(seen)


def _refine_category(tx_type: TransactionType, counterparty: str | None) -> TransactionCategory:
    if get_known_exchange(counterparty):
        if tx_type == _T.TRANSFER_OUT:
            return TransactionCategory.TRANSFER_TO_EXCHANGE
        if tx_type == _T.TRANSFER_IN:
            return TransactionCategory.TRANSFER_FROM_EXCHANGE
    return CATEGORY_BY_TYPE.get(tx_type, TransactionCategory.UNKNOWN)
