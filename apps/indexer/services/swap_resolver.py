"""
Detección de las dos patas de un swap (activo enviado y activo recibido).

Tres estrategias puras en cascada; la primera que devuelve resultado gana:
  1. evento de swap estructurado (events.swap)
  2. agregación de transferencias nativas y de tokens de las direcciones propias
  3. deltas de balance por cuenta propietaria (rutas multi-hop)

Si ninguna resuelve, el clasificador mantiene el tipo SWAP con resumen genérico.
"""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from services.assets import LAMPORTS_PER_SOL, SOL_MINT, TokenInfo, display_symbol
from services.flows import to_decimal


@dataclass(frozen=True)
class SwapLeg:
    mint: str
    symbol: str
    amount: Decimal


@dataclass(frozen=True)
class SwapLegs:
    sent: SwapLeg
    received: SwapLeg
    strategy: str


SwapStrategy = Callable[[Mapping[str, Any], frozenset[str], Mapping[str, TokenInfo]], SwapLegs | None]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def lamports_to_sol(value: object) -> Decimal:
    lamports = to_decimal(value)
    return lamports / LAMPORTS_PER_SOL if lamports is not None else Decimal(0)


def raw_token_amount(entry: Mapping[str, Any]) -> Decimal:
    """rawTokenAmount {tokenAmount, decimals} → cantidad en unidades humanas."""
    raw = entry.get("rawTokenAmount") or {}
    amount = to_decimal(raw.get("tokenAmount"))
    if amount is None:
        return Decimal(0)
    try:
        decimals = int(raw.get("decimals") or 0)
    except (TypeError, ValueError):
        decimals = 0
    return amount.scaleb(-decimals)


def _owner(entry: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = entry.get(key)
        if value:
            return str(value)
    return ""


def _pick_extremes(
    nets: Iterable[tuple[str, Decimal]],
    tokens: Mapping[str, TokenInfo],
    strategy: str,
) -> SwapLegs | None:
    """El neto más negativo es lo enviado y el más positivo lo recibido."""
    sent: tuple[str, Decimal] | None = None
    received: tuple[str, Decimal] | None = None
    for mint, net in nets:
        if net < 0 and (sent is None or -net > sent[1]):
            sent = (mint, -net)
        if net > 0 and (received is None or net > received[1]):
            received = (mint, net)
    if sent is None or received is None:
        return None
    return SwapLegs(
        sent=SwapLeg(sent[0], display_symbol(sent[0], tokens), sent[1]),
        received=SwapLeg(received[0], display_symbol(received[0], tokens), received[1]),
        strategy=strategy,
    )


# ---------------------------------------------------------------------------
# Estrategia 1: evento de swap estructurado
# ---------------------------------------------------------------------------


def from_swap_event(
    payload: Mapping[str, Any],
    known: frozenset[str],
    tokens: Mapping[str, TokenInfo],
) -> SwapLegs | None:
    swap = (payload.get("events") or {}).get("swap")
    if not isinstance(swap, Mapping):
        return None

    sent: list[tuple[str, Decimal]] = []
    received: list[tuple[str, Decimal]] = []

    native_input = lamports_to_sol((swap.get("nativeInput") or {}).get("amount"))
    if native_input > 0:
        sent.append((SOL_MINT, native_input))
    native_output = lamports_to_sol((swap.get("nativeOutput") or {}).get("amount"))
    if native_output > 0:
        received.append((SOL_MINT, native_output))

    for entry in swap.get("tokenInputs") or []:
        amount = raw_token_amount(entry)
        if amount > 0 and entry.get("mint"):
            sent.append((entry["mint"], amount))
    for entry in swap.get("tokenOutputs") or []:
        amount = raw_token_amount(entry)
        if amount > 0 and entry.get("mint"):
            received.append((entry["mint"], amount))

    if not sent or not received:
        return None
    (sent_mint, sent_amount), (recv_mint, recv_amount) = sent[0], received[0]
    return SwapLegs(
        sent=SwapLeg(sent_mint, display_symbol(sent_mint, tokens), sent_amount),
        received=SwapLeg(recv_mint, display_symbol(recv_mint, tokens), recv_amount),
        strategy="swap_event",
    )


# ---------------------------------------------------------------------------
# Estrategia 2: agregación de transferencias
# ---------------------------------------------------------------------------


def from_transfer_aggregation(
    payload: Mapping[str, Any],
    known: frozenset[str],
    tokens: Mapping[str, TokenInfo],
) -> SwapLegs | None:
    if not known:
        return None

    # mint → neto recibido − enviado (orden de aparición estable)
    nets: dict[str, Decimal] = {}

    for transfer in payload.get("tokenTransfers") or []:
        mint = transfer.get("mint")
        amount = to_decimal(transfer.get("tokenAmount"))
        if not mint or not amount:
            continue
        from_owner = _owner(transfer, "fromUserAccount", "from").lower()
        to_owner = _owner(transfer, "toUserAccount", "to").lower()
        is_sent, is_received = from_owner in known, to_owner in known
        if not is_sent and not is_received:
            continue
        net = nets.get(mint, Decimal(0))
        if is_sent:
            net -= abs(amount)
        if is_received:
            net += abs(amount)
        nets[mint] = net

    for transfer in payload.get("nativeTransfers") or []:
        amount = lamports_to_sol(transfer.get("amount"))
        if amount == 0:
            continue
        from_owner = _owner(transfer, "fromUserAccount", "from").lower()
        to_owner = _owner(transfer, "toUserAccount", "to").lower()
        is_sent, is_received = from_owner in known, to_owner in known
        if not is_sent and not is_received:
            continue
        net = nets.get(SOL_MINT, Decimal(0))
        if is_sent:
            net -= abs(amount)
        if is_received:
            net += abs(amount)
        nets[SOL_MINT] = net

    # El SOL en swaps token↔token es wrapping/fees: se ignora salvo que sea la única señal
    has_non_base = any(mint != SOL_MINT for mint in nets)
    without_base = [(m, n) for m, n in nets.items() if not (has_non_base and m == SOL_MINT)]
    legs = _pick_extremes(without_base, tokens, "transfer_aggregation")
    if legs is None:
        legs = _pick_extremes(nets.items(), tokens, "transfer_aggregation")
    return legs


# ---------------------------------------------------------------------------
# Estrategia 3: deltas de balance por cuenta propietaria
# ---------------------------------------------------------------------------


def balance_deltas(payload: Mapping[str, Any]) -> tuple[dict[str, dict[str, Decimal]], dict[str, Decimal]]:
    """accountData → ({propietario → {mint → cambio}}, {cuenta → cambio de SOL nativo})."""
    by_owner: dict[str, dict[str, Decimal]] = {}
    native_changes: dict[str, Decimal] = {}

    for entry in payload.get("accountData") or []:
        account = entry.get("account")
        if account:
            native = lamports_to_sol(entry.get("nativeBalanceChange"))
            if native != 0:
                native_changes[account] = native_changes.get(account, Decimal(0)) + native
        for change in entry.get("tokenBalanceChanges") or []:
            mint, owner = change.get("mint"), change.get("userAccount")
            amount = raw_token_amount(change)
            if not mint or not owner or amount == 0:
                continue
            deltas = by_owner.setdefault(owner, {})
            deltas[mint] = deltas.get(mint, Decimal(0)) + amount

    return by_owner, native_changes


def has_owner_swap_deltas(payload: Mapping[str, Any], known: frozenset[str]) -> bool:
    """Una dirección propia pierde un activo no nativo y gana otro en la misma transacción."""
    by_owner, _ = balance_deltas(payload)
    for owner, deltas in by_owner.items():
        if owner.lower() not in known:
            continue
        non_base = [d for m, d in deltas.items() if m != SOL_MINT and d != 0]
        if any(d < 0 for d in non_base) and any(d > 0 for d in non_base):
            return True
    return False


def from_balance_deltas(
    payload: Mapping[str, Any],
    known: frozenset[str],
    tokens: Mapping[str, TokenInfo],
) -> SwapLegs | None:
    by_owner, native_changes = balance_deltas(payload)
    if not by_owner:
        return None

    # Cuenta con cambios en 2+ activos no nativos: la que ejecuta el swap
    for deltas in by_owner.values():
        non_base = [(m, d) for m, d in deltas.items() if m != SOL_MINT]
        if len(non_base) < 2:
            continue
        legs = _pick_extremes(non_base, tokens, "balance_deltas")
        if legs is not None:
            return legs

    # Fallback SOL↔token: un activo no nativo + delta de SOL (wSOL o nativo) en la misma cuenta
    for owner, deltas in by_owner.items():
        non_base = [(m, d) for m, d in deltas.items() if m != SOL_MINT]
        if len(non_base) != 1:
            continue
        base_delta = deltas.get(SOL_MINT) or native_changes.get(owner)
        if not base_delta:
            continue
        mint, delta = non_base[0]
        if (base_delta < 0) == (delta < 0):
            continue
        legs = _pick_extremes([(SOL_MINT, base_delta), (mint, delta)], tokens, "balance_deltas")
        if legs is not None:
            return legs

    return None


SWAP_STRATEGIES: tuple[SwapStrategy, ...] = (
    from_swap_event,
    from_transfer_aggregation,
    from_balance_deltas,
)


def resolve_swap(
    payload: Mapping[str, Any],
    known_addresses: Iterable[str],
    token_metadata: Mapping[str, TokenInfo] | None = None,
) -> SwapLegs | None:
    """Prueba las estrategias en orden; la primera con resultado gana."""
    known = frozenset(a.lower() for a in known_addresses if a)
    tokens = token_metadata or {}
    for strategy in SWAP_STRATEGIES:
        legs = strategy(payload, known, tokens)
        if legs is not None:
            return legs
    return None
