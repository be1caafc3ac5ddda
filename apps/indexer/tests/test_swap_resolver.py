"""
Tests de las estrategias de detección de patas de swap.
"""

from decimal import Decimal

from services.assets import SOL_MINT, TokenInfo
from services.swap_resolver import (
    from_balance_deltas,
    from_swap_event,
    has_owner_swap_deltas,
    lamports_to_sol,
    raw_token_amount,
    resolve_swap,
)

WALLET = "WaLLet1111111111111111111111111111111111111"
POOL = "PooL11111111111111111111111111111111111111"
USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
RAY = "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R"

TOKENS = {
    USDC: TokenInfo(symbol="USDC", decimals=6),
    RAY: TokenInfo(symbol="RAY", decimals=6),
}


def token_change(owner: str, mint: str, raw: str, decimals: int = 6) -> dict:
    return {
        "userAccount": owner,
        "mint": mint,
        "rawTokenAmount": {"tokenAmount": raw, "decimals": decimals},
    }


# ---------------------------------------------------------------------------
# Tests: helpers
# ---------------------------------------------------------------------------


def test_lamports_to_sol():
    assert lamports_to_sol(1_500_000_000) == Decimal("1.5")
    assert lamports_to_sol(None) == Decimal(0)


def test_raw_token_amount_applies_decimals():
    assert raw_token_amount({"rawTokenAmount": {"tokenAmount": "-100000000", "decimals": 6}}) == Decimal("-100")
    assert raw_token_amount({}) == Decimal(0)


# ---------------------------------------------------------------------------
# Tests: estrategia 1 (evento estructurado)
# ---------------------------------------------------------------------------


def test_swap_event_native_in_token_out():
    payload = {
        "events": {
            "swap": {
                "nativeInput": {"account": WALLET, "amount": "2000000000"},
                "tokenOutputs": [
                    {"mint": USDC, "rawTokenAmount": {"tokenAmount": "300000000", "decimals": 6}},
                ],
            }
        }
    }

    legs = resolve_swap(payload, [WALLET], TOKENS)

    assert legs.strategy == "swap_event"
    assert (legs.sent.mint, legs.sent.symbol, legs.sent.amount) == (SOL_MINT, "SOL", Decimal("2"))
    assert (legs.received.symbol, legs.received.amount) == ("USDC", Decimal("300"))


def test_swap_event_without_outputs_is_not_resolved():
    payload = {"events": {"swap": {"nativeInput": {"amount": "1000"}}}}
    assert from_swap_event(payload, frozenset(), TOKENS) is None


# ---------------------------------------------------------------------------
# Tests: estrategia 2 (agregación de transferencias)
# ---------------------------------------------------------------------------


def test_transfer_aggregation_ignores_wrapping_sol():
    payload = {
        "tokenTransfers": [
            {"fromUserAccount": WALLET, "toUserAccount": POOL, "mint": USDC, "tokenAmount": 100},
            {"fromUserAccount": POOL, "toUserAccount": WALLET, "mint": RAY, "tokenAmount": 50},
        ],
        "nativeTransfers": [
            {"fromUserAccount": WALLET, "toUserAccount": POOL, "amount": 2_039_280},
        ],
    }

    legs = resolve_swap(payload, [WALLET.lower()], TOKENS)

    assert legs.strategy == "transfer_aggregation"
    assert (legs.sent.symbol, legs.sent.amount) == ("USDC", Decimal("100"))
    assert (legs.received.symbol, legs.received.amount) == ("RAY", Decimal("50"))


def test_transfer_aggregation_matches_addresses_case_insensitively():
    payload = {
        "tokenTransfers": [
            {"fromUserAccount": WALLET.upper(), "toUserAccount": POOL, "mint": USDC, "tokenAmount": 10},
            {"fromUserAccount": POOL, "toUserAccount": WALLET.upper(), "mint": RAY, "tokenAmount": 4},
        ],
    }
    legs = resolve_swap(payload, [WALLET], TOKENS)
    assert legs.sent.mint == USDC


def test_unknown_mint_symbol_is_truncated():
    other = "Zz9xMintWithoutMetadata1111111111111111111"
    payload = {
        "tokenTransfers": [
            {"fromUserAccount": WALLET, "toUserAccount": POOL, "mint": USDC, "tokenAmount": 10},
            {"fromUserAccount": POOL, "toUserAccount": WALLET, "mint": other, "tokenAmount": 4},
        ],
    }
    legs = resolve_swap(payload, [WALLET], TOKENS)
    assert legs.received.symbol == other[:6]


# ---------------------------------------------------------------------------
# Tests: estrategia 3 (deltas de balance)
# ---------------------------------------------------------------------------


def test_multi_hop_swap_resolved_from_balance_deltas():
    # Sin evento de swap ni transferencias atribuibles: solo cambios de balance
    payload = {
        "type": "SWAP",
        "accountData": [
            {"account": WALLET, "nativeBalanceChange": -5000, "tokenBalanceChanges": [
                token_change(WALLET, USDC, "-100000000"),
            ]},
            {"account": "ata-ray", "nativeBalanceChange": 0, "tokenBalanceChanges": [
                token_change(WALLET, RAY, "50000000"),
            ]},
            {"account": "hop-pool", "nativeBalanceChange": 0, "tokenBalanceChanges": [
                token_change(POOL, USDC, "100000000"),
            ]},
        ],
    }

    legs = resolve_swap(payload, [WALLET], TOKENS)

    assert legs.strategy == "balance_deltas"
    assert (legs.sent.mint, legs.sent.symbol, legs.sent.amount) == (USDC, "USDC", Decimal("100"))
    assert (legs.received.mint, legs.received.symbol, legs.received.amount) == (RAY, "RAY", Decimal("50"))


def test_balance_deltas_sol_to_token_fallback():
    payload = {
        "accountData": [
            {"account": WALLET, "nativeBalanceChange": -1_000_000_000, "tokenBalanceChanges": [
                token_change(WALLET, USDC, "150000000"),
            ]},
        ],
    }
    legs = from_balance_deltas(payload, frozenset(), TOKENS)
    assert legs.sent.mint == SOL_MINT
    assert legs.sent.amount == Decimal("1")
    assert legs.received.amount == Decimal("150")


def test_balance_deltas_same_sign_is_not_a_swap():
    payload = {
        "accountData": [
            {"account": WALLET, "nativeBalanceChange": -1_000_000, "tokenBalanceChanges": [
                token_change(WALLET, USDC, "-5000000"),
            ]},
        ],
    }
    assert from_balance_deltas(payload, frozenset(), TOKENS) is None



def test_owner_swap_deltas_require_own_address_and_opposite_signs():
    known = frozenset({WALLET.lower()})
    swap = {"accountData": [{"account": "ata", "tokenBalanceChanges": [
        token_change(WALLET, USDC, "-100000000"),
        token_change(WALLET, RAY, "50000000"),
    ]}]}
    same_sign = {"accountData": [{"account": "ata", "tokenBalanceChanges": [
        token_change(WALLET, USDC, "-100000000"),
        token_change(WALLET, RAY, "-50000000"),
    ]}]}

    assert has_owner_swap_deltas(swap, known)
    assert not has_owner_swap_deltas(swap, frozenset({POOL.lower()}))
    assert not has_owner_swap_deltas(same_sign, known)
    assert not has_owner_swap_deltas({}, known)


def test_nothing_resolves_returns_none():
    assert resolve_swap({"type": "SWAP"}, [WALLET], TOKENS) is None
