"""
Tests del clasificador on-chain.
Payloads mínimos en formato enhanced transaction; sin red ni BD.
"""

from decimal import Decimal

import pytest

from models.transaction import FlowDirection, TransactionCategory, TransactionStatus, TransactionType
from services.address_labels import AddressLabelResolver
from services.assets import SOL_MINT, TokenInfo
from services.onchain_classifier import OnChainClassifier, attributed_transfers, program_ids

WALLET = "WaLLet1111111111111111111111111111111111111"
SECOND_WALLET = "Sec0nd1111111111111111111111111111111111111"
OTHER = "Other11111111111111111111111111111111111111"
BINANCE_HOT = "5tzFkiKscXHK5ZXCGbXZxdw7gTjjD1mBwuoFbhUvuAi9"
USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
RAY = "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R"

STAKE_PROGRAM = "Stake11111111111111111111111111111111111111"
MARINADE = "MarBmsSgKXdrN1egZf5sqe1TMai9K1rChYNDJgjq7aD"
JUPITER = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"
MEMO_PROGRAM = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"
COMPUTE_BUDGET = "ComputeBudget111111111111111111111111111111"
BPF_LOADER = "BPFLoaderUpgradeab1e11111111111111111111111"

TOKENS = {
    USDC: TokenInfo(symbol="USDC", decimals=6),
    RAY: TokenInfo(symbol="RAY", decimals=6),
}


@pytest.fixture
def classifier() -> OnChainClassifier:
    return OnChainClassifier(token_metadata=TOKENS)


def native(src: str, dst: str, lamports: int) -> dict:
    return {"fromUserAccount": src, "toUserAccount": dst, "amount": lamports}


def token(src: str, dst: str, mint: str, amount) -> dict:
    return {"fromUserAccount": src, "toUserAccount": dst, "mint": mint, "tokenAmount": amount}


def instructions(*program_ids: str) -> list[dict]:
    return [{"programId": pid, "innerInstructions": []} for pid in program_ids]


# ---------------------------------------------------------------------------
# Tests: extracción
# ---------------------------------------------------------------------------


def test_program_ids_include_inner_instructions_without_duplicates():
    payload = {
        "instructions": [
            {"programId": JUPITER, "innerInstructions": [{"programId": "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"}]},
            {"programId": JUPITER},
        ]
    }
    assert program_ids(payload) == [JUPITER, "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"]


def test_attributed_transfers_skip_unrelated_addresses():
    payload = {"nativeTransfers": [native(OTHER, BINANCE_HOT, 1_000_000_000)]}
    assert attributed_transfers(payload, frozenset({WALLET.lower()})) == []


# ---------------------------------------------------------------------------
# Tests: transferencias
# ---------------------------------------------------------------------------


def test_incoming_sol_from_exchange_hot_wallet(classifier):
    payload = {
        "signature": "sig-in",
        "fee": 5000,
        "feePayer": BINANCE_HOT,
        "nativeTransfers": [native(BINANCE_HOT, WALLET, 1_000_000_000)],
    }

    result = classifier.classify(payload, WALLET)

    assert result.tx_type is TransactionType.TRANSFER_IN
    assert result.category is TransactionCategory.TRANSFER_FROM_EXCHANGE
    assert result.status is TransactionStatus.CONFIRMED
    assert result.counterparty == BINANCE_HOT
    # El fee lo pagó el exchange: no hay flujo de comisión
    assert [(f.mint, f.direction, f.amount, f.is_fee) for f in result.flows] == [
        (SOL_MINT, FlowDirection.IN, Decimal("1"), False),
    ]
    assert result.summary == "Received 1 SOL from Binance"


def test_outgoing_token_with_fee_paid_by_wallet(classifier):
    payload = {
        "signature": "sig-out",
        "fee": 5000,
        "feePayer": WALLET,
        "tokenTransfers": [token(WALLET, OTHER, USDC, 25)],
    }

    result = classifier.classify(payload, WALLET)

    assert result.tx_type is TransactionType.TRANSFER_OUT
    assert result.category is TransactionCategory.TRANSFER_OUT
    usdc, fee = result.flows
    assert (usdc.symbol, usdc.direction, usdc.amount, usdc.decimals) == ("USDC", FlowDirection.OUT, Decimal("25"), 6)
    assert usdc.value_usd == Decimal("25")
    assert fee.is_fee and fee.mint == SOL_MINT and fee.amount == Decimal("0.000005")
    assert result.fee == Decimal("0.000005")
    assert result.summary == "Sent 25 USDC to Othe...1111"


def test_outgoing_transfer_to_exchange_is_refined(classifier):
    payload = {"signature": "s", "nativeTransfers": [native(WALLET, BINANCE_HOT, 5_000_000_000)]}
    result = classifier.classify(payload, WALLET)
    assert result.category is TransactionCategory.TRANSFER_TO_EXCHANGE


def test_user_label_wins_in_summary():
    labels = AddressLabelResolver(user_labels={OTHER.lower(): "Cold storage"})
    classifier = OnChainClassifier(token_metadata=TOKENS, labels=labels)
    payload = {"signature": "s", "tokenTransfers": [token(WALLET, OTHER, USDC, 25)]}

    assert classifier.classify(payload, WALLET).summary == "Sent 25 USDC to Cold storage"


def test_fee_payer_from_other_owned_wallet_is_attributed(classifier):
    payload = {
        "signature": "s",
        "fee": 10000,
        "feePayer": SECOND_WALLET,
        "nativeTransfers": [native(OTHER, WALLET, 1_000_000)],
    }

    without = classifier.classify(payload, WALLET)
    with_payer = classifier.classify(payload, WALLET, SECOND_WALLET)

    assert not any(f.is_fee for f in without.flows)
    assert [f.amount for f in with_payer.flows if f.is_fee] == [Decimal("0.00001")]


def test_same_asset_both_directions_decides_by_net(classifier):
    payload = {
        "signature": "s",
        "nativeTransfers": [
            native(OTHER, WALLET, 3_000_000_000),
            native(WALLET, OTHER, 1_000_000_000),
        ],
    }
    assert classifier.classify(payload, WALLET).tx_type is TransactionType.TRANSFER_IN


# ---------------------------------------------------------------------------
# Tests: swaps
# ---------------------------------------------------------------------------


def test_dex_swap_from_transfers(classifier):
    payload = {
        "signature": "s",
        "instructions": instructions(COMPUTE_BUDGET, JUPITER),
        "tokenTransfers": [
            token(WALLET, OTHER, USDC, 100),
            token(OTHER, WALLET, RAY, 50),
        ],
    }

    result = classifier.classify(payload, WALLET)

    assert result.tx_type is TransactionType.SWAP
    assert result.category is TransactionCategory.DISPOSAL_SWAP
    assert result.protocol_name == "Jupiter"
    assert result.swap.strategy == "transfer_aggregation"
    assert result.summary == "Swapped 100 USDC for 50 RAY"


def test_multi_hop_swap_without_event_uses_balance_deltas(classifier):
    payload = {
        "signature": "s",
        "accountData": [
            {"account": WALLET, "nativeBalanceChange": 0, "tokenBalanceChanges": [
                {"userAccount": WALLET, "mint": USDC, "rawTokenAmount": {"tokenAmount": "-100000000", "decimals": 6}},
                {"userAccount": WALLET, "mint": RAY, "rawTokenAmount": {"tokenAmount": "50000000", "decimals": 6}},
            ]},
        ],
    }

    result = classifier.classify(payload, WALLET)

    assert result.tx_type is TransactionType.SWAP
    assert result.swap.strategy == "balance_deltas"
    assert (result.swap.sent.symbol, result.swap.sent.amount) == ("USDC", Decimal("100"))
    assert (result.swap.received.symbol, result.swap.received.amount) == ("RAY", Decimal("50"))
    assert [(f.symbol, f.direction) for f in result.flows] == [
        ("USDC", FlowDirection.OUT),
        ("RAY", FlowDirection.IN),
    ]
    assert result.summary == "Swapped 100 USDC for 50 RAY"


def test_balance_deltas_of_other_owners_are_not_a_swap(classifier):
    payload = {
        "signature": "s",
        "accountData": [
            {"account": "pool", "tokenBalanceChanges": [
                {"userAccount": OTHER, "mint": USDC, "rawTokenAmount": {"tokenAmount": "-100000000", "decimals": 6}},
                {"userAccount": OTHER, "mint": RAY, "rawTokenAmount": {"tokenAmount": "50000000", "decimals": 6}},
            ]},
        ],
    }

    result = classifier.classify(payload, WALLET)

    assert result.tx_type is TransactionType.UNKNOWN
    assert result.flows == ()


def test_different_assets_in_and_out_is_a_swap_by_shape(classifier):
    payload = {
        "signature": "s",
        "nativeTransfers": [native(WALLET, OTHER, 1_000_000_000)],
        "tokenTransfers": [token(OTHER, WALLET, USDC, 150)],
    }
    result = classifier.classify(payload, WALLET)
    assert result.tx_type is TransactionType.SWAP
    assert result.swap.sent.mint == SOL_MINT


def test_unresolved_swap_keeps_generic_summary(classifier):
    result = classifier.classify({"signature": "s", "type": "SWAP"}, WALLET)
    assert result.tx_type is TransactionType.SWAP
    assert result.swap is None
    assert result.summary == "Swap"


# ---------------------------------------------------------------------------
# Tests: staking, memo, programas
# ---------------------------------------------------------------------------


def test_native_stake(classifier):
    payload = {
        "signature": "s",
        "instructions": instructions(STAKE_PROGRAM),
        "nativeTransfers": [native(WALLET, OTHER, 2_000_000_000)],
    }
    result = classifier.classify(payload, WALLET)
    assert result.tx_type is TransactionType.STAKE
    assert result.category is TransactionCategory.TRANSFER_INTERNAL
    assert result.summary == "Staked 2 SOL"


def test_liquid_stake_mentions_protocol(classifier):
    payload = {
        "signature": "s",
        "instructions": instructions(MARINADE),
        "nativeTransfers": [native(WALLET, OTHER, 2_000_000_000)],
    }
    result = classifier.classify(payload, WALLET)
    assert result.summary == "Staked 2 SOL via Marinade Finance (liquid)"


def test_unstake_by_provider_hint(classifier):
    payload = {
        "signature": "s",
        "type": "WITHDRAW_STAKE",
        "instructions": instructions(STAKE_PROGRAM),
        "nativeTransfers": [native(OTHER, WALLET, 2_000_000_000)],
    }
    result = classifier.classify(payload, WALLET)
    assert result.tx_type is TransactionType.UNSTAKE
    assert result.summary == "Unstaked 2 SOL from Native Staking"


def test_memo_only(classifier):
    payload = {"signature": "s", "instructions": instructions(COMPUTE_BUDGET, MEMO_PROGRAM)}
    result = classifier.classify(payload, WALLET)
    assert result.tx_type is TransactionType.MEMO
    assert result.category is TransactionCategory.OTHER
    assert result.summary == "Memo"


def test_memo_with_transfer_is_a_transfer(classifier):
    payload = {
        "signature": "s",
        "instructions": instructions(MEMO_PROGRAM),
        "nativeTransfers": [native(OTHER, WALLET, 1_000_000_000)],
    }
    assert classifier.classify(payload, WALLET).tx_type is TransactionType.TRANSFER_IN


def test_program_deploy_is_program_interaction(classifier):
    payload = {"signature": "s", "instructions": instructions(BPF_LOADER)}
    result = classifier.classify(payload, WALLET)
    assert result.tx_type is TransactionType.PROGRAM_INTERACTION
    assert result.protocol_name == "BPF Loader Upgradeable"


def test_nft_sale_by_provider_type(classifier):
    payload = {"signature": "s", "type": "NFT_SALE", "nativeTransfers": [native(OTHER, WALLET, 3_000_000_000)]}
    assert classifier.classify(payload, WALLET).tx_type is TransactionType.NFT_SALE


# ---------------------------------------------------------------------------
# Tests: casos límite
# ---------------------------------------------------------------------------


def test_failed_transaction_keeps_only_fee_flow(classifier):
    payload = {
        "signature": "s",
        "fee": 5000,
        "feePayer": WALLET,
        "transactionError": {"InstructionError": [0, "Custom"]},
        "tokenTransfers": [token(WALLET, OTHER, USDC, 25)],
    }

    result = classifier.classify(payload, WALLET)

    assert result.status is TransactionStatus.FAILED
    assert len(result.flows) == 1
    assert result.flows[0].is_fee


def test_unknown_program_without_transfers(classifier):
    payload = {"signature": "s", "instructions": instructions("Unkn0wnProgram1111111111111111111111111111")}
    result = classifier.classify(payload, WALLET)
    assert result.tx_type is TransactionType.UNKNOWN
    assert result.category is TransactionCategory.UNKNOWN
    assert result.summary == "Unknown transaction"
    assert result.flows == ()


def test_unknown_token_uses_payload_decimals(classifier):
    mint = "Mint9999999999999999999999999999999999999999"
    payload = {
        "signature": "s",
        "tokenTransfers": [token(OTHER, WALLET, mint, "12.5")],
        "accountData": [
            {"account": "ata", "tokenBalanceChanges": [
                {"userAccount": WALLET, "mint": mint, "rawTokenAmount": {"tokenAmount": "1250", "decimals": 2}},
            ]},
        ],
    }
    flow = classifier.classify(payload, WALLET).flows[0]
    assert flow.decimals == 2
    assert flow.symbol == mint[:6]
