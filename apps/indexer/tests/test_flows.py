"""
Tests de construcción de flujos canónicos y etiquetas de direcciones.
"""

import uuid
from decimal import Decimal

import pytest

from models.transaction import FlowDirection
from services.address_labels import AddressLabelResolver, short_address
from services.flows import clamp_decimals, flow_rows, make_flow, max_non_fee_value, to_decimal


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("1.5", Decimal("1.5")),
        (0.1, Decimal("0.1")),
        (3, Decimal("3")),
        (" 2 ", Decimal("2")),
        ("abc", None),
        ("NaN", None),
        (None, None),
        (True, None),
    ],
)
def test_to_decimal(value, expected):
    assert to_decimal(value) == expected


def test_make_flow_stores_absolute_amount_and_usd_price():
    flow = make_flow("mint-usdc", "usdc", 6, "-12.5", FlowDirection.OUT)
    assert flow.amount == Decimal("12.5")
    assert flow.symbol == "usdc"
    assert flow.price_usd == Decimal(1)
    assert flow.value_usd == Decimal("12.5")
    assert flow.raw_amount == Decimal("12500000")


def test_make_flow_keeps_symbol_case():
    assert make_flow("mSoLmint", "mSOL", 9, "2", FlowDirection.IN).symbol == "mSOL"
    assert make_flow("jito", " jitoSOL ", 9, "2", FlowDirection.IN).symbol == "jitoSOL"
    assert make_flow("m", "", 9, "2", FlowDirection.IN).symbol is None


def test_make_flow_drops_zero_and_invalid_amounts():
    assert make_flow("m", "SOL", 9, "0", FlowDirection.IN) is None
    assert make_flow("m", "SOL", 9, "x", FlowDirection.IN) is None


def test_make_flow_ignores_non_positive_price():
    flow = make_flow("m", "SOL", 9, "1", FlowDirection.IN, price_usd="0")
    assert flow.price_usd is None
    assert flow.value_usd is None


def test_clamp_decimals():
    assert clamp_decimals(30) == 18
    assert clamp_decimals(-1) == 0
    assert clamp_decimals("x") == 8


def test_max_non_fee_value_ignores_fees():
    flows = [
        make_flow("m1", "USDC", 6, "10", FlowDirection.OUT),
        make_flow("m2", "USDT", 6, "50", FlowDirection.OUT, is_fee=True),
        make_flow("m3", "SOL", 9, "1", FlowDirection.IN),
    ]
    assert max_non_fee_value(flows) == Decimal("10")
    assert max_non_fee_value([]) is None


def test_flow_rows_keep_generation_order():
    tx_id = uuid.uuid4()
    flows = [
        make_flow("m1", "SOL", 9, "1", FlowDirection.IN, price_usd="150"),
        make_flow("m2", "USDC", 6, "150", FlowDirection.OUT),
    ]
    rows = flow_rows(tx_id, flows)
    assert [r["position"] for r in rows] == [0, 1]
    assert all(r["transaction_id"] == tx_id for r in rows)
    assert rows[0]["price_at_execution"] == Decimal("150")
    assert rows[0]["raw_amount"] == Decimal("1000000000")


# ---------------------------------------------------------------------------
# Tests: etiquetas
# ---------------------------------------------------------------------------


def test_short_address():
    assert short_address("5tzFkiKscXHK5ZXCGbXZxdw7gTjjD1mBwuoFbhUvuAi9") == "5tzF...uAi9"
    assert short_address("short") == "short"


def test_label_priority():
    address = "5tzFkiKscXHK5ZXCGbXZxdw7gTjjD1mBwuoFbhUvuAi9"
    assert AddressLabelResolver().label_for(address) == "Binance"
    assert AddressLabelResolver(counterparty_labels={address: "Desk"}).label_for(address) == "Desk"
    resolver = AddressLabelResolver(user_labels={address: "Mine"}, counterparty_labels={address: "Desk"})
    assert resolver.label_for(address) == "Mine"
    assert resolver.label_for(None) is None
