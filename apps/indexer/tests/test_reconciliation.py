"""
Tests de la reconciliación exchange ↔ on-chain.

El matching es puro y se prueba con objetos ligeros (SimpleNamespace) que
exponen lo mismo que las filas ORM: id, flows y linked_transaction_id.
link_pair se prueba con una sesión AsyncMock; el motor, con una sesión cuyas
consultas devuelven resultados en orden (side_effect) y link_pair sustituido.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from models.transaction import TransactionCategory, TransactionType
from services import reconciliation
from services.reconciliation import (
    DEFAULT_DEPOSIT_LOOKBACK,
    DEFAULT_OFF_RAMP_WINDOW,
    DEFAULT_WITHDRAWAL_LOOKAHEAD,
    ReconciliationEngine,
    ReconciliationStats,
    amount_within_tolerance,
    find_fuzzy_match,
    is_off_ramp,
    link_pair,
    match_window,
    same_asset,
    unlink_pair,
)

SOL_MINT = "So11111111111111111111111111111111111111112"
T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_flow(amount: str, mint: str = SOL_MINT, symbol: str = "SOL", is_fee: bool = False):
    return SimpleNamespace(mint=mint, symbol=symbol, amount=Decimal(amount), is_fee=is_fee)


def make_tx(*flows, linked=None, timestamp=T0):
    return SimpleNamespace(id=uuid.uuid4(), flows=list(flows), linked_transaction_id=linked, timestamp=timestamp)


# ---------------------------------------------------------------------------
# Tests: tolerancia y activo
# ---------------------------------------------------------------------------


def test_tolerance_is_relative_to_exchange_amount():
    assert amount_within_tolerance(Decimal("5"), Decimal("4.97"))
    assert amount_within_tolerance(Decimal("5"), Decimal("4.9"))  # 2% exacto
    assert not amount_within_tolerance(Decimal("5"), Decimal("4.89"))
    assert not amount_within_tolerance(Decimal("5"), Decimal("4.5"))


def test_tolerance_floor_for_tiny_amounts():
    assert amount_within_tolerance(Decimal("0"), Decimal("0.000001"))


def test_same_asset_by_mint_or_synthetic_symbol():
    assert same_asset(SOL_MINT, "SOL", SOL_MINT, None)
    assert same_asset("exchange:JUP", "JUP", "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN", "jup")
    assert not same_asset("mint-a", "USDC", "mint-b", "USDC")


# ---------------------------------------------------------------------------
# Tests: ventanas
# ---------------------------------------------------------------------------


def test_deposit_window_looks_back_newest_first():
    onchain_type, start, end, descending = match_window(TransactionType.EXCHANGE_DEPOSIT, T0)
    assert onchain_type is TransactionType.TRANSFER_OUT
    assert (start, end) == (T0 - DEFAULT_DEPOSIT_LOOKBACK, T0)
    assert descending is True


def test_withdrawal_window_looks_ahead_oldest_first():
    onchain_type, start, end, descending = match_window(TransactionType.EXCHANGE_WITHDRAWAL, T0)
    assert onchain_type is TransactionType.TRANSFER_IN
    assert (start, end) == (T0, T0 + DEFAULT_WITHDRAWAL_LOOKAHEAD)
    assert descending is False


def test_custom_window_sizes():
    _, start, end, _ = match_window(
        TransactionType.EXCHANGE_WITHDRAWAL, T0, timedelta(minutes=5), timedelta(minutes=10)
    )
    assert end - start == timedelta(minutes=10)


# ---------------------------------------------------------------------------
# Tests: match difuso
# ---------------------------------------------------------------------------


def test_withdrawal_links_to_transfer_in_within_tolerance():
    withdrawal = make_tx(make_flow("5"))
    arrival = make_tx(make_flow("4.97"), timestamp=T0 + timedelta(minutes=30))

    assert find_fuzzy_match(withdrawal, [arrival]) is arrival


def test_amount_outside_tolerance_does_not_link():
    withdrawal = make_tx(make_flow("5"))
    arrival = make_tx(make_flow("4.5"), timestamp=T0 + timedelta(minutes=30))

    assert find_fuzzy_match(withdrawal, [arrival]) is None


def test_first_acceptable_candidate_wins():
    withdrawal = make_tx(make_flow("5"))
    first = make_tx(make_flow("4.95"))
    closer = make_tx(make_flow("5"))

    assert find_fuzzy_match(withdrawal, [first, closer]) is first


def test_linked_candidates_and_fee_flows_are_ignored():
    withdrawal = make_tx(make_flow("5"))
    already_linked = make_tx(make_flow("5"), linked=uuid.uuid4())
    fee_only = make_tx(make_flow("5", is_fee=True))
    other_asset = make_tx(make_flow("5", mint="mint-usdc", symbol="USDC"))

    assert find_fuzzy_match(withdrawal, [already_linked, fee_only, other_asset]) is None


def test_exchange_tx_without_principal_flow_never_matches():
    withdrawal = make_tx(make_flow("0.01", is_fee=True))
    assert find_fuzzy_match(withdrawal, [make_tx(make_flow("0.01"))]) is None


def test_candidate_flows_beyond_the_first_are_considered():
    deposit = make_tx(make_flow("100", mint="mint-usdc", symbol="USDC"))
    send = make_tx(make_flow("0.000005", is_fee=True), make_flow("0.1"), make_flow("99.5", mint="mint-usdc", symbol="USDC"))

    assert find_fuzzy_match(deposit, [send]) is send


def test_custom_tolerance():
    withdrawal = make_tx(make_flow("5"))
    arrival = make_tx(make_flow("4.5"))
    assert find_fuzzy_match(withdrawal, [arrival], Decimal("0.1")) is arrival


# ---------------------------------------------------------------------------
# Tests: link_pair
# ---------------------------------------------------------------------------


def make_session(rowcount: int | None = None, error: Exception | None = None):
    savepoint = MagicMock()
    savepoint.rollback = AsyncMock()
    savepoint.commit = AsyncMock()

    db = MagicMock()
    db.begin_nested = AsyncMock(return_value=savepoint)
    db.commit = AsyncMock()
    if error is not None:
        db.execute = AsyncMock(side_effect=error)
    else:
        db.execute = AsyncMock(return_value=MagicMock(rowcount=rowcount))
    return db, savepoint


async def test_link_pair_commits_when_both_rows_update():
    db, savepoint = make_session(rowcount=2)

    assert await link_pair(db, uuid.uuid4(), uuid.uuid4()) is True
    savepoint.commit.assert_awaited_once()
    savepoint.rollback.assert_not_awaited()
    db.commit.assert_awaited_once()


async def test_link_pair_rolls_back_half_link():
    db, savepoint = make_session(rowcount=1)

    assert await link_pair(db, uuid.uuid4(), uuid.uuid4()) is False
    savepoint.rollback.assert_awaited_once()
    db.commit.assert_not_awaited()


async def test_link_pair_conflict_is_not_raised():
    db, savepoint = make_session(error=IntegrityError("UPDATE", {}, Exception("duplicate key")))

    assert await link_pair(db, uuid.uuid4(), uuid.uuid4()) is False
    savepoint.rollback.assert_awaited_once()


async def test_link_pair_refuses_self_link():
    db, _ = make_session(rowcount=2)
    same = uuid.uuid4()

    assert await link_pair(db, same, same) is False
    db.execute.assert_not_awaited()


async def test_unlink_pair_clears_both_sides():
    db = MagicMock()
    db.execute = AsyncMock(return_value=MagicMock(rowcount=2))
    db.commit = AsyncMock()

    assert await unlink_pair(db, uuid.uuid4()) == 2
    db.execute.assert_awaited_once()
    db.commit.assert_awaited_once()


async def test_unlink_pair_without_link_changes_nothing():
    db = MagicMock()
    db.execute = AsyncMock(return_value=MagicMock(rowcount=0))
    db.commit = AsyncMock()

    assert await unlink_pair(db, uuid.uuid4()) == 0


def test_stats_matched_sums_both_strategies():
    stats = ReconciliationStats(matched_exact=2, matched_fuzzy=3, unmatched=1)
    stats.finish()
    assert stats.matched == 5
    assert stats.finished_at is not None


@pytest.mark.parametrize("candidate", ["5.1", "4.9"])
def test_tolerance_boundary_is_inclusive(candidate):
    assert amount_within_tolerance(Decimal("5"), Decimal(candidate))


# ---------------------------------------------------------------------------
# Tests: off-ramp
# ---------------------------------------------------------------------------


def test_off_ramp_window_is_half_open_after_deposit():
    assert is_off_ramp(T0, [T0 + timedelta(hours=2)])
    assert is_off_ramp(T0, [T0])
    assert not is_off_ramp(T0, [T0 + DEFAULT_OFF_RAMP_WINDOW])
    assert not is_off_ramp(T0, [T0 - timedelta(minutes=1)])
    assert not is_off_ramp(T0, [])


# ---------------------------------------------------------------------------
# Tests: motor
# ---------------------------------------------------------------------------


def rows(*items):
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(items)
    result.scalars.return_value.first.return_value = items[0] if items else None
    return result


def exchange_tx(tx_type, amount: str, reference=None, timestamp=T0):
    tx = make_tx(make_flow(amount), timestamp=timestamp)
    tx.type = tx_type
    tx.onchain_reference = reference
    return tx


def make_engine(*results):
    db = MagicMock()
    db.execute = AsyncMock(side_effect=list(results))
    db.commit = AsyncMock()
    return ReconciliationEngine(db), db


@pytest.fixture
def link(monkeypatch):
    mock = AsyncMock(return_value=True)
    monkeypatch.setattr(reconciliation, "link_pair", mock)
    return mock


@pytest.fixture
def connection():
    return SimpleNamespace(id=uuid.uuid4(), owner_id=uuid.uuid4())


def compiled_sql(db, call_index: int) -> str:
    return str(db.execute.await_args_list[call_index].args[0])


async def test_exact_match_by_onchain_reference_skips_fuzzy(link, connection):
    withdrawal = exchange_tx(TransactionType.EXCHANGE_WITHDRAWAL, "5", reference="5sig")
    partner = make_tx(make_flow("4.99"))
    engine, db = make_engine(rows(uuid.uuid4()), rows(withdrawal), rows(), rows(partner))

    stats = await engine.reconcile_connection(connection)

    assert (stats.matched_exact, stats.matched_fuzzy, stats.unmatched) == (1, 0, 0)
    link.assert_awaited_once_with(db, withdrawal.id, partner.id)
    # wallets, pendientes, ventas y la búsqueda por firma; nunca la ventana difusa
    assert db.execute.await_count == 4
    assert "transactions.signature" in compiled_sql(db, 3)


async def test_reference_without_onchain_row_falls_back_to_fuzzy(link, connection):
    withdrawal = exchange_tx(TransactionType.EXCHANGE_WITHDRAWAL, "5", reference="5sig")
    candidate = make_tx(make_flow("5"), timestamp=T0 + timedelta(minutes=5))
    engine, db = make_engine(rows(uuid.uuid4()), rows(withdrawal), rows(), rows(), rows(candidate))

    stats = await engine.reconcile_connection(connection)

    assert (stats.matched_exact, stats.matched_fuzzy) == (0, 1)
    link.assert_awaited_once_with(db, withdrawal.id, candidate.id)


async def test_without_wallets_everything_stays_unmatched(link, connection):
    pending = [
        exchange_tx(TransactionType.EXCHANGE_DEPOSIT, "1"),
        exchange_tx(TransactionType.EXCHANGE_WITHDRAWAL, "2", reference="sig"),
    ]
    engine, db = make_engine(rows(), rows(*pending))

    stats = await engine.reconcile_connection(connection)

    assert stats.unmatched == 2
    assert stats.matched == 0
    assert stats.finished_at is not None
    assert db.execute.await_count == 2
    link.assert_not_awaited()


async def test_withdrawal_links_closest_amount_not_first_in_window(link, connection):
    # Retiro de 5 SOL: llegan 4.5 (fuera de tolerancia) y luego 4.97 (comisión de red)
    withdrawal = exchange_tx(TransactionType.EXCHANGE_WITHDRAWAL, "5")
    too_small = make_tx(make_flow("4.5"), timestamp=T0 + timedelta(minutes=10))
    arrival = make_tx(make_flow("4.97"), timestamp=T0 + timedelta(minutes=30))
    engine, db = make_engine(rows(uuid.uuid4()), rows(withdrawal), rows(), rows(too_small, arrival))

    stats = await engine.reconcile_connection(connection)

    assert stats.matched_fuzzy == 1
    link.assert_awaited_once_with(db, withdrawal.id, arrival.id)
    window = compiled_sql(db, 3)
    assert "transactions.timestamp ASC" in window
    assert "transactions.linked_transaction_id IS NULL" in window


async def test_already_linked_rows_are_never_relinked(link, connection):
    deposit = exchange_tx(TransactionType.EXCHANGE_DEPOSIT, "5")
    taken = make_tx(make_flow("5"), linked=uuid.uuid4(), timestamp=T0 - timedelta(minutes=5))
    engine, db = make_engine(rows(uuid.uuid4()), rows(deposit), rows(), rows(taken))

    stats = await engine.reconcile_connection(connection)

    assert stats.unmatched == 1
    link.assert_not_awaited()
    assert "transactions.linked_transaction_id IS NULL" in compiled_sql(db, 1)


async def test_failed_link_counts_as_unmatched(link, connection):
    link.return_value = False
    deposit = exchange_tx(TransactionType.EXCHANGE_DEPOSIT, "5")
    candidate = make_tx(make_flow("5"), timestamp=T0 - timedelta(minutes=5))
    engine, _ = make_engine(rows(uuid.uuid4()), rows(deposit), rows(), rows(candidate))

    stats = await engine.reconcile_connection(connection)

    assert (stats.matched, stats.unmatched) == (0, 1)


async def test_stats_count_each_strategy(link, connection):
    exact = exchange_tx(TransactionType.EXCHANGE_WITHDRAWAL, "1", reference="sig-a")
    fuzzy = exchange_tx(TransactionType.EXCHANGE_DEPOSIT, "2")
    orphan = exchange_tx(TransactionType.EXCHANGE_DEPOSIT, "3")
    engine, _ = make_engine(
        rows(uuid.uuid4()),
        rows(exact, fuzzy, orphan),
        rows(),
        rows(make_tx(make_flow("1"))),
        rows(make_tx(make_flow("2"), timestamp=T0 - timedelta(minutes=1))),
        rows(),
    )

    stats = await engine.reconcile_connection(connection)

    assert (stats.matched_exact, stats.matched_fuzzy, stats.unmatched) == (1, 1, 1)
    assert stats.matched == 2
    assert stats.off_ramps == 0
    assert link.await_count == 2


async def test_deposit_followed_by_sale_flags_onchain_transfer(link, connection):
    deposit = exchange_tx(TransactionType.EXCHANGE_DEPOSIT, "5")
    sent = make_tx(make_flow("5"), timestamp=T0 - timedelta(minutes=5))
    engine, db = make_engine(
        rows(uuid.uuid4()),
        rows(deposit),
        rows(T0 + timedelta(hours=2)),
        rows(sent),
        MagicMock(),  # UPDATE de la transferencia on-chain
    )

    stats = await engine.reconcile_connection(connection)

    assert stats.off_ramps == 1
    stmt = db.execute.await_args_list[-1].args[0]
    params = stmt.compile().params
    assert params["category"] is TransactionCategory.DISPOSAL_SALE
    assert params["needs_review"] is True
    assert sent.id in params.values()
    db.commit.assert_awaited_once()


async def test_sale_outside_window_or_after_withdrawal_is_not_off_ramp(link, connection):
    deposit = exchange_tx(TransactionType.EXCHANGE_DEPOSIT, "5")
    withdrawal = exchange_tx(TransactionType.EXCHANGE_WITHDRAWAL, "1", timestamp=T0 + timedelta(hours=30))
    engine, db = make_engine(
        rows(uuid.uuid4()),
        rows(deposit, withdrawal),
        rows(T0 + timedelta(hours=25), T0 + timedelta(hours=31)),
        rows(make_tx(make_flow("5"), timestamp=T0 - timedelta(minutes=5))),
        rows(make_tx(make_flow("1"), timestamp=T0 + timedelta(hours=30, minutes=5))),
    )

    stats = await engine.reconcile_connection(connection)

    assert stats.matched_fuzzy == 2
    assert stats.off_ramps == 0
    assert db.execute.await_count == 5
    db.commit.assert_not_awaited()
