"""
Tests del backfill de valoración.
Flujos y transacciones son SimpleNamespace; la sesión es un AsyncMock cuyo
execute devuelve el lote de flujos pendientes.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from models.transaction import FlowDirection, TransactionType
from services.valuation_backfill import BackfillStats, ValuationBackfill, convert_price

TS = datetime(2024, 3, 1, 15, 30, tzinfo=timezone.utc)


def make_flow(symbol: str, amount: str, direction: FlowDirection, price=None, is_fee: bool = False):
    price = Decimal(price) if price is not None else None
    amount = Decimal(amount)
    return SimpleNamespace(
        id=uuid.uuid4(),
        symbol=symbol,
        amount=amount,
        direction=direction,
        is_fee=is_fee,
        price_at_execution=price,
        value_usd=amount * price if price is not None else None,
    )


def make_tx(tx_type: TransactionType, *flows, total=None):
    tx = SimpleNamespace(id=uuid.uuid4(), type=tx_type, timestamp=TS, flows=list(flows), total_value_usd=total)
    for flow in flows:
        flow.transaction = tx
    return tx


class StubSource:
    def __init__(self, prices: dict[str, Decimal], error: Exception | None = None) -> None:
        self.prices = prices
        self.error = error
        self.calls: list = []

    async def get_usd_price(self, asset, day):
        self.calls.append((asset, day))
        if self.error is not None:
            raise self.error
        return self.prices.get(asset)


def make_db(*batches) -> MagicMock:
    results = []
    for batch in batches:
        result = MagicMock()
        result.scalars.return_value.all.return_value = batch
        results.append(result)
    db = MagicMock()
    db.execute = AsyncMock(side_effect=results)
    db.commit = AsyncMock()
    return db


# ---------------------------------------------------------------------------
# Tests: convert_price
# ---------------------------------------------------------------------------


def test_convert_price_from_usd_leg():
    sol = make_flow("SOL", "2", FlowDirection.IN)
    usdc = make_flow("USDC", "300", FlowDirection.OUT)
    assert convert_price(sol, [sol, usdc]) == Decimal("150")


def test_convert_price_ignores_fees_and_same_direction():
    sol = make_flow("SOL", "2", FlowDirection.IN)
    fee = make_flow("USDT", "1", FlowDirection.OUT, is_fee=True)
    same_side = make_flow("USDC", "300", FlowDirection.IN)
    assert convert_price(sol, [sol, fee, same_side]) is None


def test_convert_price_without_usd_leg():
    sol = make_flow("SOL", "2", FlowDirection.IN)
    bnb = make_flow("BNB", "1", FlowDirection.OUT)
    assert convert_price(sol, [sol, bnb]) is None


# ---------------------------------------------------------------------------
# Tests: _price_flow
# ---------------------------------------------------------------------------


async def test_convert_is_priced_from_its_own_legs():
    sol = make_flow("SOL", "2", FlowDirection.IN)
    usdc = make_flow("USDC", "300", FlowDirection.OUT, price="1")
    make_tx(TransactionType.EXCHANGE_CONVERT, usdc, sol)
    source = StubSource({"SOL": Decimal("999")})
    stats = BackfillStats()

    assert await ValuationBackfill(MagicMock(), source)._price_flow(sol, stats)
    assert sol.price_at_execution == Decimal("150")
    assert sol.value_usd == Decimal("300")
    assert source.calls == []


async def test_external_price_uses_transaction_day():
    sol = make_flow("SOL", "2", FlowDirection.IN)
    make_tx(TransactionType.EXCHANGE_DEPOSIT, sol)
    source = StubSource({"SOL": Decimal("145.123")})
    stats = BackfillStats()

    assert await ValuationBackfill(MagicMock(), source)._price_flow(sol, stats)
    assert source.calls == [("SOL", TS.date())]
    assert sol.value_usd == Decimal("290.246")
    assert stats.priced == 1


async def test_missing_price_counts_as_failed():
    flow = make_flow("PEPE", "1000", FlowDirection.IN)
    make_tx(TransactionType.EXCHANGE_DEPOSIT, flow)
    stats = BackfillStats()

    assert not await ValuationBackfill(MagicMock(), StubSource({}))._price_flow(flow, stats)
    assert stats.failed == 1
    assert flow.price_at_execution is None


async def test_source_error_is_recorded_not_raised():
    flow = make_flow("SOL", "1", FlowDirection.IN)
    make_tx(TransactionType.EXCHANGE_DEPOSIT, flow)
    stats = BackfillStats()

    ok = await ValuationBackfill(MagicMock(), StubSource({}, RuntimeError("boom")))._price_flow(flow, stats)

    assert ok is False
    assert stats.failed == 1
    assert stats.errors == ["SOL: boom"]


# ---------------------------------------------------------------------------
# Tests: run
# ---------------------------------------------------------------------------


async def test_run_prices_batch_and_fills_transaction_total():
    sol = make_flow("SOL", "2", FlowDirection.IN)
    usdc = make_flow("USDC", "200", FlowDirection.OUT, price="1")
    tx = make_tx(TransactionType.EXCHANGE_TRADE, sol, usdc)
    db = make_db([sol])

    stats = await ValuationBackfill(db, StubSource({"SOL": Decimal("150")})).run()

    assert stats.priced == 1
    assert stats.transactions_updated == 1
    assert tx.total_value_usd == Decimal("300")
    db.commit.assert_awaited_once()
    assert stats.finished_at is not None


async def test_run_keeps_existing_transaction_total():
    sol = make_flow("SOL", "2", FlowDirection.IN)
    tx = make_tx(TransactionType.EXCHANGE_DEPOSIT, sol, total=Decimal("10"))
    db = make_db([sol])

    stats = await ValuationBackfill(db, StubSource({"SOL": Decimal("150")})).run()

    assert tx.total_value_usd == Decimal("10")
    assert stats.transactions_updated == 0


async def test_run_pages_until_short_batch():
    flows = [make_flow("SOL", "1", FlowDirection.IN) for _ in range(3)]
    for flow in flows:
        make_tx(TransactionType.EXCHANGE_DEPOSIT, flow)
    db = make_db(flows[:2], flows[2:])

    stats = await ValuationBackfill(db, StubSource({"SOL": Decimal("100")}), batch_size=2).run()

    assert stats.priced == 3
    assert db.execute.await_count == 2
    assert db.commit.await_count == 2


async def test_run_respects_limit():
    flows = [make_flow("SOL", "1", FlowDirection.IN) for _ in range(2)]
    for flow in flows:
        make_tx(TransactionType.EXCHANGE_DEPOSIT, flow)
    db = make_db(flows[:1])

    stats = await ValuationBackfill(db, StubSource({"SOL": Decimal("100")}), batch_size=500).run(limit=1)

    assert stats.priced == 1
    assert db.execute.await_count == 1


async def test_run_with_nothing_pending():
    db = make_db([])
    stats = await ValuationBackfill(db, StubSource({})).run()
    assert stats.priced == 0
    db.commit.assert_not_awaited()
