from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from core.errors import LedgerIntegrityError
from core.holdings import aggregate, aggregate_isolated
from core.models import Transaction, TransactionType

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _tx(symbol, kind, qty, price, minute=0, txn_id=None):
    return Transaction(
        id=txn_id or f"{symbol}-{kind}-{minute}",
        asset_symbol=symbol,
        type=TransactionType(kind),
        quantity=Decimal(qty),
        price_per_unit=Decimal(price),
        timestamp=T0 + timedelta(minutes=minute),
    )


def test_average_cost_of_two_buys():
    h = aggregate([
        _tx("BTC", "buy", "1", "10000", 0),
        _tx("BTC", "buy", "1", "20000", 1),
    ])["BTC"]
    assert h.quantity_owned == Decimal("2")
    assert h.total_invested == Decimal("30000")
    assert h.average_cost == Decimal("15000")


def test_sell_keeps_average_cost_and_reduces_invested():
    h = aggregate([
        _tx("BTC", "buy", "1", "10000", 0),
        _tx("BTC", "buy", "1", "20000", 1),
        _tx("BTC", "sell", "1", "50000", 2),
    ])["BTC"]
    assert h.quantity_owned == Decimal("1")
    assert h.total_invested == Decimal("15000")
    assert h.average_cost == Decimal("15000")


def test_fully_sold_asset_is_dropped():
    out = aggregate([
        _tx("ETH", "buy", "2", "1000", 0),
        _tx("ETH", "sell", "2", "3000", 1),
        _tx("SOL", "buy", "10", "20", 2),
    ])
    assert set(out) == {"SOL"}


def test_oversell_raises_with_asset_context():
    with pytest.raises(LedgerIntegrityError) as ei:
        aggregate([
            _tx("BTC", "buy", "1", "10000", 0),
            _tx("BTC", "sell", "2", "10000", 1, txn_id="bad-sell"),
        ])
    assert ei.value.asset_symbol == "BTC"
    assert ei.value.transaction_id == "bad-sell"


def test_isolated_aggregation_keeps_healthy_assets():
    holdings, errors = aggregate_isolated([
        _tx("BTC", "buy", "1", "10000", 0),
        _tx("BTC", "sell", "3", "10000", 1),
        _tx("ETH", "buy", "4", "2500", 2),
    ])
    assert set(holdings) == {"ETH"}
    assert holdings["ETH"].total_invested == Decimal("10000")
    assert [e.asset_symbol for e in errors] == ["BTC"]


def test_sell_before_buy_in_time_order_is_an_oversell():
    with pytest.raises(LedgerIntegrityError):
        aggregate([
            _tx("ADA", "sell", "5", "1", 0),
            _tx("ADA", "buy", "5", "1", 1),
        ])


def test_empty_ledger_gives_no_holdings():
    assert aggregate([]) == {}
