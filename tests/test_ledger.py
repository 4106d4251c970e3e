import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from core.errors import LedgerIntegrityError, LedgerReadError
from core.models import TransactionType
from storage.ledger import TransactionLedger


def _dt(day):
    return datetime(2024, 1, day, tzinfo=timezone.utc)


@pytest.fixture
def ledger(tmp_path):
    return TransactionLedger(str(tmp_path / "portfolio.json"))


def test_transactions_come_back_in_time_order(ledger):
    ledger.add_transaction("eth", "buy", "1", "2000", timestamp=_dt(3))
    ledger.add_transaction("btc", "buy", "0.5", "40000", timestamp=_dt(1))
    ledger.add_transaction("btc", "buy", "0.5", "42000", timestamp=_dt(2))

    rows = ledger.list_transactions()
    assert [r.timestamp.day for r in rows] == [1, 2, 3]
    assert rows[0].asset_symbol == "BTC"
    assert rows[0].quantity == Decimal("0.5")
    assert [r.asset_symbol for r in ledger.list_transactions("btc")] == ["BTC", "BTC"]


def test_invalid_quantity_is_rejected(ledger):
    with pytest.raises(LedgerIntegrityError):
        ledger.add_transaction("btc", "buy", "0", "100")
    with pytest.raises(LedgerIntegrityError):
        ledger.add_transaction("btc", "buy", "abc", "100")
    assert not ledger.has_transactions()


def test_sell_larger_than_position_is_refused(ledger):
    ledger.add_transaction("btc", "buy", "1", "30000", timestamp=_dt(1))
    with pytest.raises(LedgerIntegrityError) as ei:
        ledger.add_transaction("btc", "sell", "2", "35000", timestamp=_dt(2))
    assert ei.value.asset_symbol == "BTC"
    assert len(ledger.list_transactions()) == 1

    sold = ledger.add_transaction("btc", TransactionType.SELL, "1", "35000", timestamp=_dt(2))
    assert sold.type is TransactionType.SELL


def test_edit_bumps_version(ledger):
    t = ledger.add_transaction("btc", "buy", "1", "30000", timestamp=_dt(1), exchange="kraken")
    edited = ledger.update_transaction(t.id, price_per_unit=Decimal("31000"))
    assert edited.version == 2
    assert edited.price_per_unit == Decimal("31000")
    assert edited.exchange == "kraken"
    assert ledger.get_transaction(t.id).version == 2


def test_edit_unknown_id_or_field(ledger):
    t = ledger.add_transaction("btc", "buy", "1", "30000")
    with pytest.raises(KeyError):
        ledger.update_transaction("nope", quantity="2")
    with pytest.raises(ValueError):
        ledger.update_transaction(t.id, colour="red")


def test_delete_transaction_and_asset(ledger):
    a = ledger.add_transaction("btc", "buy", "1", "30000", timestamp=_dt(1))
    ledger.add_transaction("btc", "buy", "1", "31000", timestamp=_dt(2))
    ledger.add_transaction("eth", "buy", "3", "2000", timestamp=_dt(3))

    assert ledger.delete_transaction(a.id) is True
    assert ledger.delete_transaction(a.id) is False
    assert ledger.delete_asset("BTC") == 1
    assert [t.asset_symbol for t in ledger.list_transactions()] == ["ETH"]


def test_malformed_rows_are_reported_not_fatal(tmp_path):
    path = tmp_path / "portfolio.json"
    path.write_text(json.dumps({"version": 1, "transactions": [
        {"id": "a", "asset_symbol": "BTC", "type": "buy", "quantity": "1",
         "price_per_unit": "100", "timestamp": "2024-01-01T00:00:00Z"},
        {"id": "b", "asset_symbol": "ETH", "type": "buy", "quantity": "lots",
         "price_per_unit": "100", "timestamp": "2024-01-01T00:00:00Z"},
        {"id": "c", "asset_symbol": "SOL", "type": "swap", "quantity": "1",
         "price_per_unit": "100", "timestamp": "2024-01-01T00:00:00Z"},
    ]}), encoding="utf-8")
    ledger = TransactionLedger(str(path))

    rows, errors = ledger.read_transactions()
    assert [r.id for r in rows] == ["a"]
    assert sorted(e.asset_symbol for e in errors) == ["ETH", "SOL"]

    rows, errors = ledger.read_transactions("eth")
    assert rows == []
    assert [e.transaction_id for e in errors] == ["b"]


def test_unreadable_file_raises_read_error(tmp_path):
    path = tmp_path / "portfolio.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(LedgerReadError):
        TransactionLedger(str(path)).list_transactions()


def test_back_dated_sell_is_checked_against_holdings_at_that_date(ledger):
    ledger.add_transaction("btc", "buy", "1", "60000", timestamp=datetime(2024, 6, 1, tzinfo=timezone.utc))
    with pytest.raises(LedgerIntegrityError) as ei:
        ledger.add_transaction("btc", "sell", "1", "8000", timestamp=datetime(2020, 1, 1, tzinfo=timezone.utc))
    assert "Cannot sell" in str(ei.value)
    assert len(ledger.list_transactions()) == 1


def test_edit_that_would_oversell_is_refused(ledger):
    buy = ledger.add_transaction("btc", "buy", "2", "30000", timestamp=_dt(1))
    ledger.add_transaction("btc", "sell", "1.5", "35000", timestamp=_dt(5))

    with pytest.raises(LedgerIntegrityError):
        ledger.update_transaction(buy.id, quantity=Decimal("1"))
    with pytest.raises(LedgerIntegrityError):
        ledger.update_transaction(buy.id, timestamp=_dt(9))
    assert ledger.get_transaction(buy.id).version == 1

    assert ledger.update_transaction(buy.id, quantity=Decimal("1.5")).version == 2


def test_deleting_a_buy_that_a_sell_depends_on_is_refused(ledger):
    buy = ledger.add_transaction("eth", "buy", "3", "2000", timestamp=_dt(1))
    ledger.add_transaction("eth", "sell", "2", "2500", timestamp=_dt(2))
    with pytest.raises(LedgerIntegrityError):
        ledger.delete_transaction(buy.id)
    assert len(ledger.list_transactions("eth")) == 2
