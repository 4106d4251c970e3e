import json
from decimal import Decimal

import pytest
from rich.console import Console

import cli
import storage.json_store as js
from storage.ledger import TransactionLedger


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setattr(js, "HOME_DIR", str(tmp_path))
    monkeypatch.setattr(js, "CONFIG_PATH", str(tmp_path / "config.json"))
    monkeypatch.setattr(js, "PORTFOLIO_PATH", str(tmp_path / "portfolio.json"))
    monkeypatch.setattr(js, "HISTORY_PATH", str(tmp_path / "history.jsonl"))
    return tmp_path


def test_buy_arguments_parse_to_decimals():
    args = cli.build_parser().parse_args(
        ["buy", "btc", "0.5", "--price", "30,000", "--date", "2024-01-02"])
    assert args.qty == Decimal("0.5")
    assert args.price == Decimal("30000")
    assert args.date.year == 2024 and args.date.tzinfo is not None
    assert args.func is cli.cmd_buy


def test_rm_needs_id_or_asset():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["rm"])


def test_oversell_is_reported_not_recorded(home, capsys):
    args = cli.build_parser().parse_args(["sell", "btc", "1", "--price", "100"])
    args.func(args)
    assert "Cannot sell" in capsys.readouterr().out
    assert not TransactionLedger(js.PORTFOLIO_PATH).has_transactions()


def test_tx_lists_recorded_transactions(home, capsys, monkeypatch):
    monkeypatch.setattr(cli, "console", Console(width=200))
    TransactionLedger(js.PORTFOLIO_PATH).add_transaction("eth", "buy", "2", "1800", exchange="coinbase")
    args = cli.build_parser().parse_args(["tx"])
    args.func(args)
    out = capsys.readouterr().out
    assert "ETH" in out
    assert "coinbase" in out


def test_config_set_and_add_symbol(home, capsys):
    args = cli.build_parser().parse_args(
        ["config", "--set", "refresh_timeout_sec=5", "--add-symbol", "doge=dogecoin"])
    args.func(args)
    with open(js.CONFIG_PATH, "r", encoding="utf-8") as f:
        cfg = json.load(f)
    assert cfg["refresh_timeout_sec"] == 5.0
    assert cfg["symbols_map"]["doge"] == "dogecoin"


def test_config_rejects_unknown_key(home):
    args = cli.build_parser().parse_args(["config", "--set", "outlier_window=3"])
    with pytest.raises(ValueError):
        args.func(args)


def test_history_without_data(home, capsys):
    args = cli.build_parser().parse_args(["history"])
    args.func(args)
    assert "No history yet" in capsys.readouterr().out
