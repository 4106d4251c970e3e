# cli.py
import argparse
import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from rich.console import Console
from rich.table import Table

from core.errors import LedgerIntegrityError, PortfolioError
from core.models import Freshness, PortfolioSummary
from scheduler.runner import run_daemon
from services.portfolio_service import PortfolioService
from services.price_source import CoinGeckoPriceSource
from storage.json_store import (
    read_config, write_config, ensure_config_exists, read_last_history, write_json,
)
import storage.json_store as js
from storage.ledger import TransactionLedger
from storage.snapshot_store import SnapshotStore
from utils.logging import get_logger, setup_logging

log = get_logger("cli")
console = Console()

FRESHNESS_STYLE = {
    Freshness.LIVE: "green",
    Freshness.CACHED: "yellow",
    Freshness.FALLBACK: "magenta",
    Freshness.MISSING: "red",
}


def build_service(cfg: dict, vs_currency: str = None) -> PortfolioService:
    """Wire the service from config. The CLI owns its lifecycle."""
    vs = (vs_currency or cfg.get("vs_currency", "usd")).lower()
    return PortfolioService(
        ledger=TransactionLedger(js.PORTFOLIO_PATH),
        price_source=CoinGeckoPriceSource(
            vs_currency=vs,
            cache_ttl_sec=float(cfg.get("price_cache_ttl_sec", js.DEFAULT_CONFIG["price_cache_ttl_sec"])),
        ),
        snapshot_store=SnapshotStore(js.SNAPSHOT_DIR, history_path=js.HISTORY_PATH),
        symbols_map=cfg.get("symbols_map", {}),
        refresh_timeout_sec=float(cfg.get("refresh_timeout_sec", js.DEFAULT_CONFIG["refresh_timeout_sec"])),
        stale_after=timedelta(hours=float(cfg.get("stale_after_hours", js.DEFAULT_CONFIG["stale_after_hours"]))),
        logger=get_logger("portfolio_service"),
    )


def _resolve_symbol_to_id(symbol: str, cfg: dict) -> str:
    m = cfg.get("symbols_map", {})
    sid = m.get(symbol.lower())
    if not sid:
        raise ValueError(
            f"Unknown symbol '{symbol}'. Add it via `crypto config --add-symbol {symbol.lower()}=<coingecko_id>`."
        )
    return sid


def _decimal_arg(value: str) -> Decimal:
    try:
        return Decimal(value.replace(",", ""))
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"'{value}' is not a number")


def _date_arg(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not a YYYY-MM-DD date")


def _money(d: Decimal) -> str:
    return f"${d:,.2f}"


def _print_report(summary: PortfolioSummary, vs: str = "usd"):
    table = Table(title="Crypto Portfolio")
    table.add_column("Symbol", justify="left")
    table.add_column("Qty", justify="right")
    table.add_column("Avg cost", justify="right")
    table.add_column(f"Price ({vs.upper()})", justify="right")
    table.add_column("24h", justify="right")
    table.add_column("Value", justify="right")
    table.add_column("P/L", justify="right")
    table.add_column("Source", justify="left")

    for v in summary.asset_valuations:
        style = FRESHNESS_STYLE[v.freshness]
        table.add_row(
            v.asset_symbol,
            f"{v.holding.quantity_owned:,.8f}".rstrip("0").rstrip("."),
            _money(v.holding.average_cost),
            _money(v.current_price) if v.freshness is not Freshness.MISSING else "–",
            f"{v.price_change_percent_24h:+.2f}%",
            _money(v.current_value),
            _money(v.unrealized_pnl),
            f"[{style}]{v.freshness.value}[/{style}]",
        )
    table.add_row("", "", "", "", "", "", "", "")
    table.add_row(
        "[b]TOTAL[/b]", "", "", "", "",
        f"[b]{_money(summary.total_value)}[/b]",
        f"[b]{_money(summary.profit_loss)} ({summary.profit_loss_percent:+.2f}%)[/b]",
        summary.price_data_freshness.value,
    )
    console.print(table)
    console.print(f"Invested: {_money(summary.total_invested)}   "
                  f"computed {summary.computed_at.isoformat(timespec='seconds')}")
    if summary.price_data_freshness is not Freshness.LIVE:
        console.print("[yellow]Some prices are not live; figures may be stale.[/yellow]")


def _report_service_warnings(service: PortfolioService):
    if service.last_warning is not None:
        console.print(f"[yellow]Warning:[/yellow] {service.last_warning}")
    for e in service.integrity_errors:
        console.print(f"[red]Ledger problem ({e.asset_symbol or '?'}):[/red] {e}")


async def one_cycle(service: PortfolioService, vs_currency: str = "usd") -> PortfolioSummary:
    if not service.is_initialized:
        # first cycle: initialize() already fetched, or revalidates in the background
        await service.initialize()
        await service.drain()
        summary = service.get_cached_summary()
    else:
        try:
            summary = await service.refresh()
        except PortfolioError as e:
            log.warning("Refresh failed (%s). Showing last known data.", e)
            console.print(f"[yellow]Refresh failed:[/yellow] {e}")
            summary = service.get_cached_summary()
    _print_report(summary, vs_currency)
    _report_service_warnings(service)
    await service.drain()
    return summary

# -------- Commands --------

def cmd_track(args: argparse.Namespace):
    cfg = read_config()
    vs = args.fiat or cfg.get("vs_currency", "usd")
    service = build_service(cfg, vs)
    asyncio.run(one_cycle(service, vs))


def cmd_daemon(args: argparse.Namespace):
    cfg = read_config()
    vs = args.fiat or cfg.get("vs_currency", "usd")
    interval = args.interval or int(cfg.get("update_interval_sec", 600))
    service = build_service(cfg, vs)

    async def job():
        await one_cycle(service, vs)

    try:
        asyncio.run(run_daemon(job_fn=job, interval_sec=interval, jitter_sec=args.jitter))
    except KeyboardInterrupt:
        print("\nStopped.")


def _record(args: argparse.Namespace, kind: str):
    cfg = read_config()
    ledger = TransactionLedger(js.PORTFOLIO_PATH)
    try:
        txn = ledger.add_transaction(
            asset_symbol=args.symbol,
            type=kind,
            quantity=args.qty,
            price_per_unit=args.price,
            timestamp=args.date,
            exchange=args.exchange,
        )
    except LedgerIntegrityError as e:
        print(str(e))
        return
    print(f"Recorded {kind.upper()} {txn.quantity} {txn.asset_symbol} @ {txn.price_per_unit} (id {txn.id})")
    asyncio.run(one_cycle(build_service(cfg), cfg.get("vs_currency", "usd")))


def cmd_buy(args: argparse.Namespace):
    _record(args, "buy")


def cmd_sell(args: argparse.Namespace):
    _record(args, "sell")


def cmd_edit(args: argparse.Namespace):
    changes = {
        "quantity": args.qty,
        "price_per_unit": args.price,
        "timestamp": args.date,
        "exchange": args.exchange,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        print("Nothing to change. Pass --qty, --price, --date or --exchange.")
        return
    ledger = TransactionLedger(js.PORTFOLIO_PATH)
    try:
        txn = ledger.update_transaction(args.id, **changes)
    except KeyError:
        print(f"No transaction with id {args.id}.")
        return
    except LedgerIntegrityError as e:
        print(str(e))
        return
    print(f"Updated {txn.id} (version {txn.version}).")


def cmd_rm(args: argparse.Namespace):
    cfg = read_config()
    if args.asset:
        service = build_service(cfg)

        async def run():
            summary = await service.delete_asset(args.asset)
            await service.drain()
            return summary

        asyncio.run(run())
        print(f"Removed ALL transactions of {args.asset.upper()}.")
        return

    ledger = TransactionLedger(js.PORTFOLIO_PATH)
    try:
        removed = ledger.delete_transaction(args.id)
    except LedgerIntegrityError as e:
        print(str(e))
        return
    if removed:
        print(f"Removed transaction {args.id}.")
    else:
        print(f"No transaction with id {args.id}.")


def cmd_tx(args: argparse.Namespace):
    ledger = TransactionLedger(js.PORTFOLIO_PATH)
    rows, errors = ledger.read_transactions(args.symbol)
    if not rows:
        print("No transactions yet. Record one with `crypto buy`.")
        return
    t = Table(title="Transactions")
    for col in ("Date", "Type", "Symbol", "Qty", "Price", "Exchange", "Id"):
        t.add_column(col)
    for r in rows:
        t.add_row(r.timestamp.date().isoformat(), r.type.value.upper(), r.asset_symbol,
                  str(r.quantity), _money(r.price_per_unit), r.exchange or "", r.id)
    console.print(t)
    for e in errors:
        console.print(f"[red]Unreadable row:[/red] {e}")


def cmd_price(args: argparse.Namespace):
    cfg = read_config()
    vs = args.fiat or cfg.get("vs_currency", "usd")

    # parse comma-separated symbols: "btc,eth,ada"
    syms = [s.strip().lower() for s in args.symbols.split(",") if s.strip()]
    if not syms:
        print("Provide symbols, e.g., crypto price btc,eth --fiat usd")
        return

    # resolve each symbol -> coingecko id
    ids = [_resolve_symbol_to_id(s, cfg) for s in syms]
    source = CoinGeckoPriceSource(vs_currency=vs)
    quotes = asyncio.run(source.get_batch_prices(ids))
    # print results in symbol order
    for s, cid in zip(syms, ids):
        q = quotes.get(cid)
        if q is None:
            print(f"{s.upper():<6} unavailable")
        else:
            print(f"{s.upper():<6} ${q.price:,.4f}  {q.change_percent_24h:+.2f}%  [{q.freshness.value}]")


def cmd_history(args: argparse.Namespace):
    rows = read_last_history(args.last, js.HISTORY_PATH)
    if not rows:
        print("No history yet. Run `crypto track` or start the daemon.")
        return

    if args.table:
        t = Table(title=f"Last {len(rows)} snapshots")
        t.add_column("Timestamp", justify="left")
        t.add_column("Total Value", justify="right")
        t.add_column("P/L", justify="right")
        t.add_column("Δ vs prev", justify="right")
        t.add_column("Source", justify="left")
        prev = None
        for r in rows:
            total = Decimal(r.get("total_value", "0"))
            if prev is None:
                delta = "–"
            else:
                diff = total - prev
                pct = (diff / prev * 100) if prev else Decimal("0")
                delta = f"{diff:+,.2f} ({pct:+.2f}%)"
            t.add_row(r.get("ts", ""), _money(total),
                      _money(Decimal(r.get("profit_loss", "0"))), delta, r.get("freshness", ""))
            prev = total
        console.print(t)
        return

    print(f"Last {len(rows)} snapshots:")
    for r in rows:
        total = Decimal(r.get("total_value", "0"))
        pl = Decimal(r.get("profit_loss", "0"))
        print(f"{r.get('ts', '')}  total={total:,.2f}  p/l={pl:+,.2f}  [{r.get('freshness', '?')}]")


def cmd_reset(args: argparse.Namespace):
    cfg = read_config()
    service = build_service(cfg)
    asyncio.run(service.reset())
    print("Saved snapshot cleared. The next run recomputes from your transactions.")


def cmd_export(args: argparse.Namespace):
    cfg = read_config()
    service = build_service(cfg)

    async def run():
        await service.initialize()
        await service.drain()
        return await service.export()

    data = asyncio.run(run())
    out_path = os.path.abspath(args.out)
    write_json(out_path, data)
    print(f"Exported {len(data['transactions'])} transactions → {out_path}")


def _parse_kv_list(pairs: list[str]) -> dict:
    out = {}
    for item in pairs or []:
        if "=" not in item:
            raise ValueError(f"Expected key=value, got '{item}'")
        k, v = item.split("=", 1)
        out[k.strip()] = v.strip()
    return out


def cmd_config(args: argparse.Namespace):
    # Always ensure there is a config file to work with
    ensure_config_exists()
    cfg = read_config()

    if args.path:
        # Show where the config file lives
        print(js.CONFIG_PATH)
        return

    did_change = False

    if args.set:
        kv = _parse_kv_list(args.set)
        for k, v in kv.items():
            if k == "vs_currency":
                if not v:
                    raise ValueError("vs_currency cannot be empty.")
                cfg["vs_currency"] = v.lower()
            elif k == "update_interval_sec":
                try:
                    sec = int(v)
                except ValueError:
                    raise ValueError("update_interval_sec must be an integer.")
                if sec < 30:
                    raise ValueError("update_interval_sec must be >= 30.")
                cfg["update_interval_sec"] = sec
            elif k == "refresh_timeout_sec":
                try:
                    sec = float(v)
                except ValueError:
                    raise ValueError("refresh_timeout_sec must be a number.")
                if not 1 <= sec <= 60:
                    raise ValueError("refresh_timeout_sec must be between 1 and 60.")
                cfg["refresh_timeout_sec"] = sec
            elif k in ("price_cache_ttl_sec", "stale_after_hours"):
                try:
                    cfg[k] = int(v)
                except ValueError:
                    raise ValueError(f"{k} must be an integer.")
            elif k == "log_level":
                cfg["log_level"] = v.upper()
            else:
                raise ValueError(
                    f"Unknown key '{k}'. Allowed: vs_currency, update_interval_sec, "
                    "refresh_timeout_sec, price_cache_ttl_sec, stale_after_hours, log_level"
                )
            did_change = True

    # --add-symbol supports entries like btc=bitcoin
    if args.add_symbol:
        kv = _parse_kv_list(args.add_symbol)
        sm = dict(cfg.get("symbols_map", {}))
        for sym, cid in kv.items():
            if not sym or not cid:
                raise ValueError("symbols_map entries must be like btc=bitcoin (non-empty).")
            sm[sym.lower()] = cid
            did_change = True
        cfg["symbols_map"] = sm

    # --rm-symbol removes keys by symbol (e.g., btc eth)
    if args.rm_symbol:
        sm = dict(cfg.get("symbols_map", {}))
        for sym in args.rm_symbol:
            sm.pop(sym.lower(), None)
            did_change = True
        cfg["symbols_map"] = sm

    if did_change:
        write_config(cfg)
        print("Config updated.")

    if args.show or not (args.set or args.add_symbol or args.rm_symbol):
        print(json.dumps(read_config(), indent=2, ensure_ascii=False))


# -------- Parser --------

def _add_txn_args(p: argparse.ArgumentParser):
    p.add_argument("symbol", help="e.g., btc, eth")
    p.add_argument("qty", type=_decimal_arg, help="Quantity")
    p.add_argument("--price", type=_decimal_arg, required=True, help="Price per unit")
    p.add_argument("--date", type=_date_arg, help="Trade date YYYY-MM-DD (default: now)")
    p.add_argument("--exchange", help="Exchange or wallet name (optional)")


def build_parser():
    p = argparse.ArgumentParser(prog="crypto", description="Crypto Portfolio Tracker")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_track = sub.add_parser("track", help="Show the portfolio (snapshot first, then live prices)")
    p_track.add_argument("--fiat", help="Fiat currency (default from config.json, usually usd)")
    p_track.set_defaults(func=cmd_track)

    p_daemon = sub.add_parser("daemon", help="Run auto-refresh loop (every 10 minutes by default)")
    p_daemon.add_argument("--interval", type=int, help="Seconds between runs (overrides config)")
    p_daemon.add_argument("--fiat", help="Fiat currency (default from config.json)")
    p_daemon.add_argument("--jitter", type=int, default=30, help="±seconds jitter (default 30)")
    p_daemon.set_defaults(func=cmd_daemon)

    p_buy = sub.add_parser("buy", help="Record a buy")
    _add_txn_args(p_buy)
    p_buy.set_defaults(func=cmd_buy)

    p_sell = sub.add_parser("sell", help="Record a sell")
    _add_txn_args(p_sell)
    p_sell.set_defaults(func=cmd_sell)

    p_edit = sub.add_parser("edit", help="Edit a recorded transaction")
    p_edit.add_argument("id", help="Transaction id (see `crypto tx`)")
    p_edit.add_argument("--qty", type=_decimal_arg, help="New quantity")
    p_edit.add_argument("--price", type=_decimal_arg, help="New price per unit")
    p_edit.add_argument("--date", type=_date_arg, help="New trade date YYYY-MM-DD")
    p_edit.add_argument("--exchange", help="New exchange name")
    p_edit.set_defaults(func=cmd_edit)

    p_rm = sub.add_parser("rm", help="Delete a transaction or every transaction of an asset")
    g = p_rm.add_mutually_exclusive_group(required=True)
    g.add_argument("--id", help="Transaction id")
    g.add_argument("--asset", help="Asset symbol, removes all of its transactions")
    p_rm.set_defaults(func=cmd_rm)

    p_tx = sub.add_parser("tx", help="List transactions")
    p_tx.add_argument("--symbol", help="Only this asset")
    p_tx.set_defaults(func=cmd_tx)

    p_price = sub.add_parser("price", help="Quote prices for comma-separated symbols")
    p_price.add_argument("symbols", help="Comma-separated symbols, e.g., btc,eth,ada")
    p_price.add_argument("--fiat", help="Fiat currency (default from config.json)")
    p_price.set_defaults(func=cmd_price)

    p_hist = sub.add_parser("history", help="Show last N saved valuations")
    p_hist.add_argument("--last", type=int, default=10, help="How many lines to show (default 10)")
    p_hist.add_argument("--table", action="store_true", help="Pretty table output")
    p_hist.set_defaults(func=cmd_history)

    p_reset = sub.add_parser("reset", help="Clear the saved snapshot")
    p_reset.set_defaults(func=cmd_reset)

    p_exp = sub.add_parser("export", help="Export summary and transactions to JSON")
    p_exp.add_argument("--out", required=True, help="Output path, e.g., portfolio_export.json")
    p_exp.set_defaults(func=cmd_export)

    p_cfg = sub.add_parser("config", help="Show or edit configuration")
    p_cfg.add_argument("--show", action="store_true", help="Show current config")
    p_cfg.add_argument("--set", nargs="*", help="Set key=value. Ex: --set vs_currency=usd refresh_timeout_sec=8")
    p_cfg.add_argument("--add-symbol", nargs="*", help="Add symbol mapping key=value. Ex: --add-symbol sol=solana doge=dogecoin")
    p_cfg.add_argument("--rm-symbol", nargs="*", help="Remove symbol(s) from symbols_map. Ex: --rm-symbol sol doge")
    p_cfg.add_argument("--path", action="store_true", help="Print the config file path and exit")
    p_cfg.set_defaults(func=cmd_config)

    return p


def main():
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(read_config().get("log_level", "WARNING"))
    try:
        args.func(args)
    except PortfolioError as e:
        print(f"Error: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
