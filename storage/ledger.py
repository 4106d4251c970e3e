# storage/ledger.py
"""
JSON-backed transaction ledger.

portfolio.json layout:
    {"version": 1, "transactions": [{id, asset_symbol, type, quantity,
      price_per_unit, timestamp, exchange, version}, ...]}

Rows are validated into Transaction records when read. A malformed row does
not poison the whole ledger: read_transactions() returns it as an error
next to the valid rows, and the caller decides what to do with the affected asset.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Set, Tuple

import storage.json_store as js
from core.errors import LedgerIntegrityError, LedgerReadError
from core.holdings import aggregate
from core.models import ZERO, Transaction, TransactionType
from utils.logging import get_logger
from utils.timeutils import parse_iso, utc_now

log = get_logger("ledger")

LEDGER_VERSION = 1


def normalize_symbol(symbol: Any) -> str:
    return str(symbol or "").strip().upper()


def _decimal(value: Any, name: str, txn_id: Optional[str], symbol: Optional[str]) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise LedgerIntegrityError(f"{name} {value!r} is not a number.",
                                   asset_symbol=symbol, transaction_id=txn_id)
    if not d.is_finite():
        raise LedgerIntegrityError(f"{name} must be finite, got {value!r}.",
                                   asset_symbol=symbol, transaction_id=txn_id)
    return d


def parse_transaction(row: Dict[str, Any]) -> Transaction:
    """Validate one stored row. Raises LedgerIntegrityError on malformed fields."""
    if not isinstance(row, dict):
        raise LedgerIntegrityError(f"Transaction row must be an object, got {type(row).__name__}.")

    txn_id = row.get("id")
    symbol = normalize_symbol(row.get("asset_symbol")) or None
    if not txn_id:
        raise LedgerIntegrityError("Transaction is missing an id.", asset_symbol=symbol)
    txn_id = str(txn_id)
    if not symbol:
        raise LedgerIntegrityError("Transaction is missing an asset symbol.", transaction_id=txn_id)

    try:
        kind = TransactionType(str(row.get("type", "")).lower())
    except ValueError:
        raise LedgerIntegrityError(f"Transaction type {row.get('type')!r} must be buy or sell.",
                                   asset_symbol=symbol, transaction_id=txn_id)

    quantity = _decimal(row.get("quantity"), "quantity", txn_id, symbol)
    if quantity <= ZERO:
        raise LedgerIntegrityError("quantity must be greater than zero.",
                                   asset_symbol=symbol, transaction_id=txn_id)
    price = _decimal(row.get("price_per_unit"), "price_per_unit", txn_id, symbol)
    if price < ZERO:
        raise LedgerIntegrityError("price_per_unit cannot be negative.",
                                   asset_symbol=symbol, transaction_id=txn_id)

    try:
        ts = parse_iso(row["timestamp"])
    except (KeyError, TypeError, ValueError):
        raise LedgerIntegrityError(f"timestamp {row.get('timestamp')!r} is not ISO-8601.",
                                   asset_symbol=symbol, transaction_id=txn_id)

    exchange = row.get("exchange")
    try:
        version = int(row.get("version", 1))
    except (TypeError, ValueError):
        raise LedgerIntegrityError("version must be an integer.",
                                   asset_symbol=symbol, transaction_id=txn_id)

    return Transaction(
        id=txn_id,
        asset_symbol=symbol,
        type=kind,
        quantity=quantity,
        price_per_unit=price,
        timestamp=ts,
        exchange=str(exchange) if exchange else None,
        version=max(version, 1),
    )


class TransactionLedger:
    """All reads and writes of portfolio.json go through this class."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or js.PORTFOLIO_PATH
        self._lock = threading.RLock()

    # ── reading ──────────────────────────────────────────────────────────────

    def _load_rows(self) -> List[Dict[str, Any]]:
        try:
            data = js.read_json(self.path, {"version": LEDGER_VERSION, "transactions": []})
        except (OSError, ValueError) as e:
            raise LedgerReadError(f"Cannot read ledger {self.path}: {e}") from e
        rows = data.get("transactions") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            raise LedgerReadError(f"Ledger {self.path} has no transactions list.")
        return rows

    def _save_rows(self, rows: List[Dict[str, Any]]) -> None:
        js.write_json(self.path, {"version": LEDGER_VERSION, "transactions": rows})

    def read_transactions(self, asset_symbol: Optional[str] = None,
                          ) -> Tuple[List[Transaction], List[LedgerIntegrityError]]:
        """
        Valid transactions in chronological order (ties keep insertion order),
        plus one LedgerIntegrityError per row that failed validation.
        """
        wanted = normalize_symbol(asset_symbol) if asset_symbol else None
        with self._lock:
            rows = self._load_rows()
        out, errors = _parse_rows(rows)
        if wanted is not None:
            out = [t for t in out if t.asset_symbol == wanted]
            errors = [e for e in errors if e.asset_symbol == wanted]
        for e in errors:
            log.warning("Rejected ledger row: %s", e)
        return out, errors

    def list_transactions(self, asset_symbol: Optional[str] = None) -> List[Transaction]:
        return self.read_transactions(asset_symbol)[0]

    def has_transactions(self) -> bool:
        with self._lock:
            return bool(self._load_rows())

    def get_transaction(self, txn_id: str) -> Optional[Transaction]:
        for t in self.list_transactions():
            if t.id == txn_id:
                return t
        return None

    # ── writing ──────────────────────────────────────────────────────────────

    def add_transaction(self, asset_symbol: str, type: str | TransactionType,
                        quantity: Any, price_per_unit: Any,
                        timestamp: Optional[datetime] = None,
                        exchange: Optional[str] = None) -> Transaction:
        """Validate and append. A sell larger than the position held at its date is refused."""
        row = {
            "id": uuid.uuid4().hex,
            "asset_symbol": normalize_symbol(asset_symbol),
            "type": TransactionType(type).value if isinstance(type, TransactionType) else str(type).lower(),
            "quantity": str(quantity),
            "price_per_unit": str(price_per_unit),
            "timestamp": (timestamp or utc_now()).isoformat(),
            "exchange": exchange,
            "version": 1,
        }
        txn = parse_transaction(row)
        with self._lock:
            rows = self._load_rows()
            after = rows + [txn.to_dict()]
            if txn.type is TransactionType.SELL:
                err = _replay_error(after, txn.asset_symbol)
                if err is not None:
                    raise LedgerIntegrityError(
                        f"Cannot sell {txn.quantity} {txn.asset_symbol} on "
                        f"{txn.timestamp.date().isoformat()}: {err}",
                        asset_symbol=txn.asset_symbol,
                        transaction_id=txn.id,
                    )
            self._save_rows(after)
        log.info("Added %s %s %s @ %s", txn.type.value, txn.quantity, txn.asset_symbol, txn.price_per_unit)
        return txn

    def update_transaction(self, txn_id: str, **changes: Any) -> Transaction:
        """Edit a transaction; the stored row is replaced by version + 1."""
        allowed = {"asset_symbol", "type", "quantity", "price_per_unit", "timestamp", "exchange"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot edit field(s): {', '.join(sorted(unknown))}")
        with self._lock:
            rows = self._load_rows()
            idx = next((i for i, r in enumerate(rows)
                        if isinstance(r, dict) and str(r.get("id")) == txn_id), None)
            if idx is None:
                raise KeyError(txn_id)
            current = parse_transaction(rows[idx])
            row = current.to_dict()
            for key, val in changes.items():
                if val is None and key != "exchange":
                    continue
                if key == "timestamp" and isinstance(val, datetime):
                    val = val.isoformat()
                elif key == "type" and isinstance(val, TransactionType):
                    val = val.value
                elif key in ("quantity", "price_per_unit"):
                    val = str(val)
                row[key] = val
            row["version"] = current.version + 1
            txn = parse_transaction(row)
            after = list(rows)
            after[idx] = txn.to_dict()
            self._refuse_oversell(rows, after, {current.asset_symbol, txn.asset_symbol}, "Edit")
            self._save_rows(after)
        log.info("Edited transaction %s (version %d)", txn.id, txn.version)
        return txn

    def delete_transaction(self, txn_id: str) -> bool:
        with self._lock:
            rows = self._load_rows()
            kept = [r for r in rows if not (isinstance(r, dict) and str(r.get("id")) == txn_id)]
            if len(kept) == len(rows):
                return False
            gone = {normalize_symbol(r.get("asset_symbol")) for r in rows
                    if isinstance(r, dict) and str(r.get("id")) == txn_id}
            self._refuse_oversell(rows, kept, gone, "Delete")
            self._save_rows(kept)
        return True

    def delete_asset(self, asset_symbol: str) -> int:
        """Remove every transaction of one asset. Returns how many were removed."""
        symbol = normalize_symbol(asset_symbol)
        with self._lock:
            rows = self._load_rows()
            kept = [r for r in rows
                    if not (isinstance(r, dict) and normalize_symbol(r.get("asset_symbol")) == symbol)]
            removed = len(rows) - len(kept)
            if removed:
                self._save_rows(kept)
        return removed

    def _refuse_oversell(self, before: List[Dict[str, Any]], after: List[Dict[str, Any]],
                         symbols: Set[str], action: str) -> None:
        """A write may not leave an asset's dated history selling more than it holds."""
        for symbol in symbols:
            err = _replay_error(after, symbol)
            if err is not None and _replay_error(before, symbol) is None:
                raise LedgerIntegrityError(f"{action} refused: {err}",
                                           asset_symbol=symbol,
                                           transaction_id=err.transaction_id)


def _parse_rows(rows: List[Any]) -> Tuple[List[Transaction], List[LedgerIntegrityError]]:
    out, errors = [], []
    for row in rows:
        try:
            out.append(parse_transaction(row))
        except LedgerIntegrityError as e:
            errors.append(e)
    out.sort(key=lambda t: t.timestamp)
    return out, errors


def _replay_error(rows: List[Any], symbol: str) -> Optional[LedgerIntegrityError]:
    """Replay one asset in time order; the oversell it hits, if any."""
    txns = [t for t in _parse_rows(rows)[0] if t.asset_symbol == symbol]
    try:
        aggregate(txns)
    except LedgerIntegrityError as e:
        return e
    return None
