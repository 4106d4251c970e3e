# core/holdings.py
"""Reduce a transaction ledger into per-asset holdings (average-cost method)."""
from __future__ import annotations
from typing import Dict, Iterable, List, Tuple

from core.errors import LedgerIntegrityError
from core.models import ZERO, Holding, Transaction, TransactionType


def _group(transactions: Iterable[Transaction]) -> Dict[str, List[Transaction]]:
    groups: Dict[str, List[Transaction]] = {}
    for t in transactions:
        groups.setdefault(t.asset_symbol, []).append(t)
    return groups


def _reduce_asset(symbol: str, txns: List[Transaction]) -> Holding | None:
    """
    Walk one asset's transactions in the order given.
    Buys add quantity and capital; a sell removes quantity and the matching
    share of capital, leaving the average cost where it was.
    """
    qty = ZERO
    invested = ZERO
    for t in txns:
        if t.type is TransactionType.BUY:
            qty += t.quantity
            invested += t.quantity * t.price_per_unit
        elif t.type is TransactionType.SELL:
            if t.quantity > qty:
                raise LedgerIntegrityError(
                    f"Sell of {t.quantity} {symbol} exceeds owned quantity {qty} "
                    f"(transaction {t.id}).",
                    asset_symbol=symbol,
                    transaction_id=t.id,
                )
            remaining = qty - t.quantity
            invested = invested * remaining / qty if remaining else ZERO
            qty = remaining
        else:
            raise LedgerIntegrityError(
                f"Unknown transaction type {t.type!r} (transaction {t.id}).",
                asset_symbol=symbol,
                transaction_id=t.id,
            )

    if qty == ZERO:
        return None
    return Holding(
        asset_symbol=symbol,
        quantity_owned=qty,
        average_cost=invested / qty,
        total_invested=invested,
    )


def aggregate(transactions: Iterable[Transaction]) -> Dict[str, Holding]:
    """
    Strict aggregation: the first oversold asset raises LedgerIntegrityError.
    Fully sold assets are left out of the result.
    """
    out: Dict[str, Holding] = {}
    for symbol, txns in _group(transactions).items():
        holding = _reduce_asset(symbol, txns)
        if holding is not None:
            out[symbol] = holding
    return out


def aggregate_isolated(
    transactions: Iterable[Transaction],
) -> Tuple[Dict[str, Holding], List[LedgerIntegrityError]]:
    """Like aggregate(), but a broken asset is skipped and its error collected."""
    out: Dict[str, Holding] = {}
    errors: List[LedgerIntegrityError] = []
    for symbol, txns in _group(transactions).items():
        try:
            holding = _reduce_asset(symbol, txns)
        except LedgerIntegrityError as e:
            errors.append(e)
            continue
        if holding is not None:
            out[symbol] = holding
    return out, errors

