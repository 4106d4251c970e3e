# core/models.py
"""
Typed records for the ledger, holdings and valuations.

Every amount is a Decimal. Records are frozen; anything derived (holdings,
valuations, summaries) is recomputed rather than mutated.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from utils.timeutils import parse_iso, utc_now

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class TransactionType(str, Enum):
    BUY = "buy"
    SELL = "sell"


class Freshness(str, Enum):
    """Provenance of a price. Ordered best to worst."""

    LIVE = "live"
    CACHED = "cached"
    FALLBACK = "fallback"
    MISSING = "missing"

    @property
    def rank(self) -> int:
        return _FRESHNESS_RANK[self]

    @classmethod
    def worst(cls, values) -> "Freshness":
        """Worst of the given values; LIVE for an empty iterable."""
        out = cls.LIVE
        for v in values:
            if v.rank > out.rank:
                out = v
        return out

    def at_most(self, cap: "Freshness") -> "Freshness":
        """Downgrade to `cap` if this value is fresher than it."""
        return cap if self.rank < cap.rank else self


_FRESHNESS_RANK = {
    Freshness.LIVE: 0,
    Freshness.CACHED: 1,
    Freshness.FALLBACK: 2,
    Freshness.MISSING: 3,
}


@dataclass(frozen=True)
class Transaction:
    id:             str
    asset_symbol:   str
    type:           TransactionType
    quantity:       Decimal
    price_per_unit: Decimal
    timestamp:      datetime
    exchange:       Optional[str] = None
    version:        int = 1

    @property
    def total_cost(self) -> Decimal:
        return self.quantity * self.price_per_unit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "asset_symbol": self.asset_symbol,
            "type": self.type.value,
            "quantity": str(self.quantity),
            "price_per_unit": str(self.price_per_unit),
            "timestamp": self.timestamp.isoformat(),
            "exchange": self.exchange,
            "version": self.version,
        }


@dataclass(frozen=True)
class Holding:
    asset_symbol:   str
    quantity_owned: Decimal
    average_cost:   Decimal
    total_invested: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_symbol": self.asset_symbol,
            "quantity_owned": str(self.quantity_owned),
            "average_cost": str(self.average_cost),
            "total_invested": str(self.total_invested),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Holding":
        return cls(
            asset_symbol=str(d["asset_symbol"]),
            quantity_owned=Decimal(d["quantity_owned"]),
            average_cost=Decimal(d["average_cost"]),
            total_invested=Decimal(d["total_invested"]),
        )


@dataclass(frozen=True)
class PriceQuote:
    price:              Decimal
    change_percent_24h: Decimal = ZERO
    freshness:          Freshness = Freshness.LIVE
    as_of:              Optional[datetime] = None


@dataclass(frozen=True)
class AssetValuation:
    asset_symbol:            str
    current_price:           Decimal
    price_change_percent_24h: Decimal
    holding:                 Holding
    freshness:               Freshness

    @property
    def current_value(self) -> Decimal:
        return self.holding.quantity_owned * self.current_price

    @property
    def unrealized_pnl(self) -> Decimal:
        return self.current_value - self.holding.total_invested

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_symbol": self.asset_symbol,
            "current_price": str(self.current_price),
            "price_change_percent_24h": str(self.price_change_percent_24h),
            "freshness": self.freshness.value,
            "holding": self.holding.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AssetValuation":
        return cls(
            asset_symbol=str(d["asset_symbol"]),
            current_price=Decimal(d["current_price"]),
            price_change_percent_24h=Decimal(d["price_change_percent_24h"]),
            freshness=Freshness(d["freshness"]),
            holding=Holding.from_dict(d["holding"]),
        )


@dataclass(frozen=True)
class PortfolioSummary:
    total_value:          Decimal
    total_invested:       Decimal
    profit_loss:          Decimal
    profit_loss_percent:  Decimal
    asset_valuations:     Tuple[AssetValuation, ...] = field(default_factory=tuple)
    computed_at:          datetime = field(default_factory=utc_now)
    price_data_freshness: Freshness = Freshness.MISSING

    @classmethod
    def empty(cls) -> "PortfolioSummary":
        return cls(ZERO, ZERO, ZERO, ZERO, (), utc_now(), Freshness.MISSING)

    @classmethod
    def from_valuations(cls, valuations: List[AssetValuation],
                        computed_at: Optional[datetime] = None,
                        freshness: Optional[Freshness] = None) -> "PortfolioSummary":
        valuations = tuple(sorted(valuations, key=lambda v: v.asset_symbol))
        total_value = sum((v.current_value for v in valuations), ZERO)
        total_invested = sum((v.holding.total_invested for v in valuations), ZERO)
        profit_loss = total_value - total_invested
        if freshness is None:
            freshness = Freshness.worst(v.freshness for v in valuations)
        return cls(
            total_value=total_value,
            total_invested=total_invested,
            profit_loss=profit_loss,
            profit_loss_percent=_percent(profit_loss, total_invested),
            asset_valuations=valuations,
            computed_at=computed_at or utc_now(),
            price_data_freshness=freshness,
        )

    @property
    def is_zero(self) -> bool:
        return self.total_value == ZERO and self.total_invested == ZERO

    def valuation_for(self, asset_symbol: str) -> Optional[AssetValuation]:
        for v in self.asset_valuations:
            if v.asset_symbol == asset_symbol:
                return v
        return None

    def check_invariants(self) -> List[str]:
        """Return human-readable violations (empty = consistent)."""
        problems = []
        sum_value = sum((v.current_value for v in self.asset_valuations), ZERO)
        sum_invested = sum((v.holding.total_invested for v in self.asset_valuations), ZERO)
        if sum_value != self.total_value:
            problems.append(f"total_value {self.total_value} != sum of values {sum_value}")
        if sum_invested != self.total_invested:
            problems.append(f"total_invested {self.total_invested} != sum of invested {sum_invested}")
        if self.total_value - self.total_invested != self.profit_loss:
            problems.append(f"profit_loss {self.profit_loss} != total_value - total_invested")
        return problems

    def with_freshness_cap(self, cap: Freshness) -> "PortfolioSummary":
        """Same figures, every freshness tag downgraded to at most `cap`."""
        valuations = [
            AssetValuation(
                asset_symbol=v.asset_symbol,
                current_price=v.current_price,
                price_change_percent_24h=v.price_change_percent_24h,
                holding=v.holding,
                freshness=v.freshness.at_most(cap),
            )
            for v in self.asset_valuations
        ]
        return PortfolioSummary(
            total_value=self.total_value,
            total_invested=self.total_invested,
            profit_loss=self.profit_loss,
            profit_loss_percent=self.profit_loss_percent,
            asset_valuations=tuple(valuations),
            computed_at=self.computed_at,
            price_data_freshness=self.price_data_freshness.at_most(cap),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_value": str(self.total_value),
            "total_invested": str(self.total_invested),
            "profit_loss": str(self.profit_loss),
            "profit_loss_percent": str(self.profit_loss_percent),
            "asset_valuations": [v.to_dict() for v in self.asset_valuations],
            "computed_at": self.computed_at.isoformat(),
            "price_data_freshness": self.price_data_freshness.value,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PortfolioSummary":
        return cls(
            total_value=Decimal(d["total_value"]),
            total_invested=Decimal(d["total_invested"]),
            profit_loss=Decimal(d["profit_loss"]),
            profit_loss_percent=Decimal(d["profit_loss_percent"]),
            asset_valuations=tuple(AssetValuation.from_dict(v) for v in d["asset_valuations"]),
            computed_at=parse_iso(d["computed_at"]),
            price_data_freshness=Freshness(d["price_data_freshness"]),
        )


def _percent(part: Decimal, whole: Decimal) -> Decimal:
    return (part / whole * HUNDRED) if whole else ZERO
