# core/valuation.py
from __future__ import annotations
from datetime import datetime
from typing import Mapping, Optional

from core.models import (
    ZERO, AssetValuation, Freshness, Holding, PortfolioSummary, PriceQuote,
)


def value(holdings: Mapping[str, Holding],
          prices: Mapping[str, PriceQuote],
          computed_at: Optional[datetime] = None) -> PortfolioSummary:
    """
    Compute total and per-asset value + P/L.

    A holding without a price entry is valued at zero and tagged MISSING
    instead of failing the whole summary. The summary's freshness is the
    worst tag among its assets.
    """
    report = []
    for symbol in sorted(holdings):
        holding = holdings[symbol]
        quote = prices.get(symbol)
        if quote is None:
            report.append(AssetValuation(
                asset_symbol=symbol,
                current_price=ZERO,
                price_change_percent_24h=ZERO,
                holding=holding,
                freshness=Freshness.MISSING,
            ))
            continue
        report.append(AssetValuation(
            asset_symbol=symbol,
            current_price=quote.price,
            price_change_percent_24h=quote.change_percent_24h,
            holding=holding,
            freshness=quote.freshness,
        ))
    return PortfolioSummary.from_valuations(report, computed_at=computed_at)
