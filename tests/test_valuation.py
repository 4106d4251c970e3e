from datetime import datetime, timezone
from decimal import Decimal

from core.models import Freshness, Holding, PriceQuote
from core.valuation import value

AT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _holdings():
    return {
        "BTC": Holding("BTC", Decimal("2"), Decimal("15000"), Decimal("30000")),
        "ETH": Holding("ETH", Decimal("10"), Decimal("2000"), Decimal("20000")),
    }


def test_totals_and_pnl():
    prices = {
        "BTC": PriceQuote(Decimal("20000"), Decimal("1.5"), Freshness.LIVE),
        "ETH": PriceQuote(Decimal("2500"), Decimal("-2"), Freshness.LIVE),
    }
    s = value(_holdings(), prices, computed_at=AT)
    assert s.total_value == Decimal("65000")
    assert s.total_invested == Decimal("50000")
    assert s.profit_loss == Decimal("15000")
    assert s.profit_loss_percent == Decimal("30")
    assert s.price_data_freshness is Freshness.LIVE
    assert s.check_invariants() == []


def test_total_is_exact_sum_of_assets():
    prices = {
        "BTC": PriceQuote(Decimal("0.1")),
        "ETH": PriceQuote(Decimal("0.2")),
    }
    s = value(_holdings(), prices, computed_at=AT)
    assert s.total_value == sum(v.current_value for v in s.asset_valuations)
    assert s.total_value == Decimal("2.2")


def test_same_inputs_give_same_summary():
    prices = {"BTC": PriceQuote(Decimal("20000")), "ETH": PriceQuote(Decimal("2500"))}
    assert value(_holdings(), prices, AT) == value(_holdings(), prices, AT)


def test_worst_freshness_wins():
    prices = {
        "BTC": PriceQuote(Decimal("20000"), freshness=Freshness.LIVE),
        "ETH": PriceQuote(Decimal("2500"), freshness=Freshness.CACHED),
    }
    s = value(_holdings(), prices, AT)
    assert s.price_data_freshness is Freshness.CACHED
    assert s.valuation_for("BTC").freshness is Freshness.LIVE


def test_missing_price_is_zero_value_and_tagged():
    prices = {"BTC": PriceQuote(Decimal("20000"))}
    s = value(_holdings(), prices, AT)
    eth = s.valuation_for("ETH")
    assert eth.freshness is Freshness.MISSING
    assert eth.current_value == Decimal("0")
    assert eth.unrealized_pnl == Decimal("-20000")
    assert s.price_data_freshness is Freshness.MISSING
    # invested capital still counts
    assert s.total_invested == Decimal("50000")


def test_empty_portfolio_is_zero_and_live():
    s = value({}, {}, AT)
    assert s.is_zero
    assert s.asset_valuations == ()
    assert s.profit_loss_percent == Decimal("0")
    assert s.price_data_freshness is Freshness.LIVE


def test_freshness_cap_keeps_figures():
    prices = {"BTC": PriceQuote(Decimal("20000")), "ETH": PriceQuote(Decimal("2500"))}
    s = value(_holdings(), prices, AT)
    capped = s.with_freshness_cap(Freshness.CACHED)
    assert capped.total_value == s.total_value
    assert capped.price_data_freshness is Freshness.CACHED
    assert all(v.freshness is Freshness.CACHED for v in capped.asset_valuations)
