# services/price_source.py
"""
The PriceSource capability and its CoinGecko implementation.

Tiers, best first:
  1. CoinGecko simple/price                       -> LIVE
  2. Yahoo quote page scrape (services/html_fallback) -> FALLBACK
  3. last good quotes in cache.json                -> CACHED
  4. built-in reference table                     -> FALLBACK

Network failures never escape get_batch_prices(); ids no tier can price are
simply left out of the result.
"""

from __future__ import annotations

import asyncio
import math
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence

import storage.json_store as js
from core.errors import PriceUnavailableError
from core.models import Freshness, PriceQuote
from services import coingecko_client as cg
from services import html_fallback as hf
from utils.logging import get_logger
from utils.timeutils import parse_iso, utc_now

log = get_logger("price_source")

# Reference prices (USD) used only when every other tier is empty.
STATIC_FALLBACK_USD: Dict[str, tuple[str, str]] = {
    "bitcoin": ("95420.0", "1.8"),
    "ethereum": ("3485.0", "2.1"),
    "binancecoin": ("685.0", "0.5"),
    "solana": ("245.0", "-1.2"),
    "ripple": ("2.32", "3.8"),
    "cardano": ("1.15", "2.5"),
    "dogecoin": ("0.42", "4.2"),
    "avalanche-2": ("45.8", "-0.8"),
    "chainlink": ("25.4", "1.9"),
    "polygon": ("0.58", "3.1"),
    "polkadot": ("8.95", "1.2"),
    "litecoin": ("108.5", "0.9"),
    "uniswap": ("15.8", "2.4"),
    "stellar": ("0.465", "1.8"),
    "cosmos": ("7.25", "-0.5"),
}


class PriceSource(Protocol):
    async def get_price(self, asset_id: str) -> PriceQuote: ...

    async def get_batch_prices(self, asset_ids: Sequence[str]) -> Dict[str, PriceQuote]: ...

    def fallback_prices(self, asset_ids: Sequence[str]) -> Dict[str, PriceQuote]: ...


def _to_decimal(value: Any) -> Optional[Decimal]:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(f):
        return None
    return Decimal(str(value))


class CoinGeckoPriceSource:
    def __init__(self, vs_currency: str = "usd",
                 cache_ttl_sec: float = js.DEFAULT_CONFIG["price_cache_ttl_sec"],
                 fetch: Optional[Callable[..., Mapping[str, Any]]] = None,
                 html_fetch: Optional[Callable[..., Mapping[str, Any]]] = None,
                 static_prices: Optional[Mapping[str, tuple[str, str]]] = None,
                 use_html_fallback: bool = True):
        self.vs_currency = vs_currency.lower()
        self.cache_ttl = timedelta(seconds=cache_ttl_sec)
        self._fetch = fetch or cg.get_prices
        self._html_fetch = (html_fetch or hf.get_prices_html) if use_html_fallback else None
        if static_prices is None:
            static_prices = STATIC_FALLBACK_USD if self.vs_currency == "usd" else {}
        self._static = dict(static_prices)

    def _parse(self, data: Mapping[str, Any], freshness: Freshness) -> Dict[str, PriceQuote]:
        """{"bitcoin": {"usd": 1.0, "usd_24h_change": 2.0}} -> {"bitcoin": PriceQuote}"""
        now = utc_now()
        out: Dict[str, PriceQuote] = {}
        for cid, entry in (data or {}).items():
            if not isinstance(entry, Mapping):
                continue
            price = _to_decimal(entry.get(self.vs_currency))
            if price is None or price <= 0:
                continue
            change = _to_decimal(entry.get(f"{self.vs_currency}_24h_change")) or Decimal("0")
            out[cid] = PriceQuote(price=price, change_percent_24h=change,
                                  freshness=freshness, as_of=now)
        return out

    def _remember(self, quotes: Mapping[str, PriceQuote]) -> None:
        """Merge fresh quotes into cache.json so later outages can reuse them."""
        cache = js.read_cache()
        stored = dict(cache.get("quotes") or {}) if cache.get("vs_currency") == self.vs_currency else {}
        for cid, q in quotes.items():
            stored[cid] = {
                "price": str(q.price),
                "change_24h": str(q.change_percent_24h),
                "ts": (q.as_of or utc_now()).isoformat(),
            }
        try:
            js.write_cache(stored, utc_now().isoformat(), self.vs_currency)
        except OSError as e:
            log.warning("Could not write price cache: %s", e)

    def fallback_prices(self, asset_ids: Sequence[str]) -> Dict[str, PriceQuote]:
        """No network: cached quotes first, then the static table."""
        out: Dict[str, PriceQuote] = {}
        cache = js.read_cache()
        cached = (cache.get("quotes") or {}) if cache.get("vs_currency") == self.vs_currency else {}
        now = utc_now()
        for cid in asset_ids:
            entry = cached.get(cid)
            if isinstance(entry, Mapping):
                price = _to_decimal(entry.get("price"))
                if price is not None and price > 0:
                    try:
                        as_of = parse_iso(entry["ts"])
                    except (KeyError, TypeError, ValueError):
                        as_of = None
                    if as_of is None or now - as_of > self.cache_ttl:
                        log.info("Cached price for %s is older than %s.", cid, self.cache_ttl)
                    out[cid] = PriceQuote(
                        price=price,
                        change_percent_24h=_to_decimal(entry.get("change_24h")) or Decimal("0"),
                        freshness=Freshness.CACHED,
                        as_of=as_of,
                    )
                    continue
            static = self._static.get(cid)
            if static:
                out[cid] = PriceQuote(price=Decimal(static[0]),
                                      change_percent_24h=Decimal(static[1]),
                                      freshness=Freshness.FALLBACK)
        return out

    async def get_batch_prices(self, asset_ids: Sequence[str]) -> Dict[str, PriceQuote]:
        ids = list(dict.fromkeys(asset_ids))
        if not ids:
            return {}

        quotes: Dict[str, PriceQuote] = {}
        try:
            data = await asyncio.to_thread(self._fetch, ids, self.vs_currency)
        except RuntimeError as e:
            log.warning("Live price fetch failed (%s). Falling back.", e)
            data = {}
        live = self._parse(data, Freshness.LIVE)
        if live:
            quotes.update(live)
            await asyncio.to_thread(self._remember, live)

        missing = [cid for cid in ids if cid not in quotes]
        if missing and self._html_fetch is not None:
            scraped = await asyncio.to_thread(self._html_fetch, missing, self.vs_currency)
            quotes.update(self._parse(scraped, Freshness.FALLBACK))

        missing = [cid for cid in ids if cid not in quotes]
        if missing:
            quotes.update(await asyncio.to_thread(self.fallback_prices, missing))

        unpriced = [cid for cid in ids if cid not in quotes]
        if unpriced:
            log.warning("No price from any source for: %s", ", ".join(unpriced))
        return {cid: quotes[cid] for cid in ids if cid in quotes}

    async def get_price(self, asset_id: str) -> PriceQuote:
        quotes = await self.get_batch_prices([asset_id])
        if asset_id not in quotes:
            raise PriceUnavailableError(f"No price available for {asset_id}.", (asset_id,))
        return quotes[asset_id]
