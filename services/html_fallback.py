# services/html_fallback.py
from __future__ import annotations
import re
from typing import Dict, Sequence, Any, Optional
import requests

from utils.logging import get_logger

log = get_logger("html_fallback")

UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/125.0.0.0 Safari/537.36"
)
QUOTE_URL = "https://finance.yahoo.com/quote/{ticker}/"

# CoinGecko id -> Yahoo USD pair
YAHOO_TICKERS = {
    "bitcoin": "BTC-USD",
    "ethereum": "ETH-USD",
    "binancecoin": "BNB-USD",
    "solana": "SOL-USD",
    "ripple": "XRP-USD",
    "dogecoin": "DOGE-USD",
    "cardano": "ADA-USD",
    "polkadot": "DOT-USD",
    "litecoin": "LTC-USD",
    "chainlink": "LINK-USD",
    "avalanche-2": "AVAX-USD",
    "stellar": "XLM-USD",
    "uniswap": "UNI7083-USD",
    "cosmos": "ATOM-USD",
}

# Yahoo embeds its quote data as {"raw": <number>, "fmt": ...} objects
_NUM = r'\{"raw"\s*:\s*(-?[0-9]+(?:\.[0-9]+)?)'
PRICE_PATTERNS = (
    re.compile(r'"regularMarketPrice"\s*:\s*' + _NUM),
    re.compile(r'"currentPrice"\s*:\s*' + _NUM),
)
CHANGE_PATTERN = re.compile(r'"regularMarketChangePercent"\s*:\s*' + _NUM)


def parse_quote_page(html: str) -> Optional[Dict[str, float]]:
    """{"usd": price, "usd_24h_change": pct} from a quote page, or None."""
    price = None
    for pattern in PRICE_PATTERNS:
        m = pattern.search(html)
        if m:
            price = float(m.group(1))
            break
    if price is None or price <= 0:
        return None
    out = {"usd": price}
    change = CHANGE_PATTERN.search(html)
    if change:
        out["usd_24h_change"] = float(change.group(1))
    return out


def get_prices_html(ids: Sequence[str], vs_currency: str = "usd",
                    timeout: tuple[float, float] = (3.0, 10.0)) -> Dict[str, Any]:
    """
    Last-ditch USD prices scraped from Yahoo quote pages, shaped like the
    CoinGecko response. Coins without a known ticker, or whose page fails,
    are left out.
    """
    out: Dict[str, Any] = {}
    if vs_currency.lower() != "usd":
        return out
    for cid in ids:
        ticker = YAHOO_TICKERS.get(cid.lower())
        if not ticker:
            continue
        try:
            r = requests.get(QUOTE_URL.format(ticker=ticker),
                             headers={"User-Agent": UA}, timeout=timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            log.info("Yahoo fallback failed for %s: %s", cid, type(e).__name__)
            continue
        quote = parse_quote_page(r.text)
        if quote is None:
            log.info("No price found on the Yahoo page for %s.", cid)
            continue
        out[cid] = quote
    return out
