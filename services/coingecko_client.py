# services/coingecko_client.py
from __future__ import annotations
import time, random
from typing import Sequence, Dict, Any, Optional
import requests
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone

from utils.logging import get_logger

log = get_logger("coingecko")

API_URL = "https://api.coingecko.com/api/v3/simple/price"

MAX_RETRIES = 5                 # attempts per call, first one included
BASE_BACKOFF = 0.6              # seconds, doubled per attempt
MAX_BACKOFF = 8.0               # also caps a server-sent Retry-After
JITTER_RANGE = (0.0, 0.35)

# 408/425/429 and any 5xx are worth another attempt; other 4xx are not
RETRYABLE_STATUS = {408, 425, 429}


def _retry_after_seconds(value: Optional[str]) -> float:
    """Retry-After as delta-seconds or an HTTP-date; 0.0 when absent or unusable."""
    if not value:
        return 0.0
    value = value.strip()
    if value.isdigit():
        return float(int(value))
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return 0.0
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def backoff_delay(attempt: int, retry_after: Optional[str] = None) -> float:
    server_hint = _retry_after_seconds(retry_after)
    if server_hint > 0:
        return min(server_hint, MAX_BACKOFF)
    return min(MAX_BACKOFF, BASE_BACKOFF * (2 ** attempt)) + random.uniform(*JITTER_RANGE)


def _is_retryable(status: int) -> bool:
    return status in RETRYABLE_STATUS or 500 <= status < 600


def get_prices(ids: Sequence[str], vs_currency: str = "usd",
               session: Optional[requests.Session] = None,
               timeout: tuple[float, float] = (3.0, 10.0),
               include_24hr_change: bool = True,
               max_retries: int = MAX_RETRIES) -> Dict[str, Any]:
    """
    CoinGecko simple/price for `ids` in one request, e.g.
        {"bitcoin": {"usd": 12345.67, "usd_24h_change": -1.2}, ...}

    Retries rate limits, server errors, timeouts and unparseable bodies with
    exponential backoff (Retry-After wins when the server sends one).
    Raises RuntimeError when every attempt failed.
    """
    if not ids:
        return {}

    params = {"ids": ",".join(ids), "vs_currencies": vs_currency}
    if include_24hr_change:
        params["include_24hr_change"] = "true"
    get = session.get if session is not None else requests.get

    failure = "no attempt made"
    for attempt in range(max_retries):
        retry_after = None
        started = time.perf_counter()
        try:
            r = get(API_URL, params=params, timeout=timeout)
            took_ms = (time.perf_counter() - started) * 1000.0
            if _is_retryable(r.status_code):
                retry_after = r.headers.get("Retry-After")
                failure = f"HTTP {r.status_code}"
                log.warning("HTTP %d on attempt %d/%d (%.1f ms), Retry-After=%s",
                            r.status_code, attempt + 1, max_retries, took_ms, retry_after)
            elif r.status_code >= 400:
                msg = f"CoinGecko rejected the request: HTTP {r.status_code}"
                log.error(msg)
                raise RuntimeError(msg)
            else:
                data = r.json()
                log.info("Fetched %d ids in %.1f ms.", len(ids), took_ms)
                return data
        except requests.Timeout:
            failure = "Timeout"
            log.warning("Timeout on attempt %d/%d.", attempt + 1, max_retries)
        except requests.RequestException as e:
            failure = type(e).__name__
            log.warning("%s on attempt %d/%d.", failure, attempt + 1, max_retries)
        except ValueError:
            failure = "invalid JSON body"
            log.warning("Unparseable response on attempt %d/%d.", attempt + 1, max_retries)

        time.sleep(backoff_delay(attempt, retry_after))

    msg = f"Price fetch failed after {max_retries} attempts. Last error: {failure}"
    log.error(msg)
    raise RuntimeError(msg)
