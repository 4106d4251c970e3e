# storage/json_store.py
import io
import json
import os
import tempfile
from typing import Any, Dict, List, Optional

from utils.logging import get_logger

log = get_logger("json_store")

HOME_DIR = os.path.expanduser("~/.crypto_tracker")
CACHE_PATH = os.path.join(HOME_DIR, "cache.json")
CONFIG_PATH = os.path.join(HOME_DIR, "config.json")
PORTFOLIO_PATH = os.path.join(HOME_DIR, "portfolio.json")
SNAPSHOT_DIR = os.path.join(HOME_DIR, "snapshots")
HISTORY_PATH = os.path.join(HOME_DIR, "history.jsonl")

HISTORY_MAX_LINES = 500


def ensure_home():
    os.makedirs(HOME_DIR, exist_ok=True)


def atomic_write_text(path: str, text: str):
    """Write via a temp file in the same directory + os.replace (never torn)."""
    directory = os.path.dirname(os.fspath(path)) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-", text=True)
    try:
        with io.open(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def write_json(path: str, data: Dict[str, Any]):
    atomic_write_text(path, json.dumps(data, ensure_ascii=False, indent=2))


def read_json(path: str, default: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Missing file -> default. A corrupt file raises json.JSONDecodeError."""
    if not os.path.exists(path):
        return dict(default or {})
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


# ---- Price cache ----

def write_cache(quotes: Dict[str, Any], last_fetch_ts: str, vs_currency: str = "usd"):
    write_json(CACHE_PATH, {
        "vs_currency": vs_currency,
        "last_fetch_ts": last_fetch_ts,
        "quotes": quotes,
    })


def read_cache() -> Dict[str, Any]:
    empty = {"vs_currency": None, "last_fetch_ts": None, "quotes": {}}
    try:
        return read_json(CACHE_PATH, empty)
    except (OSError, ValueError) as e:
        # the cache is disposable; a broken one is the same as none
        log.warning("Price cache unreadable (%s); ignoring it.", type(e).__name__)
        return empty


# ---- Config helpers ----

DEFAULT_CONFIG = {
    "vs_currency": "usd",
    "update_interval_sec": 600,
    "refresh_timeout_sec": 8.0,
    "price_cache_ttl_sec": 6 * 3600,
    "stale_after_hours": 8,
    "log_level": "WARNING",
    "symbols_map": {"btc": "bitcoin", "eth": "ethereum", "ada": "cardano", "sol": "solana"},
}


def read_config() -> Dict[str, Any]:
    # Defaults if user hasn't created config.json
    cfg = json.loads(json.dumps(DEFAULT_CONFIG))
    try:
        disk = read_json(CONFIG_PATH, {})
    except ValueError:
        log.warning("config.json is not valid JSON; using defaults.")
        disk = {}
    cfg.update(disk)
    return cfg


def write_config(cfg: dict):
    """Atomic write of config.json."""
    # keep only known top-level keys; ignore accidental extras
    clean = {
        "vs_currency": str(cfg.get("vs_currency", DEFAULT_CONFIG["vs_currency"])).lower(),
        "update_interval_sec": int(
            cfg.get("update_interval_sec", DEFAULT_CONFIG["update_interval_sec"])
        ),
        "refresh_timeout_sec": float(
            cfg.get("refresh_timeout_sec", DEFAULT_CONFIG["refresh_timeout_sec"])
        ),
        "price_cache_ttl_sec": int(
            cfg.get("price_cache_ttl_sec", DEFAULT_CONFIG["price_cache_ttl_sec"])
        ),
        "stale_after_hours": int(
            cfg.get("stale_after_hours", DEFAULT_CONFIG["stale_after_hours"])
        ),
        "log_level": str(cfg.get("log_level", DEFAULT_CONFIG["log_level"])).upper(),
        "symbols_map": dict(cfg.get("symbols_map", DEFAULT_CONFIG["symbols_map"])),
    }
    write_json(CONFIG_PATH, clean)


def ensure_config_exists():
    """Create config.json with defaults if missing."""
    if not os.path.exists(CONFIG_PATH):
        write_config(DEFAULT_CONFIG.copy())


# ---- P&L history (jsonl) ----

def append_history_line(obj: dict, path: Optional[str] = None,
                        max_lines: Optional[int] = None) -> None:
    """Append one JSON line; trims the file to its newest `max_lines` rows."""
    path = path or HISTORY_PATH
    max_lines = max_lines or HISTORY_MAX_LINES
    os.makedirs(os.path.dirname(os.fspath(path)) or ".", exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(obj, ensure_ascii=False) + "\n")

    rows = _read_lines(path)
    if len(rows) > max_lines:
        atomic_write_text(path, "\n".join(rows[-max_lines:]) + "\n")


def read_last_history(n: int = 10, path: Optional[str] = None) -> List[dict]:
    out = []
    for line in _read_lines(path or HISTORY_PATH):
        try:
            out.append(json.loads(line))
        except ValueError:
            # a half-written line from a crash; skip it
            continue
    return out[-n:]


def _read_lines(path: str) -> List[str]:
    if not os.path.exists(path):
        return []
    with open(path, "r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]
