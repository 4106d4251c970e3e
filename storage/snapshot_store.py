# storage/snapshot_store.py
"""
Last-known PortfolioSummary, for instant cold starts.

One JSON record per key, plus a backup of the previous record:

    <dir>/<key>.json       current record
    <dir>/<key>.bak.json   the record it replaced

Record layout:
    {"schema": "portfolio-snapshot", "version": 1, "saved_at": ISO-8601,
     "checksum": sha256(canonical summary json), "summary": {...}}

load() never raises: anything unreadable, tampered with, inconsistent or from
another schema version counts as absent (the backup is tried first).
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import storage.json_store as js
from core.errors import SnapshotCorruptError
from core.models import PortfolioSummary
from utils.logging import get_logger
from utils.timeutils import parse_iso, utc_now

log = get_logger("snapshot_store")

SCHEMA_NAME = "portfolio-snapshot"
SCHEMA_VERSION = 1
DEFAULT_KEY = "portfolio_snapshot"

# records stamped further ahead than this are treated as corrupt
MAX_CLOCK_SKEW = timedelta(hours=1)


def _checksum(summary_payload: Dict[str, Any]) -> str:
    canonical = json.dumps(summary_payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class SnapshotStore:
    def __init__(self, directory: Optional[str] = None, key: str = DEFAULT_KEY,
                 history_path: Optional[str] = None):
        self.directory = directory or js.SNAPSHOT_DIR
        self.key = key
        self.history_path = history_path
        self._write_lock = asyncio.Lock()
        self._file_lock = threading.Lock()
        self._last_saved_at: Optional[datetime] = None

    @property
    def path(self) -> str:
        return os.path.join(self.directory, f"{self.key}.json")

    @property
    def backup_path(self) -> str:
        return os.path.join(self.directory, f"{self.key}.bak.json")

    # ── record encoding ──────────────────────────────────────────────────────

    def _next_saved_at(self) -> datetime:
        """Wall-clock stamp, nudged forward so it never repeats or goes back."""
        now = utc_now()
        if self._last_saved_at is not None and now <= self._last_saved_at:
            now = self._last_saved_at + timedelta(microseconds=1)
        self._last_saved_at = now
        return now

    def _encode(self, summary: PortfolioSummary) -> str:
        payload = summary.to_dict()
        record = {
            "schema": SCHEMA_NAME,
            "version": SCHEMA_VERSION,
            "saved_at": self._next_saved_at().isoformat(),
            "checksum": _checksum(payload),
            "summary": payload,
        }
        return json.dumps(record, ensure_ascii=False)

    def _decode(self, text: str) -> PortfolioSummary:
        try:
            record = json.loads(text)
        except ValueError as e:
            raise SnapshotCorruptError(f"not valid JSON: {e}") from e
        if not isinstance(record, dict) or record.get("schema") != SCHEMA_NAME:
            raise SnapshotCorruptError("unknown record schema")
        if record.get("version") != SCHEMA_VERSION:
            raise SnapshotCorruptError(
                f"schema version {record.get('version')!r} != {SCHEMA_VERSION}")

        payload = record.get("summary")
        if not isinstance(payload, dict) or record.get("checksum") != _checksum(payload):
            raise SnapshotCorruptError("checksum mismatch")

        try:
            saved_at = parse_iso(record["saved_at"])
            summary = PortfolioSummary.from_dict(payload)
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise SnapshotCorruptError(f"malformed summary: {type(e).__name__}: {e}") from e

        if saved_at > utc_now() + MAX_CLOCK_SKEW:
            raise SnapshotCorruptError(f"saved_at {saved_at.isoformat()} is in the future")
        problems = summary.check_invariants()
        if problems:
            raise SnapshotCorruptError("; ".join(problems))

        if self._last_saved_at is None or saved_at > self._last_saved_at:
            self._last_saved_at = saved_at
        return summary

    # ── blocking file operations (run in a worker thread) ────────────────────

    def _write_blocking(self, text: str) -> None:
        with self._file_lock:
            if os.path.exists(self.path):
                with open(self.path, "r", encoding="utf-8") as f:
                    previous = f.read()
                js.atomic_write_text(self.backup_path, previous)
            js.atomic_write_text(self.path, text)

    def _read_blocking(self, path: str) -> Optional[str]:
        with self._file_lock:
            if not os.path.exists(path):
                return None
            with open(path, "r", encoding="utf-8") as f:
                return f.read()

    def _clear_blocking(self) -> None:
        with self._file_lock:
            for p in (self.path, self.backup_path):
                if os.path.exists(p):
                    os.remove(p)

    # ── public API ───────────────────────────────────────────────────────────

    async def save(self, summary: PortfolioSummary) -> bool:
        """Persist `summary`. Returns False (and logs) instead of raising."""
        problems = summary.check_invariants()
        if problems:
            log.error("Refusing to persist inconsistent summary: %s", "; ".join(problems))
            return False
        try:
            async with self._write_lock:
                text = self._encode(summary)
                await asyncio.to_thread(self._write_blocking, text)
                if self.history_path:
                    await asyncio.to_thread(self._append_history, summary)
        except (OSError, TypeError, ValueError) as e:
            log.error("Snapshot save failed: %s: %s", type(e).__name__, e)
            return False

        log.info("Snapshot saved (value=%s invested=%s freshness=%s)",
                 summary.total_value, summary.total_invested,
                 summary.price_data_freshness.value)
        return True

    async def load(self) -> Optional[PortfolioSummary]:
        """Current record, else the backup, else None."""
        for path in (self.path, self.backup_path):
            try:
                text = await asyncio.to_thread(self._read_blocking, path)
            except OSError as e:
                log.warning("Snapshot %s unreadable: %s", path, e)
                continue
            if text is None:
                continue
            try:
                return self._decode(text)
            except SnapshotCorruptError as e:
                log.warning("Discarding snapshot %s: %s", os.path.basename(path), e)
        return None

    async def clear(self) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._clear_blocking)
        log.info("Snapshot cleared (%s)", self.key)

    def _append_history(self, summary: PortfolioSummary) -> None:
        try:
            js.append_history_line({
                "ts": summary.computed_at.isoformat(),
                "total_value": str(summary.total_value),
                "total_invested": str(summary.total_invested),
                "profit_loss": str(summary.profit_loss),
                "freshness": summary.price_data_freshness.value,
            }, path=self.history_path)
        except OSError as e:
            log.warning("History append failed: %s", e)
