# services/portfolio_service.py
"""
The façade front ends talk to.

Lifecycle
─────────
  UNINITIALIZED ──initialize()──> INITIALIZING ──> READY
                                                    └─ is_refreshing (orthogonal)

initialize() shows the persisted snapshot straight away when there is a usable
one and re-validates against live prices in the background. Without a snapshot
it computes from the ledger before reporting READY.

Only get_cached_summary() / is_initialized are meant to be read synchronously;
everything touching the network or disk is a coroutine.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from core.errors import (
    LedgerIntegrityError, LedgerReadError, PortfolioError,
    PortfolioUnavailableError, PriceUnavailableError, RefreshTimeoutError,
)
from core.holdings import aggregate_isolated
from core.models import Freshness, Holding, PortfolioSummary, PriceQuote
from core.valuation import value
from services.price_source import PriceSource
from storage.ledger import TransactionLedger
from storage.snapshot_store import SnapshotStore
from utils.logging import get_logger
from utils.timeutils import utc_now, utc_now_iso

DEFAULT_REFRESH_TIMEOUT_SEC = 8.0


class ServiceState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class PortfolioService:
    def __init__(self, ledger: TransactionLedger, price_source: PriceSource,
                 snapshot_store: SnapshotStore,
                 symbols_map: Optional[Mapping[str, str]] = None,
                 refresh_timeout_sec: float = DEFAULT_REFRESH_TIMEOUT_SEC,
                 stale_after: timedelta = timedelta(hours=8),
                 logger: Optional[logging.Logger] = None):
        self._ledger = ledger
        self._prices = price_source
        self._store = snapshot_store
        self._symbols_map = {k.lower(): v for k, v in (symbols_map or {}).items()}
        self.refresh_timeout_sec = refresh_timeout_sec
        self.stale_after = stale_after
        self.log = logger or get_logger("portfolio_service")

        self._state = ServiceState.UNINITIALIZED
        self._summary: Optional[PortfolioSummary] = None
        self._inflight: Optional[asyncio.Task] = None
        self._revalidation: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._integrity_checked = False
        self._integrity_errors: List[LedgerIntegrityError] = []
        self.last_warning: Optional[PortfolioError] = None

    # ── synchronous view ─────────────────────────────────────────────────────

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._state is ServiceState.READY

    @property
    def is_refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def integrity_errors(self) -> List[LedgerIntegrityError]:
        return list(self._integrity_errors)

    def get_cached_summary(self) -> PortfolioSummary:
        """In-memory summary; an all-zero MISSING summary if nothing is loaded yet."""
        return self._summary if self._summary is not None else PortfolioSummary.empty()

    def should_recommend_refresh(self) -> bool:
        if self._summary is None:
            return True
        return utc_now() - self._summary.computed_at >= self.stale_after

    def resolve_id(self, asset_symbol: str) -> str:
        """Ticker symbol -> price-source id via symbols_map (btc -> bitcoin)."""
        return self._symbols_map.get(asset_symbol.lower(), asset_symbol.lower())

    # ── lifecycle ────────────────────────────────────────────────────────────

    async def initialize(self) -> PortfolioSummary:
        if self._state is not ServiceState.UNINITIALIZED:
            return self.get_cached_summary()
        self._state = ServiceState.INITIALIZING
        self._integrity_checked = False

        snapshot = await self._store.load()
        if snapshot is not None and snapshot.is_zero and await self._ledger_has_transactions():
            self.log.warning("Snapshot shows an empty portfolio but the ledger has "
                             "transactions; ignoring it.")
            snapshot = None

        if snapshot is not None:
            self._summary = snapshot.with_freshness_cap(Freshness.CACHED)
            self._state = ServiceState.READY
            self.log.info("Initialized from snapshot (value=%s, computed %s).",
                          snapshot.total_value, snapshot.computed_at.isoformat())
            self._revalidation = asyncio.create_task(self._revalidate())
            return self._summary

        try:
            summary = await self.refresh()
            summary = await self._integrity_check(summary)
        except LedgerReadError as e:
            self._state = ServiceState.UNINITIALIZED
            raise PortfolioUnavailableError(
                "No saved snapshot and the transaction ledger cannot be read.") from e
        except BaseException:
            self._state = ServiceState.UNINITIALIZED
            raise
        self._state = ServiceState.READY
        return summary

    async def _revalidate(self) -> None:
        try:
            summary = await self.refresh()
            await self._integrity_check(summary)
        except PortfolioError as e:
            self.last_warning = e
            self.log.warning("Background revalidation failed, keeping snapshot: %s", e)

    async def _integrity_check(self, summary: PortfolioSummary) -> PortfolioSummary:
        """
        Zero totals with a non-empty ledger means a stale input or a bug:
        recompute once. Runs at most once per initialization, so a legitimately
        empty portfolio (everything sold) still settles.
        """
        if self._integrity_checked:
            return summary
        self._integrity_checked = True
        if summary.is_zero and await self._ledger_has_transactions():
            self.log.warning("Computed an empty portfolio from a non-empty ledger; "
                             "forcing one recomputation.")
            try:
                summary = await self.refresh()
            except PortfolioError as e:
                # the first pass stands
                self.last_warning = e
                self.log.warning("Recomputation failed, keeping the first result: %s", e)
        return summary

    async def drain(self) -> None:
        """Wait for the background revalidation, a running refresh and pending snapshot writes."""
        if self._revalidation is not None:
            await self._revalidation
        if self.is_refreshing:
            await asyncio.wait({self._inflight})
        while self._background:
            await asyncio.gather(*list(self._background))

    # ── refresh ──────────────────────────────────────────────────────────────

    async def refresh(self) -> PortfolioSummary:
        """
        Full recomputation with a fresh price fetch. Calls made while one is
        running share its result. On failure the previous summary is kept.
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._refresh_once())
            self._inflight.add_done_callback(_consume_exception)
        return await asyncio.shield(self._inflight)

    async def _refresh_once(self) -> PortfolioSummary:
        transactions, row_errors = await asyncio.to_thread(self._ledger.read_transactions)

        broken = {e.asset_symbol for e in row_errors if e.asset_symbol}
        if broken:
            transactions = [t for t in transactions if t.asset_symbol not in broken]
        holdings, agg_errors = aggregate_isolated(transactions)
        for e in agg_errors:
            self.log.error("Excluding %s from valuation: %s", e.asset_symbol, e)
        self._integrity_errors = row_errors + agg_errors

        quotes, warning = await self._fetch_quotes(holdings)
        summary = value(holdings, quotes)

        if holdings and not quotes and self._summary is not None:
            raise PriceUnavailableError(
                "No prices available for any held asset; keeping previous summary.",
                tuple(self.resolve_id(s) for s in holdings),
            )

        self.last_warning = warning
        self._adopt(summary)
        self.log.info("Refreshed: value=%s invested=%s freshness=%s",
                      summary.total_value, summary.total_invested,
                      summary.price_data_freshness.value)
        return summary

    async def _fetch_quotes(self, holdings: Mapping[str, Holding],
                            ) -> Tuple[Dict[str, PriceQuote], Optional[RefreshTimeoutError]]:
        ids_by_symbol = {symbol: self.resolve_id(symbol) for symbol in holdings}
        ids = list(dict.fromkeys(ids_by_symbol.values()))
        if not ids:
            return {}, None

        warning = None
        try:
            by_id = await asyncio.wait_for(self._prices.get_batch_prices(ids),
                                           timeout=self.refresh_timeout_sec)
        except asyncio.TimeoutError:
            warning = RefreshTimeoutError(
                f"Price fetch exceeded {self.refresh_timeout_sec:g}s; using fallback prices.",
                self.refresh_timeout_sec,
            )
            self.log.warning("%s", warning)
            by_id = await asyncio.to_thread(self._prices.fallback_prices, ids)
            by_id = {cid: _cap(q, Freshness.CACHED) for cid, q in by_id.items()}

        return {s: by_id[cid] for s, cid in ids_by_symbol.items() if cid in by_id}, warning

    def _adopt(self, summary: PortfolioSummary) -> None:
        self._summary = summary
        task = asyncio.create_task(self._persist(summary))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist(self, summary: PortfolioSummary) -> None:
        if not await self._store.save(summary):
            self.log.warning("Snapshot not persisted; the next cold start may show older data.")

    async def _ledger_has_transactions(self) -> bool:
        try:
            return await asyncio.to_thread(self._ledger.has_transactions)
        except LedgerReadError as e:
            self.log.warning("Ledger unreadable: %s", e)
            return False

    # ── ledger-driven operations ─────────────────────────────────────────────

    async def delete_asset(self, asset_symbol: str) -> PortfolioSummary:
        removed = await asyncio.to_thread(self._ledger.delete_asset, asset_symbol)
        self.log.info("Deleted %d transaction(s) of %s", removed, asset_symbol.upper())
        if self.is_refreshing:
            # that refresh may have read the ledger before the delete
            await asyncio.wait({self._inflight})
        return await self.refresh()

    async def reset(self) -> None:
        """Forget the persisted snapshot and the in-memory summary."""
        await self.drain()
        await self._store.clear()
        self._summary = None
        self._state = ServiceState.UNINITIALIZED

    async def export(self) -> Dict[str, Any]:
        transactions = await asyncio.to_thread(self._ledger.list_transactions)
        summary = self.get_cached_summary()
        return {
            "export_date": utc_now_iso(),
            "is_initialized": self.is_initialized,
            "summary": summary.to_dict(),
            "transactions": [t.to_dict() for t in transactions],
            "total_holdings": len(summary.asset_valuations),
        }


def _cap(quote: PriceQuote, cap: Freshness) -> PriceQuote:
    return PriceQuote(price=quote.price, change_percent_24h=quote.change_percent_24h,
                      freshness=quote.freshness.at_most(cap), as_of=quote.as_of)


def _consume_exception(task: asyncio.Task) -> None:
    # callers may have been cancelled; keep asyncio from reporting "never retrieved"
    if not task.cancelled():
        task.exception()
