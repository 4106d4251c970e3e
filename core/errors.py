# core/errors.py
from __future__ import annotations
from typing import Optional


class PortfolioError(Exception):
    """Base class for everything the portfolio core raises."""


class LedgerIntegrityError(PortfolioError):
    """A sell exceeds the owned quantity, or a transaction has malformed fields."""

    def __init__(self, message: str, asset_symbol: Optional[str] = None,
                 transaction_id: Optional[str] = None):
        super().__init__(message)
        self.asset_symbol = asset_symbol
        self.transaction_id = transaction_id


class LedgerReadError(PortfolioError):
    """The ledger file exists but cannot be read or parsed."""


class PriceUnavailableError(PortfolioError):
    """Every price tier failed for the given asset id(s)."""

    def __init__(self, message: str, asset_ids: tuple[str, ...] = ()):
        super().__init__(message)
        self.asset_ids = tuple(asset_ids)


class SnapshotCorruptError(PortfolioError):
    """Persisted snapshot is unreadable, tampered with, or from another schema."""


class RefreshTimeoutError(PortfolioError):
    """A refresh hit its time bound and was resolved from fallback data."""

    def __init__(self, message: str, timeout_sec: float):
        super().__init__(message)
        self.timeout_sec = timeout_sec


class PortfolioUnavailableError(PortfolioError):
    """No snapshot and no computable ledger: nothing can be shown."""
