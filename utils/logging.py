# utils/logging.py
from __future__ import annotations
import logging
import sys

ROOT_LOGGER = "crypto_tracker"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# library-style: silent until the entry point calls setup_logging()
logging.getLogger(ROOT_LOGGER).addHandler(logging.NullHandler())


def setup_logging(level: str = "WARNING") -> None:
    """Configure the single stream handler used by the CLI."""
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, str(level).upper(), logging.WARNING))
    if not any(getattr(h, "_crypto_tracker", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._crypto_tracker = True
        root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Namespaced logger, e.g. get_logger("coingecko") -> crypto_tracker.coingecko"""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
