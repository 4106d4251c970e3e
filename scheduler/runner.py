# scheduler/runner.py
from __future__ import annotations
import asyncio
import random
from typing import Awaitable, Callable, Optional

from core.errors import PortfolioError
from utils.logging import get_logger

log = get_logger("scheduler")

MIN_DELAY_SEC = 1.0


def next_delay(interval_sec: float, jitter_sec: float) -> float:
    """interval ± jitter, never below MIN_DELAY_SEC."""
    return max(MIN_DELAY_SEC, interval_sec + random.uniform(-jitter_sec, jitter_sec))


async def run_daemon(job_fn: Callable[[], Awaitable[object]], interval_sec: float,
                     jitter_sec: float = 0.0, max_runs: Optional[int] = None,
                     stop_event: Optional[asyncio.Event] = None) -> int:
    """
    Run `job_fn` repeatedly until `stop_event` is set or `max_runs` is reached.
    A failing run is logged and the loop keeps going. Returns the number of runs.
    """
    runs = 0
    while True:
        try:
            await job_fn()
        except PortfolioError as e:
            log.warning("Scheduled run failed: %s", e)
        runs += 1
        if max_runs is not None and runs >= max_runs:
            return runs

        delay = next_delay(interval_sec, jitter_sec)
        log.info("Next run in %.1fs", delay)
        if stop_event is None:
            await asyncio.sleep(delay)
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
            return runs
        except asyncio.TimeoutError:
            continue
