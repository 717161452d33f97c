"""Single-slot gate with a minimum interval for all upstream requests."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from nursery_import.config import settings

logger = logging.getLogger(__name__)


class UpstreamGate:
    """Admits one upstream request at a time, spaced by a minimum interval.

    The slot is held for the whole request, so navigation, detail scrapes
    and image downloads issued through the same gate never overlap. The
    interval is measured from the start of the previous request.
    """

    def __init__(self, min_interval: Optional[float] = None):
        self.min_interval = (
            settings.request_interval_seconds if min_interval is None else min_interval
        )
        self._semaphore = asyncio.Semaphore(1)
        self._last_request: float = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.total_requests = 0

    async def _wait_for_interval(self) -> float:
        elapsed = time.monotonic() - self._last_request
        wait_needed = max(0.0, self.min_interval - elapsed)
        if self._last_request and wait_needed > 0:
            logger.debug(f"Upstream gate: waiting {wait_needed:.2f}s")
            await asyncio.sleep(wait_needed)
            return wait_needed
        return 0.0

    @asynccontextmanager
    async def slot(self, label: str = "request"):
        """Hold the upstream slot for the duration of the block."""
        async with self._semaphore:
            await self._wait_for_interval()
            self._last_request = time.monotonic()
            self.in_flight += 1
            self.total_requests += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                yield
            finally:
                self.in_flight -= 1

    def reset(self) -> None:
        """Forget the last request time (used between independent runs)."""
        self._last_request = 0.0


class IntervalLimiter:
    """Minimum delay between calls, tracked by the last call timestamp."""

    def __init__(self, min_interval: float):
        self.min_interval = min_interval
        self._last_request: float = 0.0
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        """Sleep the remainder of the interval, then record this call."""
        async with self._lock:
            now = time.monotonic()
            waited = 0.0
            if self._last_request:
                waited = max(0.0, self.min_interval - (now - self._last_request))
                if waited > 0:
                    await asyncio.sleep(waited)
            self._last_request = time.monotonic()
            return waited


# Global gate shared by the scraper and image downloader
upstream_gate = UpstreamGate()
