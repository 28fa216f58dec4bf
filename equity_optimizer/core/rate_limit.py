"""
Rate limiting for market data requests.

A single RateLimiter is constructed per invocation and shared by every fetch
in that invocation, so the minimum spacing between provider calls holds no
matter how many batches or callers are involved.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional

from equity_optimizer.constants import MIN_REQUEST_DELAY_SECONDS
from equity_optimizer.logging_config import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """
    Thread-safe throttle enforcing a minimum delay between requests.

    The construction instant counts as the last request, and every pause
    (inter-batch or backoff) restarts the window, so pauses add to the
    per-request floor instead of overlapping it.

    Example:
        limiter = RateLimiter(min_delay=0.5)

        def fetch(ticker):
            limiter.wait()
            return provider.fetch_quote(ticker)
    """

    def __init__(
        self,
        min_delay: float = MIN_REQUEST_DELAY_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize rate limiter.

        Args:
            min_delay: Minimum seconds between consecutive requests
            clock: Monotonic clock returning seconds (default: time.monotonic)
            sleep: Sleep function (default: time.sleep)
        """
        self.min_delay = min_delay
        self.clock = clock or time.monotonic
        self.sleep = sleep or time.sleep
        self.lock = threading.Lock()
        self.last_call = self.clock()
        self.request_count = 0
        self.error_count = 0

    def wait(self) -> None:
        """Block until the next request is allowed, then claim the slot."""
        with self.lock:
            elapsed = self.clock() - self.last_call
            if elapsed < self.min_delay:
                sleep_time = self.min_delay - elapsed
                logger.debug("Rate limiting: sleeping %.2fs", sleep_time)
                self.sleep(sleep_time)
            self.last_call = self.clock()
            self.request_count += 1

    def pause(self, seconds: float) -> None:
        """Sleep for `seconds` and restart the request window afterwards."""
        if seconds <= 0:
            return
        with self.lock:
            self.sleep(seconds)
            self.last_call = self.clock()

    def record_error(self) -> None:
        with self.lock:
            self.error_count += 1

    @property
    def success_rate(self) -> float:
        """Fraction of issued requests that did not fail (1.0 when idle)."""
        if self.request_count == 0:
            return 1.0
        return (self.request_count - self.error_count) / self.request_count

    def stats(self) -> Dict[str, float]:
        return {
            "request_count": self.request_count,
            "error_count": self.error_count,
            "success_rate": self.success_rate,
        }

    def reset_stats(self) -> None:
        with self.lock:
            self.request_count = 0
            self.error_count = 0
