"""
Batch fetch scheduler.

Fetches data for many tickers through a shared RateLimiter: tickers are
deduplicated, split into batches, fetched one at a time, and separated by an
inter-batch pause. A failure for one ticker is recorded and never aborts the
batch.

Usage:
    limiter = RateLimiter(min_delay=config.fetch.min_delay)
    scheduler = BatchFetchScheduler(config.fetch, limiter)
    results = scheduler.fetch_all(tickers, lambda t: fetch_raw_fundamentals(provider, t))
    for ticker, raw in results.successes().items():
        ...
"""

from __future__ import annotations

import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from tqdm import tqdm

from equity_optimizer.config import FetchConfig
from equity_optimizer.core.rate_limit import RateLimiter
from equity_optimizer.core.retry import retry_with_backoff
from equity_optimizer.errors import DataUnavailable, FetchTimeout
from equity_optimizer.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class FetchOutcome:
    """Result of fetching one ticker: exactly one of value/error is set."""

    ticker: str
    value: Any = None
    error: Optional[DataUnavailable] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class FetchResults:
    """Ordered mapping of ticker -> FetchOutcome, in first-seen input order."""

    def __init__(self, timed_out: bool = False, stats: Optional[Dict[str, float]] = None):
        self._outcomes: "OrderedDict[str, FetchOutcome]" = OrderedDict()
        self.timed_out = timed_out
        self.stats: Dict[str, float] = stats or {}

    def add(self, outcome: FetchOutcome) -> None:
        self._outcomes[outcome.ticker] = outcome

    def __getitem__(self, ticker: str) -> FetchOutcome:
        return self._outcomes[ticker]

    def __contains__(self, ticker: object) -> bool:
        return ticker in self._outcomes

    def __iter__(self) -> Iterator[str]:
        return iter(self._outcomes)

    def __len__(self) -> int:
        return len(self._outcomes)

    def items(self):
        return self._outcomes.items()

    def successes(self) -> Dict[str, Any]:
        return {t: o.value for t, o in self._outcomes.items() if o.ok}

    def errors(self) -> Dict[str, DataUnavailable]:
        return {t: o.error for t, o in self._outcomes.items() if not o.ok}


def dedupe_tickers(tickers: Iterable[str]) -> List[str]:
    """Upper-case and deduplicate tickers, preserving first-seen order."""
    seen = set()
    unique = []
    for ticker in tickers:
        symbol = ticker.strip().upper()
        if symbol and symbol not in seen:
            seen.add(symbol)
            unique.append(symbol)
    return unique


def chunk(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class BatchFetchScheduler:
    """
    Rate-limited, retrying, batched fetcher.

    Issuance is strictly sequential: one request is in flight at a time.
    """

    def __init__(
        self,
        config: Optional[FetchConfig] = None,
        limiter: Optional[RateLimiter] = None,
        show_progress: bool = False,
    ):
        """
        Initialize scheduler.

        Args:
            config: Fetch settings (default: FetchConfig())
            limiter: Shared limiter; one is created from config when omitted
            show_progress: Display a tqdm progress bar
        """
        self.config = config or FetchConfig()
        self.limiter = limiter or RateLimiter(min_delay=self.config.min_delay)
        self.show_progress = show_progress

    @property
    def clock(self) -> Callable[[], float]:
        return self.limiter.clock

    def fetch_all(
        self,
        tickers: Iterable[str],
        fetch_fn: Callable[[str], Any],
        deadline: Optional[float] = None,
    ) -> FetchResults:
        """
        Fetch every ticker through the limiter.

        Args:
            tickers: Tickers to fetch (duplicates are fetched once)
            fetch_fn: Per-ticker fetch; raise DataUnavailable for unknown tickers
            deadline: Absolute time on the limiter clock; checked between batches

        Returns:
            FetchResults with one outcome per unique ticker
        """
        unique = dedupe_tickers(tickers)
        batches = chunk(unique, self.config.batch_size)
        results = FetchResults()

        logger.info(
            "Fetching %d tickers in %d batches (est. %ds)",
            len(unique),
            len(batches),
            self.estimate_time(len(unique))["estimated_seconds"],
        )

        progress = tqdm(total=len(unique), desc="Fetching", unit="ticker", disable=not self.show_progress)
        try:
            for index, batch in enumerate(batches):
                if deadline is not None and self.clock() >= deadline:
                    remaining = [t for b in batches[index:] for t in b]
                    logger.warning("Deadline expired; %d tickers not fetched", len(remaining))
                    for ticker in remaining:
                        results.add(FetchOutcome(ticker, error=FetchTimeout(ticker)))
                    results.timed_out = True
                    break

                if index > 0:
                    self.limiter.pause(self.config.inter_batch_delay)

                for ticker in batch:
                    results.add(self._fetch_one(ticker, fetch_fn))
                    progress.update(1)
        finally:
            progress.close()

        results.stats = self.limiter.stats()
        errors = results.errors()
        if errors:
            logger.info("Fetched %d/%d tickers (%d failed)", len(unique) - len(errors), len(unique), len(errors))
        return results

    def _fetch_one(self, ticker: str, fetch_fn: Callable[[str], Any]) -> FetchOutcome:
        try:
            value = retry_with_backoff(
                lambda: fetch_fn(ticker),
                self.limiter,
                ticker=ticker,
                max_retries=self.config.max_retries,
                base_backoff=self.config.base_backoff,
            )
        except DataUnavailable as e:
            logger.warning("Skipping %s: %s", ticker, e.reason)
            return FetchOutcome(ticker, error=e)
        return FetchOutcome(ticker, value=value)

    def estimate_time(self, n: int) -> Dict[str, int]:
        """
        Estimate wall time for fetching `n` tickers without retries.

        Returns:
            Dict with estimated_seconds and estimated_minutes, both rounded up
        """
        if n <= 0:
            return {"estimated_seconds": 0, "estimated_minutes": 0}
        batches = math.ceil(n / self.config.batch_size)
        seconds = n * self.config.min_delay + (batches - 1) * self.config.inter_batch_delay
        return {
            "estimated_seconds": math.ceil(seconds),
            "estimated_minutes": math.ceil(seconds / 60),
        }
