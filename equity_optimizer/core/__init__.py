"""
Core utilities for the Equity Optimizer.

- Rate limiting (RateLimiter)
- Retry logic (retry_with_backoff, is_rate_limit_error)
- Batch fetching (BatchFetchScheduler, FetchResults)
- Timing utilities (Timer)
"""

from equity_optimizer.core.rate_limit import RateLimiter
from equity_optimizer.core.retry import backoff_delay, is_rate_limit_error, retry_with_backoff
from equity_optimizer.core.scheduler import BatchFetchScheduler, FetchOutcome, FetchResults, dedupe_tickers
from equity_optimizer.core.timing import Timer

__all__ = [
    # Rate limiting
    "RateLimiter",
    # Retry
    "backoff_delay",
    "is_rate_limit_error",
    "retry_with_backoff",
    # Scheduling
    "BatchFetchScheduler",
    "FetchOutcome",
    "FetchResults",
    "dedupe_tickers",
    # Timing
    "Timer",
]
