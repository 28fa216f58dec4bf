"""
Retry utilities with exponential backoff.

Failures are retried with `base_backoff * 2**attempt` delays. Backoff pauses go
through the shared RateLimiter so they also restart its request window.
"""

from __future__ import annotations

from typing import Callable, Optional, TypeVar

from equity_optimizer.constants import (
    INITIAL_RETRY_DELAY_SECONDS,
    MAX_RETRY_ATTEMPTS,
    RATE_LIMIT_KEYWORDS,
    RETRY_BACKOFF_FACTOR,
)
from equity_optimizer.core.rate_limit import RateLimiter
from equity_optimizer.errors import DataUnavailable, RateLimited
from equity_optimizer.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def is_rate_limit_error(error: BaseException) -> bool:
    """
    Check whether an exception looks like provider throttling.

    Args:
        error: Exception raised by a fetch

    Returns:
        True for RateLimited or messages mentioning rate limits / HTTP 429
    """
    if isinstance(error, RateLimited):
        return True
    message = str(error).lower()
    return any(keyword in message for keyword in RATE_LIMIT_KEYWORDS)


def backoff_delay(attempt: int, base_backoff: float = INITIAL_RETRY_DELAY_SECONDS) -> float:
    """Delay before retry number `attempt` (0-based)."""
    return base_backoff * (RETRY_BACKOFF_FACTOR ** attempt)


def retry_with_backoff(
    func: Callable[[], T],
    limiter: RateLimiter,
    ticker: Optional[str] = None,
    max_retries: int = MAX_RETRY_ATTEMPTS,
    base_backoff: float = INITIAL_RETRY_DELAY_SECONDS,
) -> T:
    """
    Call `func` through the limiter, retrying failures with exponential backoff.

    An explicit DataUnavailable (provider says the ticker does not exist) is
    terminal and re-raised immediately. Any other failure is retried up to
    `max_retries` times.

    Args:
        func: Zero-argument fetch (use a lambda for parameters)
        limiter: Shared rate limiter; every attempt waits on it
        ticker: Ticker for error reporting
        max_retries: Retries after the first attempt
        base_backoff: Initial backoff in seconds

    Returns:
        The fetch result

    Raises:
        RateLimited: Throttling persisted through every retry
        DataUnavailable: Ticker not found, or any other failure persisted
    """
    attempt = 0
    while True:
        limiter.wait()
        try:
            return func()
        except RateLimited as e:
            limiter.record_error()
            error: Exception = e
        except DataUnavailable:
            limiter.record_error()
            raise
        except Exception as e:
            limiter.record_error()
            error = e

        rate_limited = is_rate_limit_error(error)
        if attempt >= max_retries:
            logger.warning(
                "All %d attempts failed for %s: %s",
                max_retries + 1,
                ticker or "request",
                error,
            )
            if rate_limited:
                raise RateLimited(ticker, f"rate limited after {max_retries + 1} attempts") from error
            raise DataUnavailable(ticker, f"fetch failed after {max_retries + 1} attempts: {error}") from error

        delay = backoff_delay(attempt, base_backoff)
        logger.debug(
            "Attempt %d/%d failed for %s (%s): %s. Retrying in %.1fs...",
            attempt + 1,
            max_retries + 1,
            ticker or "request",
            "rate limited" if rate_limited else "error",
            error,
            delay,
        )
        limiter.pause(delay)
        attempt += 1
