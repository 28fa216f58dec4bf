"""
Pytest configuration and fixtures for the Equity Optimizer tests.

Everything here is offline: a fake clock stands in for time, a fake provider
for Yahoo Finance, and SQLite runs in memory.
"""

import sys
from pathlib import Path
from typing import Dict, Optional

import pytest

# Add project root to Python path so imports work
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from equity_optimizer.config import FetchConfig
from equity_optimizer.constants import FACTOR_NAMES
from equity_optimizer.core.rate_limit import RateLimiter
from equity_optimizer.core.scheduler import BatchFetchScheduler
from equity_optimizer.models.factor_engine import FactorScore
from equity_optimizer.models.fundamentals import RawFundamentals
from equity_optimizer.storage.store import SqlPortfolioStore


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProvider:
    """MarketDataProvider serving canned data; unknown tickers are NotFound."""

    def __init__(self, data: Optional[Dict[str, dict]] = None, failures: Optional[Dict[str, Exception]] = None):
        self.data = data or {}
        self.failures = failures or {}
        self.calls = []

    def fetch_quote(self, ticker):
        self.calls.append(ticker)
        if ticker in self.failures:
            raise self.failures[ticker]
        record = self.data.get(ticker)
        if record is None:
            return None
        return {k: record.get(k) for k in ("price", "market_cap", "beta", "fifty_two_week_high")}

    def fetch_fundamentals(self, ticker):
        record = self.data.get(ticker)
        if record is None:
            return None
        return {k: v for k, v in record.items() if k not in ("price", "market_cap", "beta", "fifty_two_week_high")}

    def fetch_ratings(self, ticker):
        return {} if ticker in self.data else None


class FakeBenchmark:
    """BenchmarkSource returning a fixed return, or raising when `error` is set."""

    def __init__(self, value: Optional[float] = 0.0, error: Optional[Exception] = None):
        self.value = value
        self.error = error
        self.calls = []

    def fetch_benchmark_return(self, start, end):
        self.calls.append((start, end))
        if self.error is not None:
            raise self.error
        return self.value


class FakeEngine:
    """Factor engine returning preset composites, for steering rebalance tests."""

    def __init__(self, composites: Dict[str, float]):
        self.composites = composites

    def score(self, raw: RawFundamentals, strategy=None) -> FactorScore:
        return make_score(raw.ticker, self.composites[raw.ticker], sector=raw.sector, price=raw.price,
                          beta=raw.beta, fundamentals=raw)


def make_score(ticker, composite, sector="Technology", price=100.0, beta=1.0, fundamentals=None) -> FactorScore:
    """FactorScore with every sub-score equal to the composite."""
    return FactorScore(
        ticker=ticker,
        value=composite,
        quality=composite,
        risk=composite,
        growth=composite,
        momentum=composite,
        composite=composite,
        strategy="value",
        applied_weights={name: 0.2 for name in FACTOR_NAMES},
        sector=sector,
        beta=beta,
        price=price,
        fundamentals=fundamentals,
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_scheduler(fake_clock):
    """Factory for schedulers sharing the fake clock."""
    def factory(**settings) -> BatchFetchScheduler:
        config = FetchConfig(**settings)
        limiter = RateLimiter(min_delay=config.min_delay, clock=fake_clock, sleep=fake_clock.sleep)
        return BatchFetchScheduler(config, limiter)
    return factory


@pytest.fixture
def store():
    """Fresh in-memory SQLite store."""
    return SqlPortfolioStore("sqlite://")


@pytest.fixture
def test_tickers():
    """Return a small set of tickers for testing."""
    return ["AAPL", "MSFT", "GOOG", "AMZN"]
