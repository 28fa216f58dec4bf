"""Tests for the rate limiter, retry policy and batch fetch scheduler."""

import pytest

from equity_optimizer.config import FetchConfig
from equity_optimizer.core.rate_limit import RateLimiter
from equity_optimizer.core.retry import backoff_delay, is_rate_limit_error
from equity_optimizer.core.scheduler import BatchFetchScheduler, dedupe_tickers
from equity_optimizer.errors import ConfigurationError, DataUnavailable, FetchTimeout, RateLimited


class TestRateLimiter:
    """Test suite for the shared throttle."""

    def test_first_request_waits_full_delay(self, fake_clock):
        limiter = RateLimiter(min_delay=0.5, clock=fake_clock, sleep=fake_clock.sleep)
        limiter.wait()
        assert fake_clock.now == pytest.approx(0.5)
        assert limiter.request_count == 1

    def test_no_sleep_when_enough_time_passed(self, fake_clock):
        limiter = RateLimiter(min_delay=0.5, clock=fake_clock, sleep=fake_clock.sleep)
        fake_clock.now = 10.0
        limiter.wait()
        assert fake_clock.sleeps == []

    def test_pause_restarts_window(self, fake_clock):
        limiter = RateLimiter(min_delay=0.5, clock=fake_clock, sleep=fake_clock.sleep)
        limiter.wait()
        limiter.pause(2.0)
        limiter.wait()
        assert fake_clock.now == pytest.approx(3.0)

    def test_counters(self, fake_clock):
        limiter = RateLimiter(min_delay=0.0, clock=fake_clock, sleep=fake_clock.sleep)
        for _ in range(4):
            limiter.wait()
        limiter.record_error()
        assert limiter.stats() == {"request_count": 4, "error_count": 1, "success_rate": 0.75}
        limiter.reset_stats()
        assert limiter.success_rate == 1.0


class TestRetryClassification:

    @pytest.mark.parametrize("message", ["Rate limit exceeded", "HTTP 429", "Too Many Requests", "throttled"])
    def test_rate_limit_messages(self, message):
        assert is_rate_limit_error(Exception(message))

    def test_other_errors(self):
        assert not is_rate_limit_error(ValueError("connection reset"))
        assert is_rate_limit_error(RateLimited("AAPL"))

    def test_backoff_doubles(self):
        assert [backoff_delay(a, 1.5) for a in range(3)] == [1.5, 3.0, 6.0]


class TestBatchFetchScheduler:
    """Test suite for BatchFetchScheduler."""

    def test_wall_clock_respects_delays(self, make_scheduler, fake_clock):
        """23 tickers, batches of 10: 23 request delays plus 2 inter-batch pauses."""
        scheduler = make_scheduler(min_delay=0.5, batch_size=10, inter_batch_delay=2.0)
        tickers = [f"T{i:02d}" for i in range(23)]

        results = scheduler.fetch_all(tickers, lambda t: t.lower())

        assert fake_clock.now >= 23 * 0.5 + 2 * 2.0
        assert len(results) == 23
        assert results.stats["request_count"] == 23
        assert results.successes()["T05"] == "t05"

    def test_one_bad_ticker_does_not_abort(self, make_scheduler):
        scheduler = make_scheduler(min_delay=0.0, max_retries=0)

        def fetch(ticker):
            if ticker == "BAD":
                raise DataUnavailable(ticker, "ticker not found")
            return 1

        results = scheduler.fetch_all(["AAA", "BAD", "CCC"], fetch)

        assert list(results) == ["AAA", "BAD", "CCC"]
        assert set(results.successes()) == {"AAA", "CCC"}
        assert isinstance(results.errors()["BAD"], DataUnavailable)

    def test_not_found_is_not_retried(self, make_scheduler):
        scheduler = make_scheduler(min_delay=0.0, max_retries=3)
        calls = []

        def fetch(ticker):
            calls.append(ticker)
            raise DataUnavailable(ticker, "ticker not found")

        scheduler.fetch_all(["XYZ"], fetch)
        assert calls == ["XYZ"]

    def test_rate_limit_backs_off_then_succeeds(self, make_scheduler, fake_clock):
        scheduler = make_scheduler(min_delay=0.0, max_retries=3, base_backoff=1.0)
        attempts = []

        def fetch(ticker):
            attempts.append(ticker)
            if len(attempts) < 3:
                raise RuntimeError("429 Too Many Requests")
            return "ok"

        results = scheduler.fetch_all(["AAPL"], fetch)

        assert results["AAPL"].ok
        assert fake_clock.sleeps == [1.0, 2.0]

    def test_exhausted_rate_limit_recorded_as_rate_limited(self, make_scheduler):
        scheduler = make_scheduler(min_delay=0.0, max_retries=2, base_backoff=0.1)

        def fetch(ticker):
            raise RuntimeError("rate limit exceeded")

        results = scheduler.fetch_all(["AAPL", "MSFT"], fetch)

        errors = results.errors()
        assert set(errors) == {"AAPL", "MSFT"}
        assert all(isinstance(e, RateLimited) for e in errors.values())
        assert results.stats["error_count"] == 6

    def test_generic_failure_retried_then_unavailable(self, make_scheduler):
        scheduler = make_scheduler(min_delay=0.0, max_retries=1, base_backoff=0.1)
        calls = []

        def fetch(ticker):
            calls.append(ticker)
            raise ConnectionError("connection reset")

        results = scheduler.fetch_all(["AAPL"], fetch)

        assert len(calls) == 2
        error = results.errors()["AAPL"]
        assert isinstance(error, DataUnavailable)
        assert not isinstance(error, RateLimited)

    def test_deadline_checked_between_batches(self, make_scheduler):
        scheduler = make_scheduler(min_delay=1.0, batch_size=2, inter_batch_delay=0.0)

        results = scheduler.fetch_all(["A", "B", "C", "D", "E", "F"], lambda t: t, deadline=3.0)

        assert results.timed_out
        assert set(results.successes()) == {"A", "B", "C", "D"}
        assert all(isinstance(results.errors()[t], FetchTimeout) for t in ("E", "F"))
        assert len(results) == 6

    def test_duplicates_fetched_once(self, make_scheduler):
        scheduler = make_scheduler(min_delay=0.0)
        calls = []
        scheduler.fetch_all(["aapl", "AAPL", " msft "], lambda t: calls.append(t))
        assert calls == ["AAPL", "MSFT"]

    def test_estimate_time(self):
        scheduler = BatchFetchScheduler(FetchConfig(min_delay=0.5, batch_size=10, inter_batch_delay=2.0))
        assert scheduler.estimate_time(23) == {"estimated_seconds": 16, "estimated_minutes": 1}
        assert scheduler.estimate_time(0) == {"estimated_seconds": 0, "estimated_minutes": 0}


class TestFetchConfig:

    def test_conservative_preset(self):
        config = FetchConfig.conservative()
        assert config.batch_size == 5
        assert config.min_delay == 1.0

    def test_rejects_bad_batch_size(self):
        with pytest.raises(ConfigurationError):
            FetchConfig(batch_size=0)


def test_dedupe_preserves_order():
    assert dedupe_tickers(["msft", "AAPL", "MSFT", ""]) == ["MSFT", "AAPL"]
