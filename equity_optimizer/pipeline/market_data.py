"""
Market data access.

Providers return plain dicts in normalized units (percent for yields, margins,
growth and returns; debt/equity as a ratio) or None when the ticker is not
found. `fetch_raw_fundamentals` merges a provider's quote, fundamentals and
ratings into a RawFundamentals snapshot.

Usage:
    provider = YahooMarketDataProvider()
    raw = fetch_raw_fundamentals(provider, "AAPL")
"""

from __future__ import annotations

import math
from datetime import date, timedelta
from typing import Any, Dict, Optional, Protocol

import numpy as np
import yfinance as yf

from equity_optimizer.constants import BENCHMARK_TICKER
from equity_optimizer.errors import DataUnavailable
from equity_optimizer.logging_config import get_logger
from equity_optimizer.models.fundamentals import RawFundamentals, clean_number
from equity_optimizer.pipeline.universe import sector_for

logger = get_logger(__name__)

TRADING_DAYS_PER_YEAR = 252


class MarketDataProvider(Protocol):
    def fetch_quote(self, ticker: str) -> Optional[Dict[str, Any]]: ...

    def fetch_fundamentals(self, ticker: str) -> Optional[Dict[str, Any]]: ...

    def fetch_ratings(self, ticker: str) -> Optional[Dict[str, Any]]: ...


class BenchmarkSource(Protocol):
    def fetch_benchmark_return(self, start: date, end: date) -> Optional[float]: ...


def _percent(value: Any) -> Optional[float]:
    """Fraction (0.25) to percent (25.0); None stays None."""
    number = clean_number(value)
    return number * 100 if number is not None else None


def _first(info: Dict[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        number = clean_number(info.get(key))
        if number is not None:
            return number
    return None


def annualized_volatility(closes) -> Optional[float]:
    """Annualized volatility in percent from a series of closing prices."""
    prices = np.asarray(list(closes), dtype=float)
    prices = prices[np.isfinite(prices)]
    if len(prices) < 3:
        return None
    returns = np.diff(prices) / prices[:-1]
    return float(np.std(returns, ddof=1) * math.sqrt(TRADING_DAYS_PER_YEAR) * 100)


class YahooMarketDataProvider:
    """MarketDataProvider backed by yfinance `Ticker.info` and price history."""

    def __init__(self, history_period: str = "1y"):
        self.history_period = history_period
        self._info: Dict[str, Dict[str, Any]] = {}

    def _get_info(self, ticker: str) -> Optional[Dict[str, Any]]:
        if ticker not in self._info:
            info = yf.Ticker(ticker).info or {}
            # Unknown symbols come back as a near-empty dict
            if not any(info.get(k) is not None for k in ("regularMarketPrice", "currentPrice", "marketCap", "longName")):
                return None
            self._info[ticker] = info
        return self._info[ticker]

    def fetch_quote(self, ticker: str) -> Optional[Dict[str, Any]]:
        info = self._get_info(ticker)
        if info is None:
            return None

        volatility = None
        history = yf.Ticker(ticker).history(period=self.history_period)
        if history is not None and not history.empty:
            volatility = annualized_volatility(history["Close"])

        return {
            "price": _first(info, "currentPrice", "regularMarketPrice"),
            "market_cap": _first(info, "marketCap"),
            "beta": _first(info, "beta"),
            "fifty_two_week_high": _first(info, "fiftyTwoWeekHigh"),
            "fifty_two_week_low": _first(info, "fiftyTwoWeekLow"),
            "fifty_two_week_change": _percent(info.get("52WeekChange")),
            "volatility": volatility,
        }

    def fetch_fundamentals(self, ticker: str) -> Optional[Dict[str, Any]]:
        info = self._get_info(ticker)
        if info is None:
            return None

        price = _first(info, "currentPrice", "regularMarketPrice")
        dividend_rate = _first(info, "dividendRate")
        if dividend_rate is not None and price:
            dividend_yield = dividend_rate / price * 100
        else:
            dividend_yield = _percent(info.get("trailingAnnualDividendYield"))

        debt_to_equity = clean_number(info.get("debtToEquity"))

        return {
            "pe_ratio": _first(info, "trailingPE"),
            "forward_pe": _first(info, "forwardPE"),
            "pb_ratio": _first(info, "priceToBook"),
            "ps_ratio": _first(info, "priceToSalesTrailing12Months"),
            "peg_ratio": _first(info, "trailingPegRatio", "pegRatio"),
            "ev_to_ebitda": _first(info, "enterpriseToEbitda"),
            "dividend_yield": dividend_yield,
            "profit_margin": _percent(info.get("profitMargins")),
            "operating_margin": _percent(info.get("operatingMargins")),
            "return_on_equity": _percent(info.get("returnOnEquity")),
            "current_ratio": _first(info, "currentRatio"),
            # Yahoo reports debt/equity in percent (150 = 1.5x)
            "debt_to_equity": debt_to_equity / 100 if debt_to_equity is not None else None,
            "revenue_growth": _percent(info.get("revenueGrowth")),
            "earnings_growth": _percent(info.get("earningsGrowth")),
            "free_cash_flow": _first(info, "freeCashflow"),
            "operating_cash_flow": _first(info, "operatingCashflow"),
            "total_debt": _first(info, "totalDebt"),
            "total_cash": _first(info, "totalCash"),
            "shares_outstanding": _first(info, "sharesOutstanding"),
            "sector": info.get("sector"),
            "name": info.get("longName") or info.get("shortName"),
        }

    def fetch_ratings(self, ticker: str) -> Optional[Dict[str, Any]]:
        info = self._get_info(ticker)
        if info is None:
            return None
        return {
            "analyst_rating": _first(info, "recommendationMean"),
            "price_target": _first(info, "targetMeanPrice"),
            "analyst_count": _first(info, "numberOfAnalystOpinions"),
        }


def fetch_raw_fundamentals(provider: MarketDataProvider, ticker: str) -> RawFundamentals:
    """
    Merge quote, fundamentals and ratings for one ticker.

    Raises:
        DataUnavailable: If the provider knows nothing about the ticker
    """
    ticker = ticker.upper()
    parts = [provider.fetch_quote(ticker), provider.fetch_fundamentals(ticker), provider.fetch_ratings(ticker)]
    if all(part is None for part in parts):
        raise DataUnavailable(ticker, "ticker not found")

    merged: Dict[str, Any] = {}
    for part in parts:
        if part:
            merged.update({k: v for k, v in part.items() if v is not None})

    if not merged.get("sector"):
        merged["sector"] = sector_for(ticker)

    raw = RawFundamentals.from_mapping(ticker, merged)
    if raw.is_empty():
        raise DataUnavailable(ticker, "no usable metrics")
    return raw


class YahooBenchmarkSource:
    """Benchmark total price return (close to close) via yfinance."""

    def __init__(self, ticker: str = BENCHMARK_TICKER):
        self.ticker = ticker

    def fetch_benchmark_return(self, start: date, end: date) -> Optional[float]:
        """
        Percent price return between two dates.

        Returns:
            Return in percent, or None if the history is unavailable
        """
        try:
            history = yf.Ticker(self.ticker).history(start=start, end=end + timedelta(days=1))
        except Exception as e:
            logger.warning("Failed to fetch %s history: %s", self.ticker, e)
            return None

        if history is None or len(history) < 2:
            logger.warning("Not enough %s history between %s and %s", self.ticker, start, end)
            return None

        first = float(history["Close"].iloc[0])
        last = float(history["Close"].iloc[-1])
        if first <= 0:
            return None
        return (last / first - 1) * 100
