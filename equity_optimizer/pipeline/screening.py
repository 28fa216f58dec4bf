"""
Fetch-and-score pipeline plus fundamental screen filters.

Usage:
    pipeline = ScreeningPipeline(provider, scheduler, FactorEngine("value"))
    result = pipeline.run(get_universe(["Technology"]))
    top = FactorEngine.rank_frame(result.scores).head(10)
    peers = pipeline.compare(["AAPL", "MSFT", "GOOGL"])
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from equity_optimizer.core.scheduler import BatchFetchScheduler, FetchResults, dedupe_tickers
from equity_optimizer.core.timing import Timer
from equity_optimizer.errors import DataUnavailable
from equity_optimizer.logging_config import get_logger
from equity_optimizer.models.factor_engine import FactorEngine, FactorScore
from equity_optimizer.models.fundamentals import RawFundamentals
from equity_optimizer.models.portfolio import UNKNOWN_SECTOR
from equity_optimizer.pipeline.market_data import MarketDataProvider, fetch_raw_fundamentals

logger = get_logger(__name__)

BILLION = 1e9
DEFAULT_SCREEN_LIMIT = 10


@dataclass(frozen=True)
class ScreenFilters:
    """
    Fundamental screen. Market cap bounds are in billions, dividend yield in percent.

    A stock missing a filtered metric fails that filter. At most `limit`
    matches are kept (None keeps all).
    """

    sector: Optional[str] = None
    min_market_cap: Optional[float] = None
    max_market_cap: Optional[float] = None
    min_pe: Optional[float] = None
    max_pe: Optional[float] = None
    min_dividend_yield: Optional[float] = None
    max_dividend_yield: Optional[float] = None
    min_beta: Optional[float] = None
    max_beta: Optional[float] = None
    limit: Optional[int] = DEFAULT_SCREEN_LIMIT


def _within(value: Optional[float], low: Optional[float], high: Optional[float]) -> bool:
    if low is None and high is None:
        return True
    if value is None:
        return False
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def apply_filters(raws: Iterable[RawFundamentals], filters: ScreenFilters) -> List[RawFundamentals]:
    """Keep snapshots passing every filter, largest market cap first."""
    min_cap = filters.min_market_cap * BILLION if filters.min_market_cap is not None else None
    max_cap = filters.max_market_cap * BILLION if filters.max_market_cap is not None else None

    matches = [
        raw for raw in raws
        if (filters.sector is None or (raw.sector or "").lower() == filters.sector.lower())
        and _within(raw.market_cap, min_cap, max_cap)
        and _within(raw.pe_ratio, filters.min_pe, filters.max_pe)
        and _within(raw.dividend_yield, filters.min_dividend_yield, filters.max_dividend_yield)
        and _within(raw.beta, filters.min_beta, filters.max_beta)
    ]
    matches.sort(key=lambda r: (r.market_cap is None, -(r.market_cap or 0.0), r.ticker))
    if filters.limit is not None:
        matches = matches[:filters.limit]
    return matches


@dataclass
class ScreenResult:
    scores: List[FactorScore] = field(default_factory=list)
    fundamentals: Dict[str, RawFundamentals] = field(default_factory=dict)
    errors: Dict[str, DataUnavailable] = field(default_factory=dict)
    timed_out: bool = False
    stats: Dict[str, float] = field(default_factory=dict)

    def by_ticker(self) -> Dict[str, FactorScore]:
        return {s.ticker: s for s in self.scores}


class ScreeningPipeline:
    """Fetch fundamentals through the scheduler, filter, then score."""

    def __init__(self, provider: MarketDataProvider, scheduler: BatchFetchScheduler, engine: FactorEngine):
        self.provider = provider
        self.scheduler = scheduler
        self.engine = engine

    def fetch(self, tickers: Iterable[str], deadline: Optional[float] = None) -> FetchResults:
        return self.scheduler.fetch_all(
            tickers,
            lambda ticker: fetch_raw_fundamentals(self.provider, ticker),
            deadline=deadline,
        )

    def run(
        self,
        tickers: Iterable[str],
        filters: Optional[ScreenFilters] = None,
        strategy=None,
        deadline: Optional[float] = None,
    ) -> ScreenResult:
        """
        Fetch, filter and score a list of tickers.

        Per-ticker failures are collected in `errors`; they never abort the run.
        """
        with Timer("Universe screen"):
            fetched = self.fetch(tickers, deadline=deadline)
            raws = list(fetched.successes().values())
            if filters is not None:
                raws = apply_filters(raws, filters)

            errors = dict(fetched.errors())
            scores = []
            for raw in raws:
                try:
                    scores.append(self.engine.score(raw, strategy))
                except DataUnavailable as e:
                    logger.warning("Cannot score %s: %s", raw.ticker, e.reason)
                    errors[raw.ticker] = e

        logger.info("Scored %d tickers (%d unavailable)", len(scores), len(errors))
        return ScreenResult(
            scores=scores,
            fundamentals={raw.ticker: raw for raw in raws},
            errors=errors,
            timed_out=fetched.timed_out,
            stats=fetched.stats,
        )

    def compare(self, tickers: Iterable[str], deadline: Optional[float] = None) -> CompanyComparison:
        """
        Fetch 2-10 companies and compare them side by side.

        Tickers that cannot be fetched are left out of the comparison and
        reported in `errors`.

        Raises:
            ValueError: Fewer than 2 or more than 10 distinct tickers
        """
        unique = dedupe_tickers(tickers)
        if not COMPARE_MIN_TICKERS <= len(unique) <= COMPARE_MAX_TICKERS:
            raise ValueError(
                f"Compare takes {COMPARE_MIN_TICKERS}-{COMPARE_MAX_TICKERS} tickers, got {len(unique)}"
            )
        fetched = self.fetch(unique, deadline=deadline)
        comparison = compare_companies(fetched.successes().values())
        comparison.errors = dict(fetched.errors())
        return comparison


# =============================================================================
# Side-by-side comparison
# =============================================================================

COMPARE_MIN_TICKERS = 2
COMPARE_MAX_TICKERS = 10

COMPARISON_METRICS = (
    "price",
    "pe_ratio",
    "pb_ratio",
    "ps_ratio",
    "dividend_yield",
    "revenue_growth",
    "profit_margin",
    "beta",
    "fifty_two_week_change",
    "analyst_rating",
)


def format_market_cap(value: Optional[float]) -> str:
    """$1.23T / $45.60B / $7.89M, whole dollars below a million, '-' when unknown."""
    if value is None:
        return "-"
    if value >= 1e12:
        return f"${value / 1e12:.2f}T"
    if value >= 1e9:
        return f"${value / 1e9:.2f}B"
    if value >= 1e6:
        return f"${value / 1e6:.2f}M"
    return f"${value:.0f}"


def _round(value: Optional[float]) -> Optional[float]:
    return round(value, 2) if value is not None else None


def _leader(raws: List[RawFundamentals], metric: str, lowest: bool = False, positive_only: bool = False):
    present = [
        r for r in raws
        if getattr(r, metric) is not None and (not positive_only or getattr(r, metric) > 0)
    ]
    if not present:
        return None
    pick = min if lowest else max
    return pick(present, key=lambda r: getattr(r, metric)).ticker


@dataclass
class CompanyComparison:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    summary: Dict[str, Optional[str]] = field(default_factory=dict)
    errors: Dict[str, DataUnavailable] = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows)


def compare_companies(raws: Iterable[RawFundamentals]) -> CompanyComparison:
    """
    Line companies up metric by metric and name the leader in each category.

    Ratios and percentages are rounded to two decimals. A company missing a
    metric is left out of that category; P/E and dividend leaders only
    consider positive values. Ties go to the company listed first.

    Returns:
        CompanyComparison with one row per company, in input order
    """
    raws = list(raws)
    rows = []
    for raw in raws:
        row: Dict[str, Any] = {
            "ticker": raw.ticker,
            "name": raw.name or raw.ticker,
            "sector": raw.sector or UNKNOWN_SECTOR,
            "market_cap": format_market_cap(raw.market_cap),
            "market_cap_raw": raw.market_cap,
        }
        row.update({metric: _round(getattr(raw, metric)) for metric in COMPARISON_METRICS})
        rows.append(row)

    summary = {
        "cheapest_by_pe": _leader(raws, "pe_ratio", lowest=True, positive_only=True),
        "highest_growth": _leader(raws, "revenue_growth"),
        "lowest_beta": _leader(raws, "beta", lowest=True),
        "highest_dividend": _leader(raws, "dividend_yield", positive_only=True),
        "best_performer": _leader(raws, "fifty_two_week_change"),
        "largest_company": _leader(raws, "market_cap"),
    }
    return CompanyComparison(rows=rows, summary=summary)
