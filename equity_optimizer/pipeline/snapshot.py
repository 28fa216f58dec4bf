"""
Portfolio Snapshot Builder

Captures point-in-time portfolio valuations for performance tracking:
period and cumulative returns against the benchmark, plus per-holding detail.
Snapshots can be exported to JSON and CSV for review outside the database.
"""

import json
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import pandas as pd

from equity_optimizer.constants import DEFAULT_EXPORT_DIR
from equity_optimizer.logging_config import get_logger
from equity_optimizer.models.portfolio import HoldingSnapshot, Portfolio, Snapshot
from equity_optimizer.pipeline.market_data import BenchmarkSource

logger = get_logger(__name__)


def _return_pct(current: float, base: Optional[float]) -> Optional[float]:
    if base is None or base <= 0:
        return None
    return (current / base - 1) * 100


def _benchmark_return(benchmark: BenchmarkSource, start: date, end: date) -> Optional[float]:
    try:
        return benchmark.fetch_benchmark_return(start, end)
    except Exception as e:
        logger.warning("Benchmark return unavailable for %s to %s: %s", start, end, e)
        return None


def build_snapshot(
    portfolio: Portfolio,
    as_of: Optional[date] = None,
    previous: Optional[Snapshot] = None,
    benchmark: Optional[BenchmarkSource] = None,
) -> Snapshot:
    """
    Value a portfolio and compare it with the benchmark.

    Args:
        portfolio: Portfolio with current prices filled in where known
        as_of: Snapshot date (default: today)
        previous: Last saved snapshot, the base for period returns
        benchmark: Benchmark source; returns are None when unavailable

    Returns:
        Snapshot. alpha_pct is cumulative return minus benchmark cumulative return.
    """
    as_of = as_of or date.today()
    total = portfolio.total_value

    holdings = [
        HoldingSnapshot(
            ticker=h.ticker,
            shares=h.shares,
            price=h.price,
            value=h.market_value,
            weight=h.market_value / total if total > 0 else 0.0,
            sector=h.sector,
            gain_pct=h.gain_pct,
        )
        for h in sorted(portfolio.holdings.values(), key=lambda h: -h.market_value)
    ]

    period_return = _return_pct(total, previous.total_value) if previous else None
    cumulative_return = _return_pct(total, portfolio.initial_capital)

    spy_period = spy_cumulative = None
    if benchmark is not None:
        if previous is not None and previous.snapshot_date < as_of:
            spy_period = _benchmark_return(benchmark, previous.snapshot_date, as_of)
        inception = portfolio.created_at.date() if isinstance(portfolio.created_at, datetime) else None
        if inception is not None and inception < as_of:
            spy_cumulative = _benchmark_return(benchmark, inception, as_of)

    alpha = None
    if cumulative_return is not None and spy_cumulative is not None:
        alpha = cumulative_return - spy_cumulative

    return Snapshot(
        portfolio_id=portfolio.id,
        snapshot_date=as_of,
        total_value=total,
        cash_value=portfolio.cash,
        holdings_value=portfolio.holdings_value,
        holdings_count=len(holdings),
        holdings=holdings,
        period_return_pct=period_return,
        cumulative_return_pct=cumulative_return,
        spy_period_return_pct=spy_period,
        spy_cumulative_return_pct=spy_cumulative,
        alpha_pct=alpha,
    )


class SnapshotExporter:
    """Writes snapshots to JSON and position CSV files."""

    def __init__(self, output_dir: str = DEFAULT_EXPORT_DIR):
        """
        Initialize exporter.

        Args:
            output_dir: Directory to save portfolio snapshots
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, snapshot: Snapshot, suffix: str) -> Path:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.output_dir / f"{snapshot.portfolio_id}_{timestamp}.{suffix}"

    def save_json(self, snapshot: Snapshot) -> Path:
        filepath = self._path(snapshot, "json")
        with open(filepath, "w") as f:
            json.dump(snapshot.to_dict(), f, indent=2)
        logger.info("Portfolio snapshot saved: %s", filepath)
        return filepath

    def export_positions_csv(self, snapshot: Snapshot) -> Path:
        """
        Export positions to CSV format.

        Returns:
            Path to saved CSV file
        """
        filepath = self._path(snapshot, "csv")
        df = pd.DataFrame(
            [vars(h) for h in snapshot.holdings],
            columns=["ticker", "shares", "price", "value", "weight", "sector", "gain_pct"],
        )
        df.to_csv(filepath, index=False)
        logger.info("Portfolio positions exported: %s", filepath)
        return filepath
