"""Data pipeline: market data, screening, construction and rebalancing."""

from equity_optimizer.pipeline.universe import get_universe, sector_for, STOCK_UNIVERSE
from equity_optimizer.pipeline.market_data import (
    YahooBenchmarkSource,
    YahooMarketDataProvider,
    fetch_raw_fundamentals,
)
from equity_optimizer.pipeline.screening import ScreenFilters, ScreeningPipeline
from equity_optimizer.pipeline.construction import construct_portfolio
from equity_optimizer.pipeline.rebalance import RebalanceEngine, RebalanceResult
from equity_optimizer.pipeline.snapshot import SnapshotExporter, build_snapshot

__all__ = [
    # Universe
    "get_universe",
    "sector_for",
    "STOCK_UNIVERSE",
    # Market data
    "YahooBenchmarkSource",
    "YahooMarketDataProvider",
    "fetch_raw_fundamentals",
    # Screening
    "ScreenFilters",
    "ScreeningPipeline",
    # Construction & rebalance
    "construct_portfolio",
    "RebalanceEngine",
    "RebalanceResult",
    # Snapshots
    "SnapshotExporter",
    "build_snapshot",
]
