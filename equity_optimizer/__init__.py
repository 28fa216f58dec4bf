"""
Equity Optimizer - Factor Screening and Monthly Rebalancing

Screens a stock universe, scores each name on five factors (value, quality,
risk, growth, momentum), builds a sector-capped portfolio and reviews it
monthly into a bounded buy/sell trade plan:
- Rate-limited batch fetching of fundamentals (yfinance)
- Five-factor scoring with an optional DCF valuation input
- Greedy selection under sector caps, score-weighted sizing
- Rebalance state machine with all-or-nothing persistence (SQLAlchemy)
"""

__version__ = "1.0.0"

from equity_optimizer.config import Config, Strategy, get_strategy
from equity_optimizer.logging_config import setup_logging, get_logger
from equity_optimizer.models.factor_engine import FactorEngine, FactorScore
from equity_optimizer.valuation.dcf import DCFEngine, compute_dcf

__all__ = [
    # Version
    "__version__",
    # Config
    "Config",
    "Strategy",
    "get_strategy",
    "setup_logging",
    "get_logger",
    # Models
    "FactorEngine",
    "FactorScore",
    "DCFEngine",
    "compute_dcf",
]
