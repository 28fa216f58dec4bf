"""
Centralized constants for the Equity Optimizer.

All magic numbers and hardcoded values should be defined here.
Percentage-valued metrics (growth, yields, margins, rates) are expressed in
percent, portfolio constraint fractions as decimals in [0, 1].
"""

from typing import Final

# =============================================================================
# DATA FETCHING
# =============================================================================
MIN_REQUEST_DELAY_SECONDS: Final[float] = 0.5  # 2 requests/second max
DEFAULT_BATCH_SIZE: Final[int] = 10
INTER_BATCH_DELAY_SECONDS: Final[float] = 2.0

# Retry configuration
MAX_RETRY_ATTEMPTS: Final[int] = 3
INITIAL_RETRY_DELAY_SECONDS: Final[float] = 1.0
RETRY_BACKOFF_FACTOR: Final[float] = 2.0

# Conservative preset for heavy load
CONSERVATIVE_MIN_DELAY_SECONDS: Final[float] = 1.0
CONSERVATIVE_BATCH_SIZE: Final[int] = 5
CONSERVATIVE_INTER_BATCH_DELAY_SECONDS: Final[float] = 5.0
CONSERVATIVE_MAX_RETRIES: Final[int] = 5
CONSERVATIVE_BACKOFF_SECONDS: Final[float] = 2.0

# Substrings that identify a provider throttling response
RATE_LIMIT_KEYWORDS: Final[tuple] = ("rate limit", "too many requests", "429", "throttl")

# =============================================================================
# FACTOR MODEL
# =============================================================================
SCORE_MIN: Final[float] = 0.0
SCORE_MAX: Final[float] = 100.0
WEIGHT_SUM_TOLERANCE: Final[float] = 1e-9

FACTOR_NAMES: Final[tuple] = ("value", "quality", "risk", "growth", "momentum")

# Strategy weight vectors (value, quality, risk, growth, momentum)
VALUE_STRATEGY_WEIGHTS: Final[dict] = {
    "value": 0.40, "quality": 0.30, "risk": 0.15, "growth": 0.10, "momentum": 0.05,
}
GROWTH_STRATEGY_WEIGHTS: Final[dict] = {
    "value": 0.10, "quality": 0.20, "risk": 0.10, "growth": 0.40, "momentum": 0.20,
}
BALANCED_STRATEGY_WEIGHTS: Final[dict] = {
    "value": 0.25, "quality": 0.25, "risk": 0.20, "growth": 0.15, "momentum": 0.15,
}
DEFAULT_STRATEGY: Final[str] = "value"

# =============================================================================
# DCF VALUATION
# =============================================================================
DEFAULT_PROJECTION_YEARS: Final[int] = 5
DEFAULT_TERMINAL_GROWTH: Final[float] = 3.0  # GDP-like growth, percent

# Market-cap tiers for the default discount rate: (lower bound, WACC %)
WACC_BY_MARKET_CAP: Final[tuple] = (
    (200e9, 9.0),   # mega cap
    (50e9, 10.0),   # large cap
    (10e9, 11.0),   # mid cap
    (2e9, 12.5),    # small cap
)
MICRO_CAP_WACC: Final[float] = 14.0

# FCF growth estimation
MAX_HISTORICAL_GROWTH: Final[float] = 25.0
MODERATE_GROWTH_RATE: Final[float] = 8.0
HISTORICAL_GROWTH_WEIGHT: Final[float] = 0.7
TERMINAL_GROWTH_WEIGHT: Final[float] = 0.3

# Sensitivity scenario shifts (percentage points) and bounds
SCENARIO_DISCOUNT_SHIFT: Final[float] = 2.0
SCENARIO_GROWTH_SHIFT: Final[float] = 2.0
SCENARIO_TERMINAL_SHIFT: Final[float] = 1.0
BEAR_MIN_GROWTH: Final[float] = 0.0
BEAR_MIN_TERMINAL_GROWTH: Final[float] = 2.0
BULL_MIN_DISCOUNT_RATE: Final[float] = 5.0
BULL_MAX_GROWTH: Final[float] = 25.0
BULL_MAX_TERMINAL_GROWTH: Final[float] = 4.0

# Reverse DCF solver bracket (percent)
IMPLIED_GROWTH_BOUNDS: Final[tuple] = (-50.0, 150.0)

# Valuation assessment thresholds (upside %)
STRONG_BUY_UPSIDE: Final[float] = 30.0
BUY_UPSIDE: Final[float] = 15.0
SELL_DOWNSIDE: Final[float] = -15.0
STRONG_SELL_DOWNSIDE: Final[float] = -30.0

# =============================================================================
# PORTFOLIO CONSTRAINTS
# =============================================================================
DEFAULT_CAPITAL: Final[float] = 100_000.0
DEFAULT_TARGET_HOLDINGS: Final[int] = 20
DEFAULT_MIN_POSITION_PCT: Final[float] = 0.02
DEFAULT_MAX_POSITION_PCT: Final[float] = 0.10
DEFAULT_MAX_SECTOR_PCT: Final[float] = 0.25
DEFAULT_MAX_MONTHLY_TURNOVER: Final[int] = 10

# =============================================================================
# REBALANCE THRESHOLDS
# =============================================================================
SCORE_DROP_THRESHOLD: Final[float] = 15.0  # points below entry score
BENCHMARK_UNDERPERFORMANCE_THRESHOLD: Final[float] = 10.0  # percentage points
REPLACEMENT_SCORE_ADVANTAGE: Final[float] = 20.0  # points above holding
BUY_CANDIDATE_PERCENTILE: Final[float] = 90.0  # top decile

BENCHMARK_TICKER: Final[str] = "SPY"

# =============================================================================
# STORAGE
# =============================================================================
DEFAULT_DATABASE_URL: Final[str] = "sqlite:///data/portfolio.db"
HOLDINGS_SCHEMA_VERSION: Final[int] = 1
DEFAULT_LOCK_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_EXPORT_DIR: Final[str] = "data/portfolios"
