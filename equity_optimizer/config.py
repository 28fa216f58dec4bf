"""
Application configuration for the Equity Optimizer.

This module provides a clean configuration interface using frozen dataclasses.
All magic numbers are imported from constants.py for easy modification.

Usage:
    from equity_optimizer.config import Config, get_strategy

    config = Config.from_env()
    weights = get_strategy(config.strategy).weights
"""

import math
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional

from equity_optimizer.constants import (
    # Data fetching
    MIN_REQUEST_DELAY_SECONDS,
    DEFAULT_BATCH_SIZE,
    INTER_BATCH_DELAY_SECONDS,
    MAX_RETRY_ATTEMPTS,
    INITIAL_RETRY_DELAY_SECONDS,
    CONSERVATIVE_MIN_DELAY_SECONDS,
    CONSERVATIVE_BATCH_SIZE,
    CONSERVATIVE_INTER_BATCH_DELAY_SECONDS,
    CONSERVATIVE_MAX_RETRIES,
    CONSERVATIVE_BACKOFF_SECONDS,
    # Factor model
    FACTOR_NAMES,
    VALUE_STRATEGY_WEIGHTS,
    GROWTH_STRATEGY_WEIGHTS,
    BALANCED_STRATEGY_WEIGHTS,
    DEFAULT_STRATEGY,
    WEIGHT_SUM_TOLERANCE,
    # Portfolio
    DEFAULT_CAPITAL,
    DEFAULT_TARGET_HOLDINGS,
    DEFAULT_MIN_POSITION_PCT,
    DEFAULT_MAX_POSITION_PCT,
    DEFAULT_MAX_SECTOR_PCT,
    DEFAULT_MAX_MONTHLY_TURNOVER,
    # Rebalance
    SCORE_DROP_THRESHOLD,
    BENCHMARK_UNDERPERFORMANCE_THRESHOLD,
    REPLACEMENT_SCORE_ADVANTAGE,
    BUY_CANDIDATE_PERCENTILE,
    BENCHMARK_TICKER,
    # Storage
    DEFAULT_DATABASE_URL,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_EXPORT_DIR,
)
from equity_optimizer.errors import ConfigurationError


class Strategy(str, Enum):
    """Named factor weighting strategies."""

    VALUE = "value"
    GROWTH = "growth"
    BALANCED = "balanced"


@dataclass(frozen=True)
class StrategyWeights:
    """Weight vector over the five factor sub-scores."""

    name: str
    weights: Dict[str, float]

    def __post_init__(self):
        missing = [f for f in FACTOR_NAMES if f not in self.weights]
        if missing:
            raise ConfigurationError(f"Strategy '{self.name}' missing weights for {missing}")
        if any(w < 0 for w in self.weights.values()):
            raise ConfigurationError(f"Strategy '{self.name}' has negative weights")
        total = sum(self.weights[f] for f in FACTOR_NAMES)
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ConfigurationError(
                f"Strategy '{self.name}' weights sum to {total:.6f}, expected 1.0"
            )


STRATEGIES: Dict[str, StrategyWeights] = {
    Strategy.VALUE.value: StrategyWeights(Strategy.VALUE.value, dict(VALUE_STRATEGY_WEIGHTS)),
    Strategy.GROWTH.value: StrategyWeights(Strategy.GROWTH.value, dict(GROWTH_STRATEGY_WEIGHTS)),
    Strategy.BALANCED.value: StrategyWeights(Strategy.BALANCED.value, dict(BALANCED_STRATEGY_WEIGHTS)),
}


def get_strategy(strategy) -> StrategyWeights:
    """
    Resolve a strategy identifier to its weight vector.

    Args:
        strategy: Strategy enum member, strategy name, or StrategyWeights

    Returns:
        StrategyWeights for the strategy

    Raises:
        ConfigurationError: If the identifier is unknown
    """
    if isinstance(strategy, StrategyWeights):
        return strategy
    if isinstance(strategy, Strategy):
        strategy = strategy.value
    key = str(strategy).strip().lower() if strategy is not None else ""
    if key not in STRATEGIES:
        raise ConfigurationError(
            f"Unknown strategy '{strategy}'. Choose from: {', '.join(STRATEGIES)}"
        )
    return STRATEGIES[key]


@dataclass(frozen=True)
class FetchConfig:
    """Throttling, batching and retry settings for the batch fetch scheduler."""

    min_delay: float = MIN_REQUEST_DELAY_SECONDS
    batch_size: int = DEFAULT_BATCH_SIZE
    inter_batch_delay: float = INTER_BATCH_DELAY_SECONDS
    max_retries: int = MAX_RETRY_ATTEMPTS
    base_backoff: float = INITIAL_RETRY_DELAY_SECONDS

    def __post_init__(self):
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be >= 1")
        if self.min_delay < 0 or self.inter_batch_delay < 0 or self.base_backoff < 0:
            raise ConfigurationError("Delays must be non-negative")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")

    @classmethod
    def conservative(cls) -> "FetchConfig":
        """Preset for heavy load or a provider that is already throttling."""
        return cls(
            min_delay=CONSERVATIVE_MIN_DELAY_SECONDS,
            batch_size=CONSERVATIVE_BATCH_SIZE,
            inter_batch_delay=CONSERVATIVE_INTER_BATCH_DELAY_SECONDS,
            max_retries=CONSERVATIVE_MAX_RETRIES,
            base_backoff=CONSERVATIVE_BACKOFF_SECONDS,
        )


@dataclass(frozen=True)
class PortfolioConstraints:
    """
    Hard limits a portfolio must satisfy after construction or rebalance.

    Position and sector limits are fractions of total portfolio value.
    """

    target_holdings: int = DEFAULT_TARGET_HOLDINGS
    min_position_pct: float = DEFAULT_MIN_POSITION_PCT
    max_position_pct: float = DEFAULT_MAX_POSITION_PCT
    max_sector_pct: float = DEFAULT_MAX_SECTOR_PCT
    max_monthly_turnover: int = DEFAULT_MAX_MONTHLY_TURNOVER
    min_sector_count: Optional[int] = None

    def __post_init__(self):
        if self.target_holdings < 1:
            raise ConfigurationError("target_holdings must be >= 1")
        if not 0 <= self.min_position_pct <= self.max_position_pct <= 1:
            raise ConfigurationError(
                "Position limits must satisfy 0 <= min_position_pct <= max_position_pct <= 1"
            )
        if not 0 < self.max_sector_pct <= 1:
            raise ConfigurationError("max_sector_pct must be in (0, 1]")
        if self.max_monthly_turnover < 0:
            raise ConfigurationError("max_monthly_turnover must be >= 0")
        if self.min_sector_count is not None and self.min_sector_count < 1:
            raise ConfigurationError("min_sector_count must be >= 1 when set")

    @property
    def max_per_sector(self) -> int:
        """Count-based sector cap used by the selector (at least one name)."""
        return max(1, math.floor(self.max_sector_pct * self.target_holdings + 1e-9))


@dataclass(frozen=True)
class Config:
    """
    Immutable application configuration.

    All values default to constants.py; `from_env()` applies EQO_* overrides.
    """

    # =========================================================================
    # Strategy & Portfolio
    # =========================================================================
    strategy: str = DEFAULT_STRATEGY
    initial_capital: float = DEFAULT_CAPITAL
    constraints: PortfolioConstraints = field(default_factory=PortfolioConstraints)
    use_dcf_factor: bool = False

    # =========================================================================
    # Data Fetching
    # =========================================================================
    fetch: FetchConfig = field(default_factory=FetchConfig)
    benchmark_ticker: str = BENCHMARK_TICKER

    # =========================================================================
    # Rebalance Thresholds
    # =========================================================================
    score_drop_threshold: float = SCORE_DROP_THRESHOLD
    benchmark_underperformance: float = BENCHMARK_UNDERPERFORMANCE_THRESHOLD
    replacement_advantage: float = REPLACEMENT_SCORE_ADVANTAGE
    buy_percentile: float = BUY_CANDIDATE_PERCENTILE

    # =========================================================================
    # Storage & Output
    # =========================================================================
    database_url: str = DEFAULT_DATABASE_URL
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    export_dir: str = DEFAULT_EXPORT_DIR
    log_level: str = "INFO"

    def __post_init__(self):
        get_strategy(self.strategy)

    @classmethod
    def from_env(cls, **overrides) -> "Config":
        """
        Build a Config from defaults, EQO_* environment variables and overrides.

        Recognized variables: EQO_DATABASE_URL, EQO_STRATEGY, EQO_MIN_DELAY,
        EQO_BATCH_SIZE, EQO_LOG_LEVEL.

        Raises:
            ConfigurationError: If a variable cannot be parsed
        """
        config = cls()
        env: Dict[str, object] = {}

        if os.getenv("EQO_DATABASE_URL"):
            env["database_url"] = os.environ["EQO_DATABASE_URL"]
        if os.getenv("EQO_STRATEGY"):
            env["strategy"] = os.environ["EQO_STRATEGY"].strip().lower()
        if os.getenv("EQO_LOG_LEVEL"):
            env["log_level"] = os.environ["EQO_LOG_LEVEL"].strip().upper()

        fetch_changes: Dict[str, object] = {}
        try:
            if os.getenv("EQO_MIN_DELAY"):
                fetch_changes["min_delay"] = float(os.environ["EQO_MIN_DELAY"])
            if os.getenv("EQO_BATCH_SIZE"):
                fetch_changes["batch_size"] = int(os.environ["EQO_BATCH_SIZE"])
        except ValueError as e:
            raise ConfigurationError(f"Invalid fetch setting in environment: {e}") from e
        if fetch_changes:
            env["fetch"] = replace(config.fetch, **fetch_changes)

        env.update(overrides)
        return replace(config, **env)


__all__ = [
    "Strategy",
    "StrategyWeights",
    "STRATEGIES",
    "get_strategy",
    "FetchConfig",
    "PortfolioConstraints",
    "Config",
]
