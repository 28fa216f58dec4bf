"""
Five-factor scoring model.

Each stock gets value, quality, risk, growth and momentum sub-scores on a
0-100 scale. A sub-score is the weighted mean of its present metrics, each
mapped linearly between a "worst" and "best" anchor and clamped. Absent
metrics are skipped, never treated as zero, and an absent sub-score drops out
of the composite with the strategy weights renormalized over what remains.

Scores are absolute (anchored), not cross-sectional, so a stock's score does
not depend on the rest of the universe.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from equity_optimizer.config import StrategyWeights, get_strategy
from equity_optimizer.constants import DEFAULT_STRATEGY, FACTOR_NAMES, SCORE_MAX, SCORE_MIN
from equity_optimizer.errors import DataUnavailable
from equity_optimizer.logging_config import get_logger
from equity_optimizer.models.fundamentals import RawFundamentals
from equity_optimizer.valuation.dcf import DCFEngine, dcf_inputs_from_fundamentals

logger = get_logger(__name__)


@dataclass(frozen=True)
class MetricRule:
    """
    Linear mapping of one metric onto 0-100.

    `best` maps to 100 and `worst` to 0; either may be the larger number.
    `positive_only` marks valuation multiples where a non-positive value
    (e.g. negative earnings) scores 0.
    """

    name: str
    best: float
    worst: float
    weight: float = 1.0
    positive_only: bool = False

    def score(self, value: float) -> float:
        if self.positive_only and value <= 0:
            return SCORE_MIN
        scaled = (value - self.worst) / (self.best - self.worst) * SCORE_MAX
        return max(SCORE_MIN, min(SCORE_MAX, scaled))


# Metric anchors per factor. Values are in the units of RawFundamentals.
FACTOR_RULES: Dict[str, Tuple[MetricRule, ...]] = {
    "value": (
        MetricRule("pe_ratio", best=8.0, worst=40.0, positive_only=True),
        MetricRule("pb_ratio", best=1.0, worst=8.0, positive_only=True),
        MetricRule("ps_ratio", best=1.0, worst=10.0, positive_only=True),
        MetricRule("peg_ratio", best=0.5, worst=3.0, positive_only=True),
        MetricRule("ev_to_ebitda", best=6.0, worst=25.0, positive_only=True),
        MetricRule("dividend_yield", best=5.0, worst=0.0),
        MetricRule("dcf_upside", best=50.0, worst=-50.0),
    ),
    "quality": (
        MetricRule("profit_margin", best=25.0, worst=0.0),
        MetricRule("operating_margin", best=30.0, worst=0.0),
        MetricRule("return_on_equity", best=25.0, worst=0.0),
        MetricRule("current_ratio", best=2.0, worst=0.8),
        MetricRule("debt_to_equity", best=0.2, worst=2.5),
    ),
    "risk": (
        MetricRule("beta", best=0.6, worst=2.0),
        MetricRule("volatility", best=15.0, worst=60.0),
        MetricRule("drawdown_from_high", best=0.0, worst=-50.0),
    ),
    "growth": (
        MetricRule("revenue_growth", best=25.0, worst=-10.0),
        MetricRule("earnings_growth", best=30.0, worst=-20.0),
    ),
    "momentum": (
        MetricRule("fifty_two_week_change", best=40.0, worst=-30.0),
        MetricRule("analyst_rating", best=1.5, worst=4.0),
        MetricRule("target_upside", best=30.0, worst=-20.0),
    ),
}


@dataclass(frozen=True)
class FactorScore:
    """Scored stock. Sub-scores are None when none of their metrics were present."""

    ticker: str
    value: Optional[float]
    quality: Optional[float]
    risk: Optional[float]
    growth: Optional[float]
    momentum: Optional[float]
    composite: float
    strategy: str
    applied_weights: Dict[str, float]
    sector: Optional[str] = None
    beta: Optional[float] = None
    price: Optional[float] = None
    dcf_upside: Optional[float] = None
    metric_scores: Dict[str, float] = field(default_factory=dict)
    fundamentals: Optional[RawFundamentals] = None

    def sub_scores(self) -> Dict[str, Optional[float]]:
        return {name: getattr(self, name) for name in FACTOR_NAMES}

    def to_dict(self) -> dict:
        return {
            "ticker": self.ticker,
            "sector": self.sector,
            **self.sub_scores(),
            "composite": self.composite,
            "strategy": self.strategy,
            "applied_weights": dict(self.applied_weights),
            "beta": self.beta,
            "dcf_upside": self.dcf_upside,
        }


class FactorEngine:
    """
    Score fundamentals snapshots under a weighting strategy.

    Example:
        engine = FactorEngine(strategy="balanced")
        scores = engine.score_many(raw_by_ticker.values())
        print(engine.rank_frame(scores).head(10))
    """

    def __init__(
        self,
        strategy=DEFAULT_STRATEGY,
        use_dcf: bool = False,
        dcf_engine: Optional[DCFEngine] = None,
        rules: Optional[Dict[str, Tuple[MetricRule, ...]]] = None,
    ):
        """
        Initialize the engine.

        Args:
            strategy: Default strategy name, Strategy, or StrategyWeights
            use_dcf: Add DCF base-case upside to the value sub-score
            dcf_engine: Engine used when use_dcf is True
            rules: Metric anchors (default: FACTOR_RULES)

        Raises:
            ConfigurationError: If the strategy is unknown
        """
        self.strategy = get_strategy(strategy)
        self.use_dcf = use_dcf
        self.dcf_engine = dcf_engine or DCFEngine()
        self.rules = rules or FACTOR_RULES

    def _dcf_upside(self, raw: RawFundamentals) -> Optional[float]:
        if not self.use_dcf or raw.price is None or raw.free_cash_flow is None or raw.free_cash_flow <= 0:
            return None
        result = self.dcf_engine.compute(dcf_inputs_from_fundamentals(raw))
        if not result.ok:
            logger.debug("DCF skipped for %s: %s", raw.ticker, result.error)
            return None
        return result.upside_pct

    @staticmethod
    def _metric_value(raw: RawFundamentals, name: str, extras: Dict[str, Optional[float]]) -> Optional[float]:
        if name in extras:
            return extras[name]
        return getattr(raw, name, None)

    def sub_score(self, raw: RawFundamentals, factor: str,
                  extras: Optional[Dict[str, Optional[float]]] = None,
                  metric_scores: Optional[Dict[str, float]] = None) -> Optional[float]:
        """
        Weighted mean of a factor's present metric scores.

        Returns:
            Score in [0, 100], or None when every metric is absent
        """
        extras = extras or {}
        total = 0.0
        weight_sum = 0.0
        for rule in self.rules[factor]:
            value = self._metric_value(raw, rule.name, extras)
            if value is None:
                continue
            metric = rule.score(value)
            if metric_scores is not None:
                metric_scores[rule.name] = metric
            total += rule.weight * metric
            weight_sum += rule.weight
        if weight_sum == 0:
            return None
        return total / weight_sum

    def score(self, raw: RawFundamentals, strategy=None) -> FactorScore:
        """
        Score one stock.

        Args:
            raw: Fundamentals snapshot
            strategy: Override for the engine's default strategy

        Returns:
            FactorScore with composite in [0, 100]

        Raises:
            DataUnavailable: If no sub-score could be computed
            ConfigurationError: If the strategy is unknown
        """
        weights: StrategyWeights = get_strategy(strategy) if strategy is not None else self.strategy

        dcf_upside = self._dcf_upside(raw)
        extras = {
            "dcf_upside": dcf_upside,
            "drawdown_from_high": raw.drawdown_from_high,
            "target_upside": raw.target_upside,
        }

        metric_scores: Dict[str, float] = {}
        subs = {factor: self.sub_score(raw, factor, extras, metric_scores) for factor in FACTOR_NAMES}
        present = {factor: s for factor, s in subs.items() if s is not None}
        if not present:
            raise DataUnavailable(raw.ticker, "no factor metrics available")

        weight_total = sum(weights.weights[f] for f in present)
        if weight_total <= 0:
            raise DataUnavailable(raw.ticker, f"no weighted factors available under '{weights.name}'")
        applied = {f: weights.weights[f] / weight_total for f in present}

        composite = sum(applied[f] * present[f] for f in present)
        composite = max(SCORE_MIN, min(SCORE_MAX, composite))

        return FactorScore(
            ticker=raw.ticker,
            value=subs["value"],
            quality=subs["quality"],
            risk=subs["risk"],
            growth=subs["growth"],
            momentum=subs["momentum"],
            composite=composite,
            strategy=weights.name,
            applied_weights=applied,
            sector=raw.sector,
            beta=raw.beta,
            price=raw.price,
            dcf_upside=dcf_upside,
            metric_scores=metric_scores,
            fundamentals=raw,
        )

    def score_many(self, raws: Iterable[RawFundamentals], strategy=None) -> List[FactorScore]:
        """Score each snapshot, skipping (and logging) tickers with no usable data."""
        scores = []
        for raw in raws:
            try:
                scores.append(self.score(raw, strategy))
            except DataUnavailable as e:
                logger.warning("Cannot score %s: %s", raw.ticker, e.reason)
        return scores

    @staticmethod
    def rank_frame(scores: Iterable[FactorScore]) -> pd.DataFrame:
        """
        Rank scored stocks.

        Returns:
            DataFrame with columns [Ticker, Sector, Value, Quality, Risk,
            Growth, Momentum, Composite] sorted by Composite descending
        """
        rows = [
            {
                "Ticker": s.ticker,
                "Sector": s.sector,
                "Value": s.value,
                "Quality": s.quality,
                "Risk": s.risk,
                "Growth": s.growth,
                "Momentum": s.momentum,
                "Composite": s.composite,
            }
            for s in scores
        ]
        columns = ["Ticker", "Sector", "Value", "Quality", "Risk", "Growth", "Momentum", "Composite"]
        df = pd.DataFrame(rows, columns=columns)
        if df.empty:
            return df
        numeric = columns[2:]
        df[numeric] = df[numeric].astype(float)
        return df.sort_values(["Composite", "Ticker"], ascending=[False, True]).reset_index(drop=True)

    def audit_report(self, scores: List[FactorScore], ticker: str) -> Dict:
        """
        Explain one stock's rank within a scored universe.

        Args:
            scores: Scored universe
            ticker: Stock ticker to audit

        Returns:
            Dictionary with rank, percentile, per-factor contributions and a summary

        Raises:
            ValueError: If the ticker is not in the scored universe
        """
        ranked = self.rank_frame(scores)
        ticker = ticker.upper()
        match = ranked[ranked["Ticker"] == ticker]
        if match.empty:
            raise ValueError(f"Ticker {ticker} not found in scored universe.")

        rank = int(match.index[0]) + 1
        total = len(ranked)
        score = next(s for s in scores if s.ticker == ticker)

        factors = {}
        strengths = []
        weaknesses = []
        for name, value in score.sub_scores().items():
            weight = score.applied_weights.get(name, 0.0)
            factors[name] = {
                "score": value,
                "weight": weight,
                "contribution": weight * value if value is not None else None,
                "universe_mean": ranked[name.capitalize()].mean(skipna=True),
            }
            if value is None:
                continue
            if value >= 70:
                strengths.append(name.capitalize())
            elif value <= 30:
                weaknesses.append(name.capitalize())

        if strengths and weaknesses:
            summary = f"Mixed profile. Strong in {', '.join(strengths)}. Weak in {', '.join(weaknesses)}."
        elif strengths:
            summary = f"Strong {', '.join(strengths)} profile."
        elif weaknesses:
            summary = f"Weak across {', '.join(weaknesses)}."
        else:
            summary = "Neutral profile across all factors."

        return {
            "ticker": ticker,
            "rank": rank,
            "total_stocks": total,
            "rank_percentile": 1 - (rank - 1) / total,
            "composite": score.composite,
            "strategy": score.strategy,
            "factors": factors,
            "strengths": strengths,
            "weaknesses": weaknesses,
            "summary": summary,
        }
