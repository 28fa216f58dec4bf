"""
Monthly rebalance engine.

One review cycle walks these states strictly in order:

    LOADED -> RESCORED -> SELL_FLAGGED -> BUY_CANDIDATES_FOUND
           -> TRADE_PLAN_BUILT -> VALIDATED -> APPLIED | REJECTED

Per-ticker fetch or scoring failures drop that ticker from consideration.
A missing benchmark only disables the benchmark sell test. Anything going
wrong at VALIDATED or APPLIED leaves the store untouched.

Usage:
    engine = RebalanceEngine(store, pipeline, benchmark=YahooBenchmarkSource())
    result = engine.run("growth-2024", get_universe())
    if result.plan.rejected:
        print(result.plan.rejection.invariant)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from equity_optimizer.config import Config, PortfolioConstraints
from equity_optimizer.core.timing import Timer
from equity_optimizer.errors import DataUnavailable, FetchTimeout, InvariantViolation
from equity_optimizer.logging_config import get_logger
from equity_optimizer.models.factor_engine import FactorScore
from equity_optimizer.models.fundamentals import RawFundamentals
from equity_optimizer.models.portfolio import (
    UNKNOWN_SECTOR,
    Holding,
    Portfolio,
    RebalanceState,
    Snapshot,
    TradeAction,
    TradeOrder,
    TradePlan,
)
from equity_optimizer.models.selector import select, selection_order
from equity_optimizer.pipeline.market_data import BenchmarkSource
from equity_optimizer.pipeline.screening import ScreeningPipeline
from equity_optimizer.pipeline.sizing import TOLERANCE, allocate_targets, validate_orders, whole_share_orders
from equity_optimizer.pipeline.snapshot import build_snapshot
from equity_optimizer.storage.locks import PortfolioLockRegistry
from equity_optimizer.storage.store import PortfolioStore

logger = get_logger(__name__)

REASON_SCORE_DROP = "score_drop"
REASON_BENCHMARK = "benchmark_underperformance"
REASON_REPLACEMENT = "better_candidate"
REASON_DETERIORATION = "fundamentals_deterioration"


@dataclass
class SellFlag:
    """A holding that met at least one sell criterion."""

    ticker: str
    current_score: float
    entry_score: Optional[float]
    reasons: List[str] = field(default_factory=list)

    def describe(self) -> str:
        return ", ".join(self.reasons)


@dataclass
class RebalanceResult:
    plan: TradePlan
    snapshot: Optional[Snapshot] = None
    sell_flags: List[SellFlag] = field(default_factory=list)
    buy_candidates: List[FactorScore] = field(default_factory=list)
    rescored: Dict[str, FactorScore] = field(default_factory=dict)
    errors: Dict[str, DataUnavailable] = field(default_factory=dict)
    benchmark_available: bool = True
    partial: bool = False

    @property
    def state(self) -> RebalanceState:
        return self.plan.state


# =============================================================================
# State functions
# =============================================================================

def rescore_holdings(
    portfolio: Portfolio,
    fundamentals: Dict[str, RawFundamentals],
    scores: Dict[str, FactorScore],
) -> Dict[str, FactorScore]:
    """
    Refresh price and current score on every holding with fresh data.

    Holdings missing from `scores` keep their stored price and get no
    current score, which keeps them out of sell evaluation.
    """
    rescored = {}
    for ticker, holding in portfolio.holdings.items():
        score = scores.get(ticker)
        if score is None:
            logger.warning("No fresh score for held %s; excluded from sell review", ticker)
            continue
        raw = fundamentals.get(ticker)
        if raw is not None and raw.price is not None and raw.price > 0:
            holding.current_price = raw.price
        holding.current_score = score.composite
        rescored[ticker] = score
    return rescored


def has_deteriorated(holding: Holding, raw: Optional[RawFundamentals]) -> bool:
    """Leverage up and profit margin down versus the entry baseline."""
    if raw is None:
        return False
    if None in (holding.entry_debt_to_equity, holding.entry_profit_margin, raw.debt_to_equity, raw.profit_margin):
        return False
    return raw.debt_to_equity > holding.entry_debt_to_equity and raw.profit_margin < holding.entry_profit_margin


def evaluate_sell_flags(
    portfolio: Portfolio,
    rescored: Dict[str, FactorScore],
    candidates: Sequence[FactorScore],
    benchmark_returns: Dict[str, Optional[float]],
    config: Config,
) -> List[SellFlag]:
    """
    Flag holdings for sale, weakest first, capped at the monthly turnover.

    Args:
        portfolio: Portfolio with current scores filled in
        rescored: Fresh scores for held tickers
        candidates: Scored tickers not currently held
        benchmark_returns: Benchmark return (percent) over each holding's
            period; None skips the benchmark test for that holding
        config: Thresholds

    Returns:
        Flagged holdings sorted by current score ascending
    """
    best_candidate = max((c.composite for c in candidates), default=None)
    flags = []

    for ticker, score in rescored.items():
        holding = portfolio.holdings[ticker]
        reasons = []

        if holding.entry_score is not None and score.composite < holding.entry_score - config.score_drop_threshold:
            reasons.append(REASON_SCORE_DROP)

        benchmark = benchmark_returns.get(ticker)
        holding_return = holding.gain_pct
        if benchmark is not None and holding_return is not None:
            if holding_return < benchmark - config.benchmark_underperformance:
                reasons.append(REASON_BENCHMARK)

        if best_candidate is not None and best_candidate >= score.composite + config.replacement_advantage:
            reasons.append(REASON_REPLACEMENT)

        if has_deteriorated(holding, score.fundamentals):
            reasons.append(REASON_DETERIORATION)

        if reasons:
            flags.append(SellFlag(ticker, score.composite, holding.entry_score, reasons))

    flags.sort(key=lambda f: (f.current_score, f.ticker))
    limit = portfolio.constraints.max_monthly_turnover
    if len(flags) > limit:
        logger.info("%d holdings flagged; keeping the weakest %d", len(flags), limit)
    return flags[:limit]


def sell_orders(portfolio: Portfolio, flags: Sequence[SellFlag]) -> List[TradeOrder]:
    """Full-liquidation SELL orders for the flagged holdings, in flag order."""
    orders = []
    for flag in flags:
        holding = portfolio.holdings[flag.ticker]
        orders.append(TradeOrder(
            ticker=holding.ticker,
            action=TradeAction.SELL,
            shares=holding.shares,
            price=holding.price,
            reason=flag.describe(),
            score=flag.current_score,
            sector=holding.sector,
        ))
    return orders


def find_buy_candidates(
    post_sell: Portfolio,
    candidates: Sequence[FactorScore],
    sells: int,
    config: Config,
) -> List[FactorScore]:
    """
    Top-decile, sector-eligible replacements, strongest first.

    Buys never outnumber sells, and sells plus buys stay within the monthly
    turnover cap. No sells means no buys.
    """
    constraints: PortfolioConstraints = post_sell.constraints
    slots = min(sells, constraints.max_monthly_turnover - sells)
    if slots <= 0:
        return []

    priced = [c for c in candidates if c.price is not None and c.price > 0 and c.ticker not in post_sell.holdings]
    if not priced:
        return []

    threshold = float(np.percentile([c.composite for c in priced], config.buy_percentile))
    top = [c for c in priced if c.composite >= threshold - TOLERANCE]

    total = post_sell.total_value
    sector_values = post_sell.sector_values()
    with_headroom = []
    for candidate in top:
        sector = candidate.sector or UNKNOWN_SECTOR
        weight = sector_values.get(sector, 0.0) / total if total > 0 else 0.0
        if weight + constraints.min_position_pct > constraints.max_sector_pct + TOLERANCE:
            logger.debug("No sector headroom for %s (%s at %.1f%%)", candidate.ticker, sector, weight * 100)
            continue
        with_headroom.append(candidate)

    selection = select(with_headroom, slots, constraints, existing_sector_counts=post_sell.sector_counts())
    logger.info(
        "Buy candidates: %d above %.1f, %d with sector headroom, %d selected",
        len(top),
        threshold,
        len(with_headroom),
        len(selection.chosen),
    )
    return selection.chosen


def build_trade_plan(
    portfolio: Portfolio,
    sells: Sequence[TradeOrder],
    buys: Sequence[FactorScore],
) -> TradePlan:
    """
    Pair sells with buys and size the buys.

    The weakest sell is paired with the strongest buy. The buy budget is the
    sell proceeds plus cash already on hand, split by score and clamped to
    the position and sector limits measured against the post-trade total.
    """
    constraints = portfolio.constraints
    plan = TradePlan(portfolio_id=portfolio.id, orders=list(sells), state=RebalanceState.TRADE_PLAN_BUILT)
    if not buys:
        plan.unpaired_sells = len(sells)
        return plan

    post_sell = portfolio.with_orders(sells)
    total = post_sell.total_value
    ranked = selection_order(buys)

    targets = allocate_targets(
        ranked,
        budget=post_sell.cash,
        max_value=constraints.max_position_pct * total,
        sector_cap_value=constraints.max_sector_pct * total,
        occupied_sector_values=post_sell.sector_values(),
    )
    orders = whole_share_orders(ranked, targets, min_value=constraints.min_position_pct * total, reason="")

    # Pair by rank before sizing; a buy that sizing drops leaves its sell unpaired
    pairs = dict(zip((b.ticker for b in ranked), (s.ticker for s in sells)))
    for order in orders:
        replaced = pairs.get(order.ticker)
        reason = f"Replaces {replaced}" if replaced else "Score-ranked addition"
        plan.orders.append(replace(order, reason=reason))

    plan.unpaired_sells = len(sells) - sum(1 for o in orders if o.ticker in pairs)
    return plan


# =============================================================================
# Engine
# =============================================================================

class RebalanceEngine:
    """
    Runs review cycles for stored portfolios.

    One engine should serve a whole invocation so every fetch shares the
    pipeline's scheduler and rate limiter, and every cycle shares the lock
    registry.
    """

    def __init__(
        self,
        store: PortfolioStore,
        pipeline: ScreeningPipeline,
        benchmark: Optional[BenchmarkSource] = None,
        config: Optional[Config] = None,
        locks: Optional[PortfolioLockRegistry] = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Portfolio persistence
            pipeline: Fetch-and-score pipeline (owns the shared scheduler)
            benchmark: Benchmark source; None disables the benchmark test
            config: Thresholds and settings (default: Config())
            locks: Per-portfolio lock registry
        """
        self.store = store
        self.pipeline = pipeline
        self.benchmark = benchmark
        self.config = config or Config()
        self.locks = locks or PortfolioLockRegistry(self.config.lock_timeout)

    def _check_deadline(self, deadline: Optional[float], stage: str) -> None:
        if deadline is not None and self.pipeline.scheduler.clock() >= deadline:
            raise FetchTimeout(None, f"deadline expired before {stage}")

    def _benchmark_returns(self, portfolio: Portfolio, as_of: date) -> Dict[str, Optional[float]]:
        """Benchmark return over each holding's period, one fetch per entry date."""
        if self.benchmark is None:
            return {}

        by_start: Dict[date, Optional[float]] = {}
        returns: Dict[str, Optional[float]] = {}
        for ticker, holding in portfolio.holdings.items():
            if not isinstance(holding.entry_date, datetime):
                returns[ticker] = None
                continue
            start = holding.entry_date.date()
            if start >= as_of:
                returns[ticker] = None
                continue
            if start not in by_start:
                try:
                    by_start[start] = self.benchmark.fetch_benchmark_return(start, as_of)
                except Exception as e:
                    logger.warning("Benchmark unavailable from %s: %s", start, e)
                    by_start[start] = None
            returns[ticker] = by_start[start]
        return returns

    def run(
        self,
        portfolio_id: str,
        universe: Iterable[str],
        as_of: Optional[date] = None,
        deadline: Optional[float] = None,
        dry_run: bool = False,
    ) -> RebalanceResult:
        """
        Run one review cycle.

        Args:
            portfolio_id: Portfolio to review
            universe: Tickers screened for replacements
            as_of: Review date (default: today)
            deadline: Absolute time on the scheduler clock. When it passes
                during fetching, the tickers not yet fetched are recorded as
                errors and the cycle continues on partial data. When every
                fetch finished in time, validation and apply still abort
                once it has passed.
            dry_run: Stop after VALIDATED without writing anything

        Returns:
            RebalanceResult. An empty APPLIED plan means no holding qualified
            for sale; a REJECTED plan names the broken invariant.

        Raises:
            PersistenceConflict: Lock contention or a concurrent write; retry the cycle
            FetchTimeout: Deadline expired after complete fetches, before VALIDATED or APPLIED
        """
        as_of = as_of or date.today()

        with self.locks.hold(portfolio_id):
            # LOADED
            portfolio = self.store.load_portfolio(portfolio_id)
            previous = self.store.latest_snapshot(portfolio_id)
            plan = TradePlan(portfolio_id=portfolio_id, state=RebalanceState.LOADED)
            result = RebalanceResult(plan=plan)
            logger.info("Reviewing %s: %d holdings, $%.2f cash", portfolio.name, len(portfolio.holdings), portfolio.cash)

            # RESCORED
            with Timer("Rescoring holdings"):
                held = self.pipeline.run(list(portfolio.holdings), strategy=portfolio.strategy, deadline=deadline)
            result.rescored = rescore_holdings(portfolio, held.fundamentals, held.by_ticker())
            result.errors.update(held.errors)
            plan.state = RebalanceState.RESCORED

            # SELL_FLAGGED; the screened universe feeds the better-candidate test
            screened = self.pipeline.run(
                [t for t in universe if t.upper() not in portfolio.holdings],
                strategy=portfolio.strategy,
                deadline=deadline,
            )
            result.errors.update(screened.errors)
            result.partial = held.timed_out or screened.timed_out
            if result.partial:
                logger.warning("Deadline reached while fetching; continuing with partial data")
            candidates = [s for s in screened.scores if s.ticker not in portfolio.holdings]

            benchmark_returns = self._benchmark_returns(portfolio, as_of)
            result.benchmark_available = self.benchmark is not None and any(
                r is not None for r in benchmark_returns.values()
            )
            result.sell_flags = evaluate_sell_flags(
                portfolio, result.rescored, candidates, benchmark_returns, self.config
            )
            sells = sell_orders(portfolio, result.sell_flags)
            plan.state = RebalanceState.SELL_FLAGGED

            # BUY_CANDIDATES_FOUND
            post_sell = portfolio.with_orders(sells)
            result.buy_candidates = find_buy_candidates(post_sell, candidates, len(sells), self.config)
            plan.state = RebalanceState.BUY_CANDIDATES_FOUND

            # TRADE_PLAN_BUILT
            built = build_trade_plan(portfolio, sells, result.buy_candidates)
            plan.orders = built.orders
            plan.unpaired_sells = built.unpaired_sells
            plan.state = RebalanceState.TRADE_PLAN_BUILT
            logger.info("Trade plan: %d sells, %d buys", len(plan.sells), len(plan.buys))

            # VALIDATED
            if not result.partial:
                self._check_deadline(deadline, "validation")
            try:
                validate_orders(portfolio, plan.orders, portfolio.constraints)
            except InvariantViolation as e:
                logger.warning("Trade plan rejected (%s): %s", e.invariant, e.detail)
                plan.rejection = e
                plan.state = RebalanceState.REJECTED
                return result
            plan.state = RebalanceState.VALIDATED

            if dry_run:
                return result

            # APPLIED
            if not result.partial:
                self._check_deadline(deadline, "apply")
            after = portfolio.with_orders(plan.orders, when=datetime.combine(as_of, datetime.min.time()))
            snapshot = build_snapshot(after, as_of=as_of, previous=previous, benchmark=self.benchmark)
            prices = {t: h.current_price for t, h in portfolio.holdings.items() if h.current_price is not None}

            self.store.apply_trade_batch(
                portfolio_id,
                plan.orders,
                portfolio.version,
                prices=prices,
                scores=list(result.rescored.values()) + candidates,
                snapshot=snapshot,
                score_date=as_of,
            )
            plan.state = RebalanceState.APPLIED
            result.snapshot = snapshot

        if plan.is_empty:
            logger.info("No holdings met sell criteria; no trades for %s", portfolio.name)
        return result
