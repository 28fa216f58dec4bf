"""
Initial portfolio construction.

Select the top-scoring stocks under the sector count cap, size them by score
within position and sector limits, and persist the resulting portfolio with
its first snapshot.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import date
from typing import List, Optional, Sequence

from equity_optimizer.config import PortfolioConstraints
from equity_optimizer.constants import DEFAULT_STRATEGY
from equity_optimizer.logging_config import get_logger
from equity_optimizer.models.factor_engine import FactorScore
from equity_optimizer.models.portfolio import Portfolio, Snapshot, TradeOrder
from equity_optimizer.models.selector import SelectionResult, select
from equity_optimizer.pipeline.market_data import BenchmarkSource
from equity_optimizer.pipeline.sizing import allocate_targets, validate_orders, whole_share_orders
from equity_optimizer.pipeline.snapshot import build_snapshot
from equity_optimizer.storage.store import PortfolioStore, utc_now

logger = get_logger(__name__)


@dataclass
class ConstructionResult:
    portfolio: Portfolio
    orders: List[TradeOrder]
    selection: SelectionResult
    snapshot: Snapshot


def plan_initial_orders(
    scores: Sequence[FactorScore],
    capital: float,
    constraints: PortfolioConstraints,
) -> tuple:
    """
    Choose and size the initial holdings.

    Returns:
        (SelectionResult, list of BUY orders)
    """
    priced = [s for s in scores if s.price is not None and s.price > 0]
    selection = select(priced, constraints.target_holdings, constraints)

    targets = allocate_targets(
        selection.chosen,
        budget=capital,
        max_value=constraints.max_position_pct * capital,
        sector_cap_value=constraints.max_sector_pct * capital,
    )
    orders = whole_share_orders(
        selection.chosen,
        targets,
        min_value=constraints.min_position_pct * capital,
        reason="Initial portfolio construction",
    )
    return selection, orders


def construct_portfolio(
    store: PortfolioStore,
    scores: Sequence[FactorScore],
    name: str,
    capital: float,
    strategy: str = DEFAULT_STRATEGY,
    constraints: Optional[PortfolioConstraints] = None,
    portfolio_id: Optional[str] = None,
    benchmark: Optional[BenchmarkSource] = None,
    as_of: Optional[date] = None,
) -> ConstructionResult:
    """
    Build and persist a new portfolio from a scored universe.

    The portfolio row, its initial trades, the universe scores and the first
    snapshot are written in one transaction.

    Raises:
        InvariantViolation: If the sized portfolio breaks a constraint (nothing is written)
        PersistenceConflict: If `portfolio_id` is already taken (nothing is written)
    """
    constraints = constraints or PortfolioConstraints()
    as_of = as_of or date.today()
    portfolio_id = portfolio_id or uuid.uuid4().hex
    selection, orders = plan_initial_orders(scores, capital, constraints)

    # The turnover cap governs monthly rebalances, not the initial fill
    draft = Portfolio(id=portfolio_id, name=name, initial_capital=capital, cash=capital,
                      strategy=strategy, constraints=constraints, created_at=utc_now())
    validate_orders(draft, orders, replace(constraints, max_monthly_turnover=max(len(orders), 1)))
    snapshot = build_snapshot(draft.with_orders(orders), as_of=as_of, benchmark=benchmark)

    portfolio = store.create_portfolio(
        name, capital, strategy, constraints, portfolio_id,
        orders=orders, scores=scores, snapshot=snapshot, score_date=as_of,
    )
    portfolio.constraints = constraints

    logger.info(
        "Constructed %s: %d positions, $%.2f invested, $%.2f cash",
        portfolio.name,
        len(portfolio.holdings),
        portfolio.holdings_value,
        portfolio.cash,
    )
    return ConstructionResult(portfolio=portfolio, orders=orders, selection=selection, snapshot=snapshot)
