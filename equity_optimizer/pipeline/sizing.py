"""
Position sizing and post-trade invariant checks.

Sizing is score weighted: each candidate's dollar target is its share of the
total score, then clamped so no position exceeds the position cap and no
sector exceeds the sector cap. Money freed by clamping is redistributed among
the remaining candidates; whatever cannot be placed stays in cash.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from equity_optimizer.config import PortfolioConstraints
from equity_optimizer.errors import InvariantViolation
from equity_optimizer.logging_config import get_logger
from equity_optimizer.models.factor_engine import FactorScore
from equity_optimizer.models.portfolio import (
    UNKNOWN_SECTOR,
    Portfolio,
    TradeAction,
    TradeOrder,
)

logger = get_logger(__name__)

TOLERANCE = 1e-9
MIN_SCORE_WEIGHT = 1e-6


def allocate_targets(
    candidates: Sequence[FactorScore],
    budget: float,
    max_value: float,
    sector_cap_value: float,
    occupied_sector_values: Optional[Mapping[str, float]] = None,
) -> Dict[str, float]:
    """
    Score-weighted dollar targets under position and sector caps.

    Args:
        candidates: Scored stocks to fund
        budget: Dollars available
        max_value: Largest allowed position in dollars
        sector_cap_value: Largest allowed sector exposure in dollars
        occupied_sector_values: Dollars already held per sector by untouched positions

    Returns:
        Mapping ticker -> dollar target (may sum to less than budget)
    """
    occupied = defaultdict(float, occupied_sector_values or {})
    weights = {c.ticker: max(c.composite, MIN_SCORE_WEIGHT) for c in candidates}
    sectors = {c.ticker: c.sector or UNKNOWN_SECTOR for c in candidates}

    allocation: Dict[str, float] = {}
    free = [c.ticker for c in candidates]
    remaining = budget

    def sector_room(sector: str) -> float:
        fixed = sum(v for t, v in allocation.items() if sectors[t] == sector)
        return max(sector_cap_value - occupied[sector] - fixed, 0.0)

    # Each pass fixes at least one candidate, so len(candidates) + 1 passes suffice
    for _ in range(len(candidates) + 1):
        if not free or remaining <= TOLERANCE:
            break
        total_weight = sum(weights[t] for t in free)
        proposal = {t: remaining * weights[t] / total_weight for t in free}

        over_position = [t for t in free if proposal[t] > max_value + TOLERANCE]
        if over_position:
            for t in over_position:
                value = min(max_value, sector_room(sectors[t]))
                allocation[t] = value
                remaining -= value
                free.remove(t)
            continue

        sector_totals: Dict[str, float] = defaultdict(float)
        for t, value in allocation.items():
            sector_totals[sectors[t]] += value
        for t, value in proposal.items():
            sector_totals[sectors[t]] += value

        over_sector = [
            s for s, value in sector_totals.items()
            if value + occupied[s] > sector_cap_value + TOLERANCE
        ]
        if over_sector:
            for sector in over_sector:
                in_sector = [t for t in free if sectors[t] == sector]
                room = sector_room(sector)
                sector_weight = sum(weights[t] for t in in_sector)
                for t in in_sector:
                    value = room * weights[t] / sector_weight if sector_weight > 0 else 0.0
                    allocation[t] = value
                    remaining -= value
                    free.remove(t)
            continue

        allocation.update(proposal)
        remaining = 0.0
        free = []

    return allocation


def whole_share_orders(
    candidates: Sequence[FactorScore],
    targets: Mapping[str, float],
    min_value: float,
    reason: str,
) -> List[TradeOrder]:
    """
    Convert dollar targets into whole-share BUY orders.

    Candidates without a positive price, or whose floored position falls
    below `min_value`, are dropped.
    """
    orders = []
    for candidate in candidates:
        target = targets.get(candidate.ticker, 0.0)
        price = candidate.price
        if price is None or price <= 0 or target <= 0:
            continue
        shares = math.floor(target / price + TOLERANCE)
        value = shares * price
        if shares <= 0 or value + TOLERANCE < min_value:
            logger.debug("Dropping %s: $%.2f below minimum position $%.2f", candidate.ticker, value, min_value)
            continue
        orders.append(TradeOrder(
            ticker=candidate.ticker,
            action=TradeAction.BUY,
            shares=float(shares),
            price=price,
            reason=reason,
            score=candidate.composite,
            sector=candidate.sector,
        ))
    return orders


@dataclass
class PostTradeView:
    """Simulated portfolio after a set of orders."""

    cash: float
    positions: Dict[str, float] = field(default_factory=dict)
    sectors: Dict[str, str] = field(default_factory=dict)

    @property
    def total_value(self) -> float:
        return self.cash + sum(self.positions.values())

    def weights(self) -> Dict[str, float]:
        total = self.total_value
        return {t: v / total if total > 0 else 0.0 for t, v in self.positions.items()}

    def sector_weights(self) -> Dict[str, float]:
        total = self.total_value
        weights: Dict[str, float] = defaultdict(float)
        for t, v in self.positions.items():
            weights[self.sectors.get(t, UNKNOWN_SECTOR)] += v / total if total > 0 else 0.0
        return dict(weights)


def simulate(portfolio: Portfolio, orders: Iterable[TradeOrder]) -> PostTradeView:
    """Apply orders to a copy of the portfolio, valuing traded names at the order price."""
    shares = {t: h.shares for t, h in portfolio.holdings.items()}
    prices = {t: h.price for t, h in portfolio.holdings.items()}
    sectors = {t: h.sector or UNKNOWN_SECTOR for t, h in portfolio.holdings.items()}
    cash = portfolio.cash

    for order in orders:
        prices[order.ticker] = order.price
        if order.action == TradeAction.SELL:
            shares[order.ticker] = shares.get(order.ticker, 0.0) - order.shares
            cash += order.value
        else:
            shares[order.ticker] = shares.get(order.ticker, 0.0) + order.shares
            sectors.setdefault(order.ticker, order.sector or UNKNOWN_SECTOR)
            cash -= order.value

    positions = {t: s * prices[t] for t, s in shares.items() if s > TOLERANCE}
    return PostTradeView(cash=cash, positions=positions, sectors={t: sectors[t] for t in positions})


def validate_orders(portfolio: Portfolio, orders: Sequence[TradeOrder], constraints: PortfolioConstraints) -> PostTradeView:
    """
    Check a trade plan against the portfolio invariants.

    The whole post-trade portfolio is checked, including positions and
    sectors the plan does not trade, so a portfolio that has drifted outside
    its limits is rejected until a plan brings it back.

    Raises:
        InvariantViolation: Naming the first violated invariant
    """
    if len(orders) > constraints.max_monthly_turnover:
        raise InvariantViolation(
            "turnover",
            f"{len(orders)} trades exceed the limit of {constraints.max_monthly_turnover}",
            [o.ticker for o in orders],
        )

    for order in orders:
        if order.action == TradeAction.SELL:
            held = portfolio.holdings.get(order.ticker)
            if held is None or order.shares > held.shares + TOLERANCE:
                raise InvariantViolation("sell_within_holding", f"cannot sell {order.shares} {order.ticker}", [order.ticker])

    view = simulate(portfolio, orders)
    if view.cash < -TOLERANCE:
        raise InvariantViolation("non_negative_cash", f"cash would be {view.cash:,.2f}")

    for ticker, weight in sorted(view.weights().items()):
        if weight > constraints.max_position_pct + TOLERANCE:
            raise InvariantViolation(
                "position_max",
                f"{ticker} would be {weight:.2%} (max {constraints.max_position_pct:.2%})",
                [ticker],
            )
        if weight + TOLERANCE < constraints.min_position_pct:
            raise InvariantViolation(
                "position_min",
                f"{ticker} would be {weight:.2%} (min {constraints.min_position_pct:.2%})",
                [ticker],
            )

    for sector, weight in sorted(view.sector_weights().items()):
        if weight <= constraints.max_sector_pct + TOLERANCE:
            continue
        raise InvariantViolation(
            "sector_max",
            f"{sector} would be {weight:.2%} (max {constraints.max_sector_pct:.2%})",
            [t for t, s in view.sectors.items() if s == sector],
        )

    if orders and constraints.min_sector_count is not None:
        distinct = len(set(view.sectors.values()))
        if distinct < constraints.min_sector_count:
            raise InvariantViolation(
                "min_sector_count",
                f"{distinct} sectors held (minimum {constraints.min_sector_count})",
            )

    return view
