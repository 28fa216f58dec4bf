"""
Portfolio domain objects: holdings, trade orders, trade plans and snapshots.

Snapshots serialize their holdings as a versioned JSON blob:
    {"schema_version": 1, "holdings": [{...}, ...]}
A bare JSON list is read as legacy version 0.
"""

from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from equity_optimizer.config import PortfolioConstraints
from equity_optimizer.constants import DEFAULT_STRATEGY, HOLDINGS_SCHEMA_VERSION
from equity_optimizer.errors import InvariantViolation, UnsupportedSchemaVersion

UNKNOWN_SECTOR = "Unknown"
SHARE_EPSILON = 1e-9


class TradeAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class RebalanceState(str, Enum):
    """Rebalance cycle states, in execution order."""

    LOADED = "LOADED"
    RESCORED = "RESCORED"
    SELL_FLAGGED = "SELL_FLAGGED"
    BUY_CANDIDATES_FOUND = "BUY_CANDIDATES_FOUND"
    TRADE_PLAN_BUILT = "TRADE_PLAN_BUILT"
    VALIDATED = "VALIDATED"
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"


@dataclass
class Holding:
    """One position. current_price/current_score are filled in during a rescore."""

    ticker: str
    shares: float
    avg_cost: float
    sector: Optional[str] = None
    entry_score: Optional[float] = None
    entry_date: Optional[datetime] = None
    current_price: Optional[float] = None
    current_score: Optional[float] = None
    entry_debt_to_equity: Optional[float] = None
    entry_profit_margin: Optional[float] = None

    @property
    def price(self) -> float:
        """Latest known price, falling back to cost basis."""
        return self.current_price if self.current_price is not None else self.avg_cost

    @property
    def market_value(self) -> float:
        return self.shares * self.price

    @property
    def gain_pct(self) -> Optional[float]:
        if self.current_price is None or self.avg_cost <= 0:
            return None
        return (self.current_price / self.avg_cost - 1) * 100


@dataclass
class Portfolio:
    id: str
    name: str
    initial_capital: float
    cash: float
    strategy: str = DEFAULT_STRATEGY
    constraints: PortfolioConstraints = field(default_factory=PortfolioConstraints)
    holdings: Dict[str, Holding] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    version: Optional[str] = None

    @property
    def holdings_value(self) -> float:
        return sum(h.market_value for h in self.holdings.values())

    @property
    def total_value(self) -> float:
        return self.cash + self.holdings_value

    def weights(self) -> Dict[str, float]:
        total = self.total_value
        if total <= 0:
            return {ticker: 0.0 for ticker in self.holdings}
        return {ticker: h.market_value / total for ticker, h in self.holdings.items()}

    def sector_weights(self) -> Dict[str, float]:
        total = self.total_value
        weights: Dict[str, float] = defaultdict(float)
        for h in self.holdings.values():
            weights[h.sector or UNKNOWN_SECTOR] += h.market_value / total if total > 0 else 0.0
        return dict(weights)

    def sector_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        for h in self.holdings.values():
            counts[h.sector or UNKNOWN_SECTOR] += 1
        return dict(counts)

    def sector_values(self) -> Dict[str, float]:
        values: Dict[str, float] = defaultdict(float)
        for h in self.holdings.values():
            values[h.sector or UNKNOWN_SECTOR] += h.market_value
        return dict(values)

    def with_orders(self, orders: Iterable[TradeOrder], when: Optional[datetime] = None) -> Portfolio:
        """
        Copy of this portfolio with the orders applied, sells first.

        Traded names are repriced at the order price. The original portfolio
        is left untouched.
        """
        holdings = {ticker: replace(h) for ticker, h in self.holdings.items()}
        cash = self.cash

        for order in sorted(orders, key=lambda o: o.action != TradeAction.SELL):
            held = holdings.get(order.ticker)
            if order.action == TradeAction.SELL:
                cash += order.value
                if held is None:
                    continue
                remaining = held.shares - order.shares
                if remaining <= SHARE_EPSILON:
                    del holdings[order.ticker]
                else:
                    held.shares = remaining
                    held.current_price = order.price
                continue

            cash -= order.value
            if held is None:
                holdings[order.ticker] = Holding(
                    ticker=order.ticker,
                    shares=order.shares,
                    avg_cost=order.price,
                    sector=order.sector,
                    entry_score=order.score,
                    entry_date=when,
                    current_price=order.price,
                    current_score=order.score,
                )
            else:
                total_shares = held.shares + order.shares
                held.avg_cost = (held.shares * held.avg_cost + order.value) / total_shares
                held.shares = total_shares
                held.current_price = order.price

        return replace(self, cash=cash, holdings=holdings)


@dataclass(frozen=True)
class TradeOrder:
    ticker: str
    action: TradeAction
    shares: float
    price: float
    reason: str
    score: Optional[float] = None
    sector: Optional[str] = None

    @property
    def value(self) -> float:
        return self.shares * self.price

    def to_dict(self) -> dict:
        return {
            "ticker": self.ticker,
            "action": self.action.value,
            "shares": self.shares,
            "price": self.price,
            "value": self.value,
            "reason": self.reason,
            "score": self.score,
            "sector": self.sector,
        }


@dataclass
class TradePlan:
    """Orders for one rebalance cycle, plus how far the cycle got."""

    portfolio_id: str
    orders: List[TradeOrder] = field(default_factory=list)
    state: RebalanceState = RebalanceState.LOADED
    rejection: Optional[InvariantViolation] = None
    unpaired_sells: int = 0

    @property
    def sells(self) -> List[TradeOrder]:
        return [o for o in self.orders if o.action == TradeAction.SELL]

    @property
    def buys(self) -> List[TradeOrder]:
        return [o for o in self.orders if o.action == TradeAction.BUY]

    @property
    def is_empty(self) -> bool:
        """True when the cycle ran and decided no trades were needed."""
        return not self.orders and self.state != RebalanceState.REJECTED

    @property
    def rejected(self) -> bool:
        return self.state == RebalanceState.REJECTED

    @property
    def sell_proceeds(self) -> float:
        return sum(o.value for o in self.sells)

    @property
    def buy_cost(self) -> float:
        return sum(o.value for o in self.buys)

    def to_dict(self) -> dict:
        return {
            "portfolio_id": self.portfolio_id,
            "state": self.state.value,
            "orders": [o.to_dict() for o in self.orders],
            "rejection": str(self.rejection) if self.rejection else None,
            "sell_proceeds": self.sell_proceeds,
            "buy_cost": self.buy_cost,
        }


@dataclass(frozen=True)
class HoldingSnapshot:
    ticker: str
    shares: float
    price: float
    value: float
    weight: float
    sector: Optional[str] = None
    gain_pct: Optional[float] = None


@dataclass(frozen=True)
class Snapshot:
    portfolio_id: str
    snapshot_date: date
    total_value: float
    cash_value: float
    holdings_value: float
    holdings_count: int
    holdings: List[HoldingSnapshot]
    period_return_pct: Optional[float] = None
    cumulative_return_pct: Optional[float] = None
    spy_period_return_pct: Optional[float] = None
    spy_cumulative_return_pct: Optional[float] = None
    alpha_pct: Optional[float] = None

    def holdings_json(self) -> str:
        return encode_holdings(self.holdings)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["snapshot_date"] = self.snapshot_date.isoformat()
        return data


def encode_holdings(holdings: List[HoldingSnapshot]) -> str:
    """Serialize snapshot holdings to the versioned JSON blob."""
    return json.dumps({
        "schema_version": HOLDINGS_SCHEMA_VERSION,
        "holdings": [
            {
                "ticker": h.ticker,
                "shares": h.shares,
                "price": h.price,
                "value": h.value,
                "weight": h.weight,
                "sector": h.sector,
                "gainPct": h.gain_pct,
            }
            for h in holdings
        ],
    })


def decode_holdings(blob: Optional[str]) -> List[HoldingSnapshot]:
    """
    Parse a holdings blob.

    Args:
        blob: JSON text; a bare list is treated as schema version 0

    Raises:
        UnsupportedSchemaVersion: If the blob was written by a newer schema version
        ValueError: If the blob is not valid JSON of a known shape
    """
    if not blob:
        return []
    data = json.loads(blob)

    if isinstance(data, list):
        entries = data
    elif isinstance(data, dict):
        version = data.get("schema_version")
        if not isinstance(version, int):
            raise ValueError("Holdings blob missing integer schema_version")
        if version > HOLDINGS_SCHEMA_VERSION:
            raise UnsupportedSchemaVersion(version, HOLDINGS_SCHEMA_VERSION)
        entries = data.get("holdings", [])
    else:
        raise ValueError(f"Unrecognized holdings blob type: {type(data).__name__}")

    return [
        HoldingSnapshot(
            ticker=entry["ticker"],
            shares=float(entry["shares"]),
            price=float(entry["price"]),
            value=float(entry["value"]),
            weight=float(entry["weight"]),
            sector=entry.get("sector"),
            gain_pct=entry.get("gainPct", entry.get("gain_pct")),
        )
        for entry in entries
    ]
