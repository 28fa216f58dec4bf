"""
Raw fundamentals snapshot for one ticker.

Every metric is Optional: None means the provider did not supply it, which is
never the same thing as 0.0.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Mapping, Optional

NUMERIC_FIELDS = (
    "price",
    "market_cap",
    "pe_ratio",
    "forward_pe",
    "pb_ratio",
    "ps_ratio",
    "peg_ratio",
    "ev_to_ebitda",
    "dividend_yield",
    "profit_margin",
    "operating_margin",
    "return_on_equity",
    "current_ratio",
    "debt_to_equity",
    "beta",
    "volatility",
    "fifty_two_week_high",
    "fifty_two_week_low",
    "fifty_two_week_change",
    "analyst_rating",
    "price_target",
    "analyst_count",
    "revenue_growth",
    "earnings_growth",
    "free_cash_flow",
    "operating_cash_flow",
    "total_debt",
    "total_cash",
    "shares_outstanding",
)


def clean_number(value: Any) -> Optional[float]:
    """Convert a provider value to float; None, NaN, inf and non-numerics become None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


@dataclass(frozen=True)
class RawFundamentals:
    """
    Point-in-time fundamentals for a ticker.

    Percent-valued fields (dividend_yield, margins, return_on_equity,
    volatility, fifty_two_week_change, growth rates) are in percent.
    debt_to_equity is a plain ratio (1.5 means 150%).
    analyst_rating runs from 1 (strong buy) to 5 (sell).
    """

    ticker: str
    price: Optional[float] = None
    market_cap: Optional[float] = None
    pe_ratio: Optional[float] = None
    forward_pe: Optional[float] = None
    pb_ratio: Optional[float] = None
    ps_ratio: Optional[float] = None
    peg_ratio: Optional[float] = None
    ev_to_ebitda: Optional[float] = None
    dividend_yield: Optional[float] = None
    profit_margin: Optional[float] = None
    operating_margin: Optional[float] = None
    return_on_equity: Optional[float] = None
    current_ratio: Optional[float] = None
    debt_to_equity: Optional[float] = None
    beta: Optional[float] = None
    volatility: Optional[float] = None
    fifty_two_week_high: Optional[float] = None
    fifty_two_week_low: Optional[float] = None
    fifty_two_week_change: Optional[float] = None
    analyst_rating: Optional[float] = None
    price_target: Optional[float] = None
    analyst_count: Optional[float] = None
    revenue_growth: Optional[float] = None
    earnings_growth: Optional[float] = None
    free_cash_flow: Optional[float] = None
    operating_cash_flow: Optional[float] = None
    total_debt: Optional[float] = None
    total_cash: Optional[float] = None
    shares_outstanding: Optional[float] = None
    sector: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_mapping(cls, ticker: str, data: Mapping[str, Any]) -> "RawFundamentals":
        """Build from a dict of already unit-normalized values, cleaning numerics."""
        values: Dict[str, Any] = {}
        for name in NUMERIC_FIELDS:
            if name in data:
                values[name] = clean_number(data[name])
        for name in ("sector", "name"):
            text = data.get(name)
            if isinstance(text, str) and text.strip():
                values[name] = text.strip()
        return cls(ticker=ticker.upper(), **values)

    @property
    def drawdown_from_high(self) -> Optional[float]:
        """Percent below the 52-week high (<= 0), or None."""
        if self.price is None or not self.fifty_two_week_high or self.fifty_two_week_high <= 0:
            return None
        return (self.price / self.fifty_two_week_high - 1) * 100

    @property
    def target_upside(self) -> Optional[float]:
        """Percent upside to the analyst price target, or None."""
        if self.price is None or self.price <= 0 or self.price_target is None:
            return None
        return (self.price_target / self.price - 1) * 100

    def present_fields(self) -> List[str]:
        return [name for name in NUMERIC_FIELDS if getattr(self, name) is not None]

    def is_empty(self) -> bool:
        return not self.present_fields()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


FIELD_NAMES = tuple(f.name for f in fields(RawFundamentals))
