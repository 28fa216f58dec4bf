"""DCF Valuation Engine - Discounted Cash Flow Analysis.

All rates (discount rate, FCF growth, terminal growth) are in percent.
Invalid inputs produce a DCFResult with ok=False and an error message
instead of raising, so one bad ticker never stops a screen.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

import numpy as np
from scipy.optimize import brentq

from equity_optimizer.constants import (
    BEAR_MIN_GROWTH,
    BEAR_MIN_TERMINAL_GROWTH,
    BULL_MAX_GROWTH,
    BULL_MAX_TERMINAL_GROWTH,
    BULL_MIN_DISCOUNT_RATE,
    BUY_UPSIDE,
    DEFAULT_PROJECTION_YEARS,
    DEFAULT_TERMINAL_GROWTH,
    HISTORICAL_GROWTH_WEIGHT,
    IMPLIED_GROWTH_BOUNDS,
    MAX_HISTORICAL_GROWTH,
    MICRO_CAP_WACC,
    MODERATE_GROWTH_RATE,
    SCENARIO_DISCOUNT_SHIFT,
    SCENARIO_GROWTH_SHIFT,
    SCENARIO_TERMINAL_SHIFT,
    SELL_DOWNSIDE,
    STRONG_BUY_UPSIDE,
    STRONG_SELL_DOWNSIDE,
    TERMINAL_GROWTH_WEIGHT,
    WACC_BY_MARKET_CAP,
)
from equity_optimizer.errors import InvalidAssumption
from equity_optimizer.logging_config import get_logger
from equity_optimizer.models.fundamentals import RawFundamentals

logger = get_logger(__name__)


@dataclass(frozen=True)
class DCFInputs:
    """Inputs for one valuation. Absent overrides fall back to defaults."""

    ticker: str
    free_cash_flow: Optional[float]
    shares_outstanding: Optional[float]
    market_cap: Optional[float] = None
    total_debt: Optional[float] = None
    total_cash: Optional[float] = None
    revenue_growth: Optional[float] = None
    price: Optional[float] = None
    discount_rate: Optional[float] = None
    fcf_growth: Optional[float] = None
    terminal_growth: float = DEFAULT_TERMINAL_GROWTH
    years: int = DEFAULT_PROJECTION_YEARS


@dataclass(frozen=True)
class DCFAssumptions:
    discount_rate: float
    terminal_growth: float
    fcf_growth: float
    years: int
    initial_fcf: float


@dataclass(frozen=True)
class ProjectedCashFlow:
    year: int
    fcf: float
    discount_factor: float
    present_value: float


@dataclass(frozen=True)
class ScenarioResult:
    """One sensitivity case; value_per_share is None when the case is invalid."""

    name: str
    discount_rate: float
    fcf_growth: float
    terminal_growth: float
    value_per_share: Optional[float]
    valid: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class DCFResult:
    ticker: str
    ok: bool
    error: Optional[str] = None
    intrinsic_value: Optional[float] = None
    enterprise_value: Optional[float] = None
    equity_value: Optional[float] = None
    assumptions: Optional[DCFAssumptions] = None
    projections: List[ProjectedCashFlow] = field(default_factory=list)
    sum_pv_fcf: Optional[float] = None
    terminal_value: Optional[float] = None
    terminal_value_pv: Optional[float] = None
    net_debt: Optional[float] = None
    net_debt_complete: bool = True
    scenarios: Dict[str, ScenarioResult] = field(default_factory=dict)
    current_price: Optional[float] = None
    upside_pct: Optional[float] = None
    recommendation: Optional[str] = None

    @property
    def value_range(self) -> Optional[tuple]:
        """(bear, bull) value per share when both scenarios are valid."""
        bear = self.scenarios.get("bear")
        bull = self.scenarios.get("bull")
        if bear is None or bull is None or not (bear.valid and bull.valid):
            return None
        return (bear.value_per_share, bull.value_per_share)

    def to_dict(self) -> dict:
        return {
            "ticker": self.ticker,
            "ok": self.ok,
            "error": self.error,
            "intrinsic_value": self.intrinsic_value,
            "enterprise_value": self.enterprise_value,
            "equity_value": self.equity_value,
            "discount_rate": self.assumptions.discount_rate if self.assumptions else None,
            "fcf_growth": self.assumptions.fcf_growth if self.assumptions else None,
            "terminal_growth": self.assumptions.terminal_growth if self.assumptions else None,
            "net_debt_complete": self.net_debt_complete,
            "scenarios": {
                name: s.value_per_share for name, s in self.scenarios.items()
            },
            "current_price": self.current_price,
            "upside_pct": self.upside_pct,
            "recommendation": self.recommendation,
        }


def default_discount_rate(market_cap: Optional[float]) -> float:
    """Market-cap tiered WACC in percent; absent market cap is treated as micro cap."""
    if market_cap is None:
        return MICRO_CAP_WACC
    for threshold, rate in WACC_BY_MARKET_CAP:
        if market_cap > threshold:
            return rate
    return MICRO_CAP_WACC


def estimate_fcf_growth(revenue_growth: Optional[float], terminal_growth: float = DEFAULT_TERMINAL_GROWTH) -> float:
    """
    Projected FCF growth in percent.

    Without revenue growth, assume the midpoint between terminal and moderate
    growth. Negative revenue growth falls back to terminal growth. Otherwise
    blend capped historical growth toward terminal growth.
    """
    if revenue_growth is None:
        return (terminal_growth + MODERATE_GROWTH_RATE) / 2
    if revenue_growth < 0:
        return terminal_growth
    capped = min(revenue_growth, MAX_HISTORICAL_GROWTH)
    return capped * HISTORICAL_GROWTH_WEIGHT + terminal_growth * TERMINAL_GROWTH_WEIGHT


def assess_valuation(intrinsic_value: float, current_price: float) -> Dict[str, object]:
    """
    Compare intrinsic value to price.

    Returns:
        Dict with upside_pct and recommendation (Strong Buy .. Strong Sell)

    Raises:
        InvalidAssumption: If price is not positive
    """
    if current_price is None or current_price <= 0:
        raise InvalidAssumption("Current price must be positive to assess valuation")

    upside = (intrinsic_value - current_price) / current_price * 100
    if upside >= STRONG_BUY_UPSIDE:
        recommendation = "Strong Buy"
    elif upside >= BUY_UPSIDE:
        recommendation = "Buy"
    elif upside >= SELL_DOWNSIDE:
        recommendation = "Hold"
    elif upside >= STRONG_SELL_DOWNSIDE:
        recommendation = "Sell"
    else:
        recommendation = "Strong Sell"
    return {"upside_pct": upside, "recommendation": recommendation}


def dcf_inputs_from_fundamentals(raw: RawFundamentals, **overrides) -> DCFInputs:
    """Build DCFInputs from a fundamentals snapshot; keyword overrides win."""
    inputs = DCFInputs(
        ticker=raw.ticker,
        free_cash_flow=raw.free_cash_flow,
        shares_outstanding=raw.shares_outstanding,
        market_cap=raw.market_cap,
        total_debt=raw.total_debt,
        total_cash=raw.total_cash,
        revenue_growth=raw.revenue_growth,
        price=raw.price,
    )
    return replace(inputs, **overrides) if overrides else inputs


class DCFEngine:
    """Gordon-growth discounted cash flow engine with bear/base/bull sensitivity."""

    def __init__(self, implied_growth_bounds: tuple = IMPLIED_GROWTH_BOUNDS):
        self.implied_growth_bounds = implied_growth_bounds

    @staticmethod
    def project(fcf0: float, growth: float, discount_rate: float, terminal_growth: float, years: int) -> dict:
        """
        Project and discount cash flows.

        Args:
            fcf0: Current free cash flow
            growth: FCF growth in percent
            discount_rate: WACC in percent
            terminal_growth: Perpetual growth in percent
            years: Explicit forecast horizon

        Returns:
            Dict with fcfs, discount_factors, present_values, terminal_value,
            terminal_value_pv and enterprise_value

        Raises:
            InvalidAssumption: If discount rate does not exceed terminal growth
        """
        if discount_rate <= terminal_growth:
            raise InvalidAssumption(
                f"Discount rate ({discount_rate:.2f}%) must exceed terminal growth ({terminal_growth:.2f}%)"
            )
        if years < 1:
            raise InvalidAssumption("Projection horizon must be at least one year")

        r = discount_rate / 100
        g = growth / 100
        tg = terminal_growth / 100

        periods = np.arange(1, years + 1)
        fcfs = fcf0 * (1 + g) ** periods
        discount_factors = (1 + r) ** periods
        present_values = fcfs / discount_factors

        # Gordon growth on the final projected year
        terminal_value = fcfs[-1] * (1 + tg) / (r - tg)
        terminal_value_pv = terminal_value / discount_factors[-1]

        return {
            "fcfs": fcfs,
            "discount_factors": discount_factors,
            "present_values": present_values,
            "sum_pv": float(present_values.sum()),
            "terminal_value": float(terminal_value),
            "terminal_value_pv": float(terminal_value_pv),
            "enterprise_value": float(present_values.sum() + terminal_value_pv),
        }

    def value_per_share(self, fcf0: float, growth: float, discount_rate: float,
                        terminal_growth: float, years: int, net_debt: float, shares: float) -> float:
        projection = self.project(fcf0, growth, discount_rate, terminal_growth, years)
        return (projection["enterprise_value"] - net_debt) / shares

    def compute(self, inputs: DCFInputs) -> DCFResult:
        """
        Run a full valuation with sensitivity scenarios.

        Returns:
            DCFResult; ok=False with an error message when inputs are invalid
        """
        fcf0 = inputs.free_cash_flow
        shares = inputs.shares_outstanding

        if fcf0 is None:
            return DCFResult(inputs.ticker, ok=False, error="Free cash flow unavailable")
        if fcf0 <= 0:
            return DCFResult(inputs.ticker, ok=False, error=f"Non-positive free cash flow ({fcf0:,.0f})")
        if shares is None:
            return DCFResult(inputs.ticker, ok=False, error="Shares outstanding unavailable")
        if shares <= 0:
            return DCFResult(inputs.ticker, ok=False, error="Shares outstanding must be positive")

        discount_rate = (
            inputs.discount_rate if inputs.discount_rate is not None
            else default_discount_rate(inputs.market_cap)
        )
        terminal_growth = inputs.terminal_growth
        growth = (
            inputs.fcf_growth if inputs.fcf_growth is not None
            else estimate_fcf_growth(inputs.revenue_growth, terminal_growth)
        )
        assumptions = DCFAssumptions(discount_rate, terminal_growth, growth, inputs.years, fcf0)

        try:
            projection = self.project(fcf0, growth, discount_rate, terminal_growth, inputs.years)
        except InvalidAssumption as e:
            logger.debug("DCF for %s invalid: %s", inputs.ticker, e)
            return DCFResult(inputs.ticker, ok=False, error=str(e), assumptions=assumptions)

        net_debt_complete = inputs.total_debt is not None and inputs.total_cash is not None
        net_debt = (inputs.total_debt or 0.0) - (inputs.total_cash or 0.0)
        enterprise_value = projection["enterprise_value"]
        equity_value = enterprise_value - net_debt
        intrinsic = equity_value / shares

        if not math.isfinite(intrinsic):
            return DCFResult(inputs.ticker, ok=False, error="Valuation is not finite", assumptions=assumptions)

        projections = [
            ProjectedCashFlow(
                year=year,
                fcf=float(fcf),
                discount_factor=float(1 / factor),
                present_value=float(pv),
            )
            for year, fcf, factor, pv in zip(
                range(1, inputs.years + 1),
                projection["fcfs"],
                projection["discount_factors"],
                projection["present_values"],
            )
        ]

        scenarios = self.scenarios(fcf0, growth, discount_rate, terminal_growth, inputs.years, net_debt, shares)

        upside = recommendation = None
        if inputs.price is not None and inputs.price > 0:
            assessment = assess_valuation(intrinsic, inputs.price)
            upside = assessment["upside_pct"]
            recommendation = assessment["recommendation"]

        return DCFResult(
            ticker=inputs.ticker,
            ok=True,
            intrinsic_value=intrinsic,
            enterprise_value=enterprise_value,
            equity_value=equity_value,
            assumptions=assumptions,
            projections=projections,
            sum_pv_fcf=projection["sum_pv"],
            terminal_value=projection["terminal_value"],
            terminal_value_pv=projection["terminal_value_pv"],
            net_debt=net_debt,
            net_debt_complete=net_debt_complete,
            scenarios=scenarios,
            current_price=inputs.price,
            upside_pct=upside,
            recommendation=recommendation,
        )

    def scenarios(self, fcf0: float, growth: float, discount_rate: float, terminal_growth: float,
                  years: int, net_debt: float, shares: float) -> Dict[str, ScenarioResult]:
        """Run Bear/Base/Bull sensitivity cases."""
        cases = {
            "bear": (
                discount_rate + SCENARIO_DISCOUNT_SHIFT,
                max(growth - SCENARIO_GROWTH_SHIFT, BEAR_MIN_GROWTH),
                max(terminal_growth - SCENARIO_TERMINAL_SHIFT, BEAR_MIN_TERMINAL_GROWTH),
            ),
            "base": (discount_rate, growth, terminal_growth),
            "bull": (
                max(discount_rate - SCENARIO_DISCOUNT_SHIFT, BULL_MIN_DISCOUNT_RATE),
                min(growth + SCENARIO_GROWTH_SHIFT, BULL_MAX_GROWTH),
                min(terminal_growth + SCENARIO_TERMINAL_SHIFT, BULL_MAX_TERMINAL_GROWTH),
            ),
        }

        results = {}
        for name, (rate, g, tg) in cases.items():
            try:
                value = self.value_per_share(fcf0, g, rate, tg, years, net_debt, shares)
                results[name] = ScenarioResult(name, rate, g, tg, value, valid=True)
            except InvalidAssumption as e:
                results[name] = ScenarioResult(name, rate, g, tg, None, valid=False, error=str(e))
        return results

    def implied_growth(self, inputs: DCFInputs, target_price: Optional[float] = None) -> dict:
        """Reverse DCF: solve for the FCF growth that makes value per share equal the price.

        Args:
            inputs: Valuation inputs (fcf_growth is ignored)
            target_price: Price to solve for (defaults to inputs.price)

        Returns:
            dict with implied_growth (percent), assumed growth, gap and status
        """
        target_price = target_price if target_price is not None else inputs.price
        fcf0 = inputs.free_cash_flow
        shares = inputs.shares_outstanding

        if target_price is None or target_price <= 0:
            return {"status": "error", "error": "Target price unavailable", "implied_growth": None}
        if fcf0 is None or fcf0 <= 0 or shares is None or shares <= 0:
            return {"status": "error", "error": "Reverse DCF requires positive FCF and shares", "implied_growth": None}

        discount_rate = (
            inputs.discount_rate if inputs.discount_rate is not None
            else default_discount_rate(inputs.market_cap)
        )
        terminal_growth = inputs.terminal_growth
        if discount_rate <= terminal_growth:
            return {
                "status": "error",
                "error": f"Discount rate ({discount_rate:.2f}%) must exceed terminal growth ({terminal_growth:.2f}%)",
                "implied_growth": None,
            }

        net_debt = (inputs.total_debt or 0.0) - (inputs.total_cash or 0.0)

        def objective(growth: float) -> float:
            return self.value_per_share(
                fcf0, growth, discount_rate, terminal_growth, inputs.years, net_debt, shares
            ) - target_price

        low, high = self.implied_growth_bounds
        f_low, f_high = objective(low), objective(high)

        # brentq requires a sign change across the bracket
        if f_low * f_high > 0:
            if f_low > 0:
                msg = f"Price too low (${target_price:.2f}). Implies growth < {low:.0f}%"
            else:
                msg = f"Price too high (${target_price:.2f}). Implies growth > {high:.0f}%"
            return {"status": "no_solution_in_bounds", "error": msg, "implied_growth": None, "bounds": (low, high)}

        implied = brentq(objective, low, high, xtol=1e-8, maxiter=200)
        assumed = (
            inputs.fcf_growth if inputs.fcf_growth is not None
            else estimate_fcf_growth(inputs.revenue_growth, terminal_growth)
        )
        return {
            "status": "success",
            "ticker": inputs.ticker,
            "target_price": target_price,
            "implied_growth": float(implied),
            "assumed_growth": assumed,
            "gap": float(implied) - assumed,
            "discount_rate": discount_rate,
        }


_default_engine = DCFEngine()


def compute_dcf(inputs: DCFInputs) -> DCFResult:
    """Module-level shortcut for DCFEngine().compute(inputs)."""
    return _default_engine.compute(inputs)
