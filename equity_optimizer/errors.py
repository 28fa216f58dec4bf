"""
Error taxonomy for the Equity Optimizer.

Per-ticker errors (DataUnavailable, RateLimited, FetchTimeout) are absorbed at
the fetch/score layer. Structural errors (InvariantViolation,
PersistenceConflict, ConfigurationError) propagate to the caller.
"""

from __future__ import annotations

from typing import Optional, Sequence


class EquityOptimizerError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(EquityOptimizerError):
    """Invalid configuration (unknown strategy, bad weights, bad constraints)."""


class DataUnavailable(EquityOptimizerError):
    """A ticker, or a field required for a computation, could not be fetched."""

    def __init__(self, ticker: Optional[str], reason: str = "data unavailable"):
        self.ticker = ticker
        self.reason = reason
        prefix = f"{ticker}: " if ticker else ""
        super().__init__(f"{prefix}{reason}")


class RateLimited(DataUnavailable):
    """Provider throttling that outlasted every retry."""

    def __init__(self, ticker: Optional[str], reason: str = "rate limited"):
        super().__init__(ticker, reason)


class FetchTimeout(DataUnavailable):
    """The caller's deadline expired before this ticker was fetched."""

    def __init__(self, ticker: Optional[str], reason: str = "deadline expired before fetch"):
        super().__init__(ticker, reason)


class InvalidAssumption(EquityOptimizerError):
    """DCF assumptions that cannot produce a finite valuation."""


class ConstraintUnsatisfiable(EquityOptimizerError):
    """The selector could not fill every slot without breaking a sector cap."""

    def __init__(self, requested: int, chosen: int):
        self.requested = requested
        self.chosen = chosen
        super().__init__(f"Only {chosen} of {requested} slots could be filled within sector caps")


class InvariantViolation(EquityOptimizerError):
    """A proposed post-trade portfolio breaks a portfolio invariant."""

    def __init__(self, invariant: str, detail: str, tickers: Sequence[str] = ()):
        self.invariant = invariant
        self.detail = detail
        self.tickers = tuple(tickers)
        super().__init__(f"{invariant}: {detail}")


class PersistenceConflict(EquityOptimizerError):
    """The store detected a concurrent mutation; retry the cycle from LOADED."""

    def __init__(self, portfolio_id: str, reason: str = "concurrent modification"):
        self.portfolio_id = portfolio_id
        self.reason = reason
        super().__init__(f"Portfolio {portfolio_id}: {reason}")


class UnsupportedSchemaVersion(EquityOptimizerError, ValueError):
    """A stored holdings blob was written by a newer schema than this build reads."""

    def __init__(self, version: int, supported: int):
        self.version = version
        self.supported = supported
        super().__init__(f"Holdings blob schema_version {version} is newer than supported {supported}")
