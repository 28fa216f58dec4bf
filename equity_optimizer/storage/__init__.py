"""Portfolio persistence: SQL store and per-portfolio locks."""

from equity_optimizer.storage.locks import PortfolioLock, PortfolioLockRegistry
from equity_optimizer.storage.store import PortfolioStore, SqlPortfolioStore

__all__ = [
    "PortfolioLock",
    "PortfolioLockRegistry",
    "PortfolioStore",
    "SqlPortfolioStore",
]
