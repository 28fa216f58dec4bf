"""Per-portfolio advisory locks.

Serializes rebalance cycles for the same portfolio inside one process. The
store's version check covers writers in other processes.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from equity_optimizer.constants import DEFAULT_LOCK_TIMEOUT_SECONDS
from equity_optimizer.errors import PersistenceConflict
from equity_optimizer.logging_config import get_logger

logger = get_logger(__name__)


class PortfolioLock:
    """
    Lock for a single portfolio.

    Args:
        portfolio_id: Portfolio the lock guards
        lock: Underlying threading.Lock shared through the registry
        blocking: Whether to block waiting for the lock
        blocking_timeout: Max time to wait for lock (None = wait forever)
    """

    def __init__(
        self,
        portfolio_id: str,
        lock: threading.Lock,
        blocking: bool = True,
        blocking_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ):
        self.portfolio_id = portfolio_id
        self._lock = lock
        self.blocking = blocking
        self.blocking_timeout = blocking_timeout
        self._acquired = False

    def acquire(self) -> bool:
        """Acquire the lock. Returns True if acquired, False otherwise."""
        if not self.blocking:
            acquired = self._lock.acquire(blocking=False)
        elif self.blocking_timeout is None:
            acquired = self._lock.acquire()
        else:
            acquired = self._lock.acquire(timeout=self.blocking_timeout)

        self._acquired = acquired
        if acquired:
            logger.debug("Lock acquired: portfolio %s", self.portfolio_id)
        else:
            logger.debug("Lock acquisition timeout: portfolio %s", self.portfolio_id)
        return acquired

    def release(self) -> bool:
        if not self._acquired:
            return False
        self._lock.release()
        self._acquired = False
        logger.debug("Lock released: portfolio %s", self.portfolio_id)
        return True

    @property
    def acquired(self) -> bool:
        return self._acquired

    def __enter__(self) -> "PortfolioLock":
        if not self.acquire():
            raise PersistenceConflict(self.portfolio_id, "another rebalance cycle holds the portfolio lock")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class PortfolioLockRegistry:
    """Hands out one shared lock per portfolio id."""

    def __init__(self, blocking_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT_SECONDS):
        self.blocking_timeout = blocking_timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, portfolio_id: str, blocking: bool = True,
                 blocking_timeout: Optional[float] = None) -> PortfolioLock:
        with self._guard:
            lock = self._locks.setdefault(portfolio_id, threading.Lock())
        timeout = blocking_timeout if blocking_timeout is not None else self.blocking_timeout
        return PortfolioLock(portfolio_id, lock, blocking=blocking, blocking_timeout=timeout)

    def is_locked(self, portfolio_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(portfolio_id)
        return lock is not None and lock.locked()

    @contextmanager
    def hold(self, portfolio_id: str, blocking: bool = True,
             blocking_timeout: Optional[float] = None) -> Iterator[PortfolioLock]:
        """
        Context manager holding the portfolio lock.

        Raises:
            PersistenceConflict: If the lock could not be acquired in time
        """
        with self.lock_for(portfolio_id, blocking, blocking_timeout) as lock:
            yield lock
