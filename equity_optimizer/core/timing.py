"""
Timing utilities for stage-level performance logging.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

from equity_optimizer.logging_config import get_logger

logger = get_logger(__name__)


class Timer:
    """
    Context manager for timing code execution.

    Example:
        with Timer("Rescoring holdings"):
            rescore()
    """

    def __init__(self, name: str = "Operation", verbose: bool = True, clock: Optional[Callable[[], float]] = None):
        self.name = name
        self.verbose = verbose
        self.clock = clock or time.perf_counter
        self.start_time: Optional[float] = None
        self.elapsed: Optional[float] = None

    def __enter__(self) -> "Timer":
        self.start_time = self.clock()
        if self.verbose:
            logger.debug("%s: starting", self.name)
        return self

    def __exit__(self, *args: Any) -> None:
        if self.start_time is not None:
            self.elapsed = self.clock() - self.start_time
            if self.verbose:
                logger.info("%s: completed in %.2fs", self.name, self.elapsed)
