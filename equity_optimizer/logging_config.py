"""
Centralized logging configuration for the Equity Optimizer.

Use `get_logger(__name__)` in each module to get a properly configured logger.

Usage:
    from equity_optimizer.logging_config import get_logger, setup_logging

    # At application startup (e.g., main.py)
    setup_logging(level="INFO")

    # In each module
    logger = get_logger(__name__)
    logger.info("Rescoring %d holdings", len(holdings))
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Simple format for console (less verbose)
CONSOLE_FORMAT = "%(levelname)-8s | %(message)s"

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("urllib3", "yfinance", "requests", "peewee", "sqlalchemy.engine")

_logging_configured = False


class ColoredFormatter(logging.Formatter):
    """Formatter that adds ANSI colors to the level name for terminal output."""

    COLORS = {
        logging.DEBUG: "\033[36m",     # Cyan
        logging.INFO: "\033[32m",      # Green
        logging.WARNING: "\033[33m",   # Yellow
        logging.ERROR: "\033[31m",     # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, self.RESET)
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_dir: Optional[str] = None,
    console_output: bool = True,
    colored: bool = True,
) -> None:
    """
    Configure application-wide logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file name. Generated from a timestamp when
            log_dir is given without a name.
        log_dir: Directory for log files; no file handler when both are None
        console_output: Whether to output to console (stderr)
        colored: Whether to use colored output in console
    """
    global _logging_configured

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)

        if colored and sys.stderr.isatty():
            formatter = ColoredFormatter(CONSOLE_FORMAT, LOG_DATE_FORMAT)
        else:
            formatter = logging.Formatter(CONSOLE_FORMAT, LOG_DATE_FORMAT)

        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file is not None or log_dir is not None:
        log_path = Path(log_dir or "logs")
        log_path.mkdir(parents=True, exist_ok=True)

        if log_file is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_file = f"eqo_{timestamp}.log"

        file_handler = logging.FileHandler(log_path / log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    if not _logging_configured:
        logging.basicConfig(
            level=logging.INFO,
            format=CONSOLE_FORMAT,
            datefmt=LOG_DATE_FORMAT,
        )

    return logging.getLogger(name)


def set_level(level: str, logger_name: Optional[str] = None) -> None:
    """Change logging level at runtime for one logger or the root."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.getLogger(logger_name).setLevel(numeric_level)
