"""
Environment Variable Loader

Loads environment variables from config/secrets.env so that overrides such as
EQO_DATABASE_URL or EQO_STRATEGY are visible to `Config.from_env()`.

Usage:
    from equity_optimizer.env_loader import load_environment_variables
    load_environment_variables()
"""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from equity_optimizer.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_ENV_FILE = Path(__file__).parent.parent / "config" / "secrets.env"


def load_environment_variables(env_file: Optional[str] = None) -> bool:
    """
    Load environment variables from a .env file.

    Existing variables are never overridden.

    Args:
        env_file: Path to .env file (default: config/secrets.env)

    Returns:
        True if a file was found and loaded, False otherwise
    """
    path = Path(env_file) if env_file is not None else DEFAULT_ENV_FILE

    if not path.exists():
        logger.debug("Environment file not found: %s", path)
        return False

    load_dotenv(path, override=False)
    logger.debug("Loaded environment variables from %s", path)
    return True


__all__ = [
    "load_environment_variables",
]
