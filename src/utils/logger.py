# src/utils/logger.py
import logging
import sys
from typing import Optional, Union

from core.config import settings

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s]: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = settings.LOG_LEVEL
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logger(
    name: str,
    level: Union[int, str, None] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Get a component logger writing to stdout.

    Args:
        name: Component name, e.g. "TREATMENT_SERVICE"
        level: Level name or number (default: settings.LOG_LEVEL)
        format_string: Custom format string for log messages

    Returns:
        Configured logger instance; repeated calls return the same logger
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    resolved = _resolve_level(level)
    logger.setLevel(resolved)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(format_string or LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)

    # Handlers are per component; the root logger would print twice
    logger.propagate = False

    return logger
