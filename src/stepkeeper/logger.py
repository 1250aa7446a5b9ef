"""
Logging setup for stepkeeper.

All modules obtain a logger through ``get_logger(__name__)``; the returned
object is the shared loguru logger bound to the module name, so sinks are
configured once via ``setup_logging``.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger as _logger

from stepkeeper.config import CONFIG

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

_logger.configure(extra={"name": "stepkeeper"})


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None):
    """
    Configure loguru sinks.

    Args:
        level: Minimum level (defaults to STEPKEEPER_LOG_LEVEL, then LOGURU_LEVEL, then INFO)
        log_file: Optional path for a rotating file sink
    """
    level = (level or CONFIG.log_level).upper()

    _logger.remove()
    _logger.add(sys.stderr, level=level, format=_FORMAT, backtrace=False)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            log_file,
            level=level,
            format=_FORMAT,
            rotation="10 MB",
            retention=5,
            encoding="utf-8",
        )


def get_logger(name: str):
    """Return the shared logger bound to ``name``."""
    return _logger.bind(name=name)
