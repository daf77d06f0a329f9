"""Logging setup.

Library code logs through loguru's module-level ``logger``; only entry points
call :func:`configure_logging` to decide where records go.
"""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(verbose: bool = False, log_file: str | Path | None = None) -> None:
    """Replace loguru's default sink with folio's console (and optional file) sinks."""
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level="DEBUG" if verbose else "INFO")

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(path, rotation="1 day", retention="7 days", level="DEBUG")
