"""
Logging setup for the engine and CLI.

Library modules only call ``logging.getLogger(__name__)``; the CLI calls
:func:`setup_logging` once to attach a rich console handler to the
package logger.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from ifta_engine.config import get_settings

PACKAGE_LOGGER = "ifta_engine"


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    console: Optional[Console] = None,
) -> logging.Logger:
    """
    Configure the ``ifta_engine`` logger.

    Args:
        level: Log level name. Defaults to ``IFTA_LOG_LEVEL`` or WARNING.
        log_file: Optional file path for plain-text logs.
        console: Console to render to; a stderr console by default.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    if level is None:
        level = get_settings().log_level
    log_level = getattr(logging, level.upper(), logging.WARNING)
    logger.setLevel(log_level)

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(log_level)
    logger.addHandler(rich_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "[%(asctime)s] [%(levelname)-8s] [%(module)s:%(funcName)s:%(lineno)d] %(message)s"
            )
        )
        logger.addHandler(file_handler)

    return logger
