from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

_ROOT = "contractscan"


def setup_logging(level: str | int = "INFO", console: Console | None = None) -> logging.Logger:
    """Route the package loggers through rich; safe to call more than once."""
    logger = logging.getLogger(_ROOT)
    logger.setLevel(level if isinstance(level, int) else level.upper())
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.propagate = False
    return logger
