from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console()

_NOISY_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "sqlalchemy.orm",
    "httpx",
    "urllib3",
    "sentence_transformers",
    "faiss",
)


def configure_logging(level: str = "INFO") -> None:
    """
    Route standard logging through a RichHandler on the shared console.

    Safe to call more than once; previously installed root handlers are replaced.
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        show_time=True,
        show_level=True,
        show_path=False,
        log_time_format="%H:%M:%S",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))

    root.setLevel(level.upper())
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["console", "configure_logging", "get_logger"]
