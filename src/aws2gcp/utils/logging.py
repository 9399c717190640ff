"""Rich-backed logging for aws2gcp."""

from __future__ import annotations

import logging

from rich.logging import RichHandler

PACKAGE_LOGGER = "aws2gcp"


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger instance.

    Handlers are attached to the package logger only, so child loggers
    propagate into a single RichHandler and messages are never doubled.
    """
    root = logging.getLogger(PACKAGE_LOGGER)
    if not root.handlers:
        handler = RichHandler(
            show_time=True,
            show_path=False,
            markup=True,
            rich_tracebacks=True,
        )
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
        root.setLevel(logging.INFO)

    return logging.getLogger(name)


def set_log_level(level: str) -> None:
    """Set global log level (DEBUG, INFO, WARNING, ERROR)."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.getLogger(PACKAGE_LOGGER).setLevel(numeric)
