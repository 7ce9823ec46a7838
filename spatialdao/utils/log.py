"""Logging setup for scripts and test runs embedding the package."""

import logging
import os

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def configure_logging(level: str | int | None = None) -> int:
    """Configure the root logger once and return the effective level.

    ``level`` falls back to the ``LOG_LEVEL`` environment variable (default
    ``INFO``). Unknown level names resolve to ``INFO``.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    logging.getLogger("spatialdao").setLevel(level)
    return level
