"""Shared logger for the metadata cache."""
from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

logger = logging.getLogger("slkcache")


def configure_logging(level: int = logging.WARNING) -> None:
    """Install the process-wide log format. Called by the CLI entry point only."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("httpx").setLevel(logging.WARNING)
