"""Centralized logging configuration."""

import logging

from lettersync.config import get_settings


def setup_logging() -> None:
    """Configure logging for the process.

    Sets the root level from LOG_LEVEL and quiets chatty third-party loggers.
    """
    logging.basicConfig(
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        level=getattr(logging, get_settings().log_level),
        force=True,
    )

    for name in (
        "sqlalchemy.engine",
        "googleapiclient.discovery_cache",
        "apscheduler",
        "httpx",
    ):
        logging.getLogger(name).setLevel(logging.WARNING)
