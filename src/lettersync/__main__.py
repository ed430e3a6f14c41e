"""
Main entrypoint: serves the operator API, which also hosts the change-sync
worker and the maintenance jobs.

Exactly one such process may run per database. Mirror runs and file
migration are triggered through the API (POST /sync/mirror, POST /files/sync)
so that every remote write goes through this process.

Usage:
    python -m lettersync                              # API + worker + jobs
    uvicorn lettersync.api.main:app --host 0.0.0.0 --port 8000  # same, one worker only
"""
import logging
import sys

import uvicorn

from lettersync.logging_config import setup_logging

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    from lettersync.config import get_settings

    argv = sys.argv[1:] if argv is None else argv
    setup_logging()
    if argv:
        logger.error(
            "Unexpected arguments %r; mirror runs and file migration go through the API",
            argv,
        )
        return 2

    settings = get_settings()
    if not settings.sync_host:
        logger.warning("SYNC_HOST=false: serving the API without the worker or jobs")
    uvicorn.run(
        "lettersync.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=1,
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
