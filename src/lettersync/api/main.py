"""
FastAPI application factory.

The API process is the sync host: its lifespan owns the change-sync worker and
the maintenance scheduler. Run it as a single process (one uvicorn worker);
extra read-only replicas must set SYNC_HOST=false.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from lettersync.api.routes import files as file_routes
from lettersync.api.routes import sync as sync_routes
from lettersync.config import get_settings
from lettersync.db.engine import get_engine
from lettersync.scheduler.jobs import build_scheduler
from lettersync.services import SyncServices, build_services

logger = logging.getLogger(__name__)


def create_app(services: Optional[SyncServices] = None) -> FastAPI:
    """
    Build and return the FastAPI app.

    Args:
        services: prebuilt container (tests); built from settings on startup
            otherwise.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(get_engine(), get_settings())
        current = app.state.services
        settings = current.settings
        if not settings.sync_host:
            logger.info("SYNC_HOST=false: worker and maintenance jobs run elsewhere")
            yield
            return

        current.store.release_orphaned_claims()
        maintenance = build_scheduler(current)
        maintenance.start()
        if settings.sync_autostart:
            current.worker.start(settings.sync_interval_ms)
        logger.info(
            "Hosting sync (worker %s); retention purge at %02d:00 UTC",
            "running" if current.worker.is_running() else "stopped",
            settings.retention_purge_hour,
        )
        try:
            yield
        finally:
            current.worker.stop()
            maintenance.shutdown(wait=False)

    app = FastAPI(
        title="Letters Sync API",
        description="Operator surface for the letters sync engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(file_routes.router, prefix="/files", tags=["files"])

    return app


# Module-level app instance for uvicorn
app = create_app()
