"""FastAPI dependencies."""
from fastapi import Depends, HTTPException, Request

from lettersync.services import SyncServices


def get_services(request: Request) -> SyncServices:
    """The per-app service container built in create_app()."""
    return request.app.state.services


def require_sync_host(services: SyncServices = Depends(get_services)) -> SyncServices:
    """Reject remote-writing operations in a process started with SYNC_HOST=false."""
    if not services.settings.sync_host:
        raise HTTPException(
            status_code=409,
            detail="Sync is hosted by another process (SYNC_HOST=false here)",
        )
    return services
