"""Operator routes: change-sync worker, mirror runs, run history, change queue."""
import logging
from dataclasses import asdict
from datetime import timedelta
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from lettersync.api.deps import get_services, require_sync_host
from lettersync.models.change import SyncStatus
from lettersync.services import SyncServices
from lettersync.sync.errors import SyncError
from lettersync.sync.mirror import MirrorDirection

logger = logging.getLogger(__name__)

router = APIRouter()


class WorkerCommand(BaseModel):
    action: Literal["start", "stop", "trigger"]
    interval_ms: Optional[int] = Field(default=None, ge=1000)
    batch_size: Optional[int] = Field(default=None, ge=1, le=500)


class MirrorRequest(BaseModel):
    direction: MirrorDirection


@router.get("/worker")
def worker_status(services: SyncServices = Depends(get_services)):
    """Worker state plus change-queue depth per status."""
    return {
        "running": services.worker.is_running(),
        "busy": services.worker.is_busy(),
        "stats": services.store.stats(),
    }


@router.post("/worker")
async def worker_command(
    command: WorkerCommand, services: SyncServices = Depends(get_services)
):
    """Start or stop the periodic worker, or run one pass now."""
    if command.action != "stop":
        require_sync_host(services)
    worker = services.worker
    if command.action == "start":
        interval_ms = command.interval_ms or services.settings.sync_interval_ms
        if command.batch_size:
            worker.batch_size = command.batch_size
        started = worker.start(interval_ms)
        return {"action": "start", "changed": started, "running": worker.is_running()}
    if command.action == "stop":
        stopped = worker.stop()
        return {"action": "stop", "changed": stopped, "running": worker.is_running()}

    result = await worker.trigger_once(command.batch_size)
    return {"action": "trigger", "result": asdict(result)}


@router.post("/mirror")
async def run_mirror(
    request: MirrorRequest, services: SyncServices = Depends(require_sync_host)
):
    """Run one full export or import against the spreadsheet mirror."""
    try:
        result = await services.mirror.run(request.direction)
    except SyncError as exc:
        logger.warning("Mirror %s failed: %s", request.direction.value, exc)
        raise HTTPException(status_code=502, detail=f"Mirror backend error: {exc}")
    return {
        "direction": request.direction.value,
        "success": result.success,
        "rows_affected": result.rows_affected,
        "conflicts": result.conflicts,
    }


@router.get("/runs")
def list_runs(
    limit: int = Query(default=20, ge=1, le=200),
    services: SyncServices = Depends(get_services),
):
    """Recent sync runs, newest first."""
    return services.audit.list(limit)


@router.get("/changes")
def list_changes(
    status: Optional[SyncStatus] = None,
    entity_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    services: SyncServices = Depends(get_services),
):
    """Change records, newest first, with pagination info."""
    records, total = services.store.query(
        status=status, entity_id=entity_id, limit=limit, offset=offset
    )
    return {"records": records, "total": total, "limit": limit, "offset": offset}


@router.delete("/changes")
def purge_changes(
    older_than_days: int = Query(default=30, ge=0),
    services: SyncServices = Depends(get_services),
):
    """Delete SYNCED records older than the given number of days."""
    deleted = services.store.purge(timedelta(days=older_than_days))
    return {"deleted": deleted, "older_than_days": older_than_days}
