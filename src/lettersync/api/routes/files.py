"""File routes: trigger local→remote migration and stream file bytes."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from lettersync.api.deps import get_services, require_sync_host
from lettersync.services import SyncServices
from lettersync.sync.errors import DataIntegrityError, SyncError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/sync")
async def sync_files(
    file_id: Optional[int] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    services: SyncServices = Depends(require_sync_host),
):
    """Migrate one file (file_id) or a batch of pending files."""
    if file_id is None:
        try:
            attempted = await services.files.migrate_pending(
                limit or services.settings.file_migration_batch_size
            )
        except SyncError as exc:
            raise HTTPException(status_code=502, detail=f"File backend error: {exc}")
        return {"attempted": attempted}

    try:
        tracked = await services.files.migrate_one(file_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="File not found")
    except DataIntegrityError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except SyncError as exc:
        raise HTTPException(status_code=502, detail=f"File backend error: {exc}")
    return tracked


@router.get("/{file_id}")
async def download_file(file_id: int, services: SyncServices = Depends(get_services)):
    """Stream a file's bytes from local disk or remote storage."""
    tracked = services.files.get(file_id)
    if tracked is None:
        raise HTTPException(status_code=404, detail="File not found")

    try:
        stream = await services.files.open_stream(tracked)
    except DataIntegrityError as exc:
        logger.warning("File %s unreadable: %s", file_id, exc)
        raise HTTPException(status_code=409, detail=str(exc))
    except SyncError as exc:
        raise HTTPException(status_code=502, detail=f"File backend error: {exc}")

    return StreamingResponse(
        stream,
        media_type=tracked.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{services.files.local.sanitize(tracked.name)}"'},
    )
