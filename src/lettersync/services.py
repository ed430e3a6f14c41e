"""
Object graph for the sync engine.

Everything that holds state (worker lock, scheduler, lazily built Google
clients) lives on one SyncServices instance per process.
"""
from dataclasses import dataclass
from typing import Optional

from lettersync.backends.drive import build_drive_store
from lettersync.backends.sheets import build_sheets_mirror
from lettersync.models.change import EntityType
from lettersync.scheduler.worker import SyncWorker
from lettersync.sync.audit import OperationAuditLog
from lettersync.sync.changes import ChangeRecordStore
from lettersync.sync.files import FileLocationSync, LocalFileStore, RemoteFileBackend
from lettersync.sync.mirror import TabularBackend, TabularMirrorSync
from lettersync.sync.reconciler import BatchReconciler


@dataclass
class SyncServices:
    settings: object
    engine: object
    store: ChangeRecordStore
    audit: OperationAuditLog
    mirror: TabularMirrorSync
    reconciler: BatchReconciler
    worker: SyncWorker
    files: FileLocationSync


def build_services(
    engine,
    settings,
    *,
    tabular: Optional[TabularBackend] = None,
    files: Optional[RemoteFileBackend] = None,
) -> SyncServices:
    """
    Wire the engine components together.

    Args:
        engine: SQLAlchemy engine.
        settings: Settings instance.
        tabular: mirror backend; defaults to Google Sheets when configured.
        files: remote file backend; defaults to Google Drive when configured.
    """
    store = ChangeRecordStore(engine)
    audit = OperationAuditLog(engine)
    mirror = TabularMirrorSync(
        engine,
        tabular if tabular is not None else build_sheets_mirror(settings),
        audit,
    )
    # Requests have no mirror yet; their records are skipped with a note.
    reconciler = BatchReconciler(store, audit, {EntityType.LETTER.value: mirror})
    worker = SyncWorker(
        store,
        reconciler,
        batch_size=settings.sync_batch_size,
        max_retries=settings.sync_max_retries,
    )
    file_sync = FileLocationSync(
        engine,
        LocalFileStore(settings.local_uploads_dir),
        files if files is not None else build_drive_store(settings),
        audit,
        max_attempts=settings.file_migration_max_attempts,
    )
    return SyncServices(
        settings=settings,
        engine=engine,
        store=store,
        audit=audit,
        mirror=mirror,
        reconciler=reconciler,
        worker=worker,
        files=file_sync,
    )
