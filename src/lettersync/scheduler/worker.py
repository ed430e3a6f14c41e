"""
SyncWorker — periodic driver for the BatchReconciler.

States: stopped --start()--> running --stop()--> stopped. While running, an
APScheduler interval job calls the reconciler every interval_ms.
"""
import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from lettersync.sync.changes import ChangeRecordStore
from lettersync.sync.reconciler import BatchReconciler, BatchResult

logger = logging.getLogger(__name__)

JOB_ID = "change_sync"


class SyncWorker:
    """
    Owns the change-sync schedule for one process.

    Exactly one SyncWorker may run against a given database: the one in the
    API process started with SYNC_HOST=true. Claims are atomic, but that
    process calls release_orphaned_claims() at startup, which assumes nothing
    else holds PROCESSING records.
    """

    def __init__(
        self,
        store: ChangeRecordStore,
        reconciler: BatchReconciler,
        *,
        batch_size: int = 50,
        max_retries: int = 5,
    ):
        self.store = store
        self.reconciler = reconciler
        self.batch_size = batch_size
        self.max_retries = max_retries
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._lock = asyncio.Lock()

    def start(self, interval_ms: int = 30000) -> bool:
        """Begin periodic passes. Returns False if already running."""
        if self.is_running():
            return False
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self._tick,
            trigger="interval",
            seconds=interval_ms / 1000,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Sync worker started (every %d ms, batch %d)", interval_ms, self.batch_size)
        return True

    def stop(self) -> bool:
        """Cancel future passes; an in-flight pass finishes. Returns False if stopped."""
        if self._scheduler is None:
            return False
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Sync worker stopped")
        return True

    def is_running(self) -> bool:
        return self._scheduler is not None

    def is_busy(self) -> bool:
        return self._lock.locked()

    async def trigger_once(self, batch_size: Optional[int] = None) -> BatchResult:
        """Run one pass now, waiting for any in-flight pass to finish first."""
        return await self._run_pass(self.batch_size if batch_size is None else batch_size)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _tick(self) -> None:
        try:
            # Scheduler shutdown cancels the job future; the pass itself must finish.
            await asyncio.shield(self._run_pass(self.batch_size))
        except Exception as exc:
            logger.error("Sync worker pass failed: %s", exc)

    async def _run_pass(self, batch_size: int) -> BatchResult:
        async with self._lock:
            self.store.requeue_failed(self.max_retries)
            result = await self.reconciler.process_pending(batch_size)
        if result.processed or result.errors:
            logger.info(
                "Change sync: %d processed, %d synced, %d failed, %d skipped",
                result.processed,
                result.synced,
                result.failed,
                result.skipped,
            )
        return result
