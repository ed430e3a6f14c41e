"""
APScheduler maintenance jobs.

Daily retention purge keeps the change queue from growing without bound;
the file migration job drains locally stored uploads to remote storage.

The change-sync interval job is owned by SyncWorker, not built here.
"""
import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


def build_scheduler(services) -> AsyncIOScheduler:
    """
    Create and configure the maintenance scheduler.

    Args:
        services: SyncServices container (store, file sync and settings).

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = services.settings
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _retention_purge,
        trigger="cron",
        hour=settings.retention_purge_hour,
        minute=0,
        id="retention_purge",
        replace_existing=True,
        kwargs={"services": services},
    )

    if settings.file_migration_interval_minutes > 0:
        scheduler.add_job(
            _file_migration,
            trigger="interval",
            minutes=settings.file_migration_interval_minutes,
            id="file_migration",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            kwargs={"services": services},
        )

    return scheduler


async def _retention_purge(services) -> None:
    """Delete SYNCED change records older than the retention window."""
    days = services.settings.change_retention_days
    try:
        deleted = services.store.purge(timedelta(days=days))
        logger.info("Retention purge removed %d records older than %d days", deleted, days)
    except Exception as exc:
        logger.error("Retention purge failed: %s", exc)


async def _file_migration(services) -> None:
    """Move a batch of local uploads to remote storage."""
    try:
        attempted = await services.files.migrate_pending(
            limit=services.settings.file_migration_batch_size
        )
        if attempted:
            logger.info("File migration attempted %d files", attempted)
    except Exception as exc:
        logger.error("File migration failed: %s", exc)
