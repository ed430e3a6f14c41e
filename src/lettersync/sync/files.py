"""
FileLocationSync — moves uploaded files from local disk to remote storage.

A TrackedFile's bytes live in exactly one place. The flip to REMOTE is
persisted only after the upload succeeded, and local bytes are deleted only
after the flip is committed:

    LOCAL/PENDING_MIGRATION --upload ok--> REMOTE/UPLOADED (local bytes removed)
    LOCAL/*                 --upload err-> LOCAL/FAILED   (path and bytes kept)

Files that belong to a letter are uploaded into a per-letter folder
(letter_<number>) under the configured remote root.
"""
import asyncio
import logging
import re
from pathlib import Path
from typing import AsyncIterator, List, Optional, Protocol

from sqlmodel import Session, select

from lettersync.models.file import FileStatus, StorageProvider, TrackedFile
from lettersync.models.letter import Letter
from lettersync.models.sync import RunDirection
from lettersync.models.utils import generate_uuid, utcnow
from lettersync.sync.audit import OperationAuditLog
from lettersync.sync.errors import (
    ConfigurationError,
    DataIntegrityError,
    SyncError,
    TransientDeliveryError,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
MISSING_LOCAL_FILE = "Local file not found for sync"


class RemoteFileBackend(Protocol):
    def check_configured(self) -> None: ...

    async def upload(
        self, data: bytes, name: str, mime_type: str, folder: Optional[str] = None
    ) -> str: ...

    def fetch_stream(self, locator: str) -> AsyncIterator[bytes]: ...

    async def delete(self, locator: str) -> None: ...


class LocalFileStore:
    """Files under a single root directory, addressed by relative path."""

    def __init__(self, root):
        self.root = Path(root)

    @staticmethod
    def sanitize(name: str) -> str:
        cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", Path(name).name).lstrip(".")
        return cleaned or "file"

    def build_storage_path(self, letter_id: Optional[str], name: str) -> str:
        folder = letter_id or "unassigned"
        return f"{folder}/{generate_uuid()}_{self.sanitize(name)}"

    def absolute(self, storage_path: str) -> Path:
        root = self.root.resolve()
        path = (root / storage_path).resolve()
        if root not in path.parents:
            raise ValueError(f"Storage path escapes upload root: {storage_path!r}")
        return path

    def save(self, storage_path: str, data: bytes) -> None:
        path = self.absolute(storage_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def exists(self, storage_path: str) -> bool:
        return self.absolute(storage_path).is_file()

    def read(self, storage_path: str) -> bytes:
        return self.absolute(storage_path).read_bytes()

    def delete(self, storage_path: str) -> None:
        self.absolute(storage_path).unlink()

    async def iter_chunks(self, storage_path: str, chunk_size: int = CHUNK_SIZE):
        with open(self.absolute(storage_path), "rb") as fh:
            while True:
                chunk = fh.read(chunk_size)
                if not chunk:
                    break
                yield chunk


class FileLocationSync:
    def __init__(
        self,
        engine,
        local: LocalFileStore,
        backend: Optional[RemoteFileBackend],
        audit: OperationAuditLog,
        max_attempts: int = 5,
    ):
        """
        Args:
            engine: SQLAlchemy engine.
            local: LocalFileStore rooted at LOCAL_UPLOADS_DIR.
            backend: RemoteFileBackend (GoogleDriveStore, or a fake in tests).
                None means remote storage is not configured.
            audit: OperationAuditLog for LOCAL_TO_REMOTE runs.
            max_attempts: migration attempts per file before it is left alone.
        """
        self.engine = engine
        self.local = local
        self.backend = backend
        self.audit = audit
        self.max_attempts = max_attempts
        self._lock = asyncio.Lock()

    def check_configured(self) -> None:
        if self.backend is None:
            raise ConfigurationError("Remote file backend is not configured")
        self.backend.check_configured()

    def get(self, file_id: int) -> Optional[TrackedFile]:
        with Session(self.engine) as s:
            return s.get(TrackedFile, file_id)

    def register_upload(
        self,
        data: bytes,
        name: str,
        letter_id: Optional[str] = None,
        mime_type: str = "application/octet-stream",
    ) -> TrackedFile:
        """Store bytes locally and track them as LOCAL / PENDING_MIGRATION."""
        storage_path = self.local.build_storage_path(letter_id, name)
        self.local.save(storage_path, data)
        tracked = TrackedFile(
            letter_id=letter_id,
            name=name,
            mime_type=mime_type,
            size_bytes=len(data),
            storage_provider=StorageProvider.LOCAL.value,
            storage_path=storage_path,
            status=FileStatus.PENDING_MIGRATION.value,
        )
        with Session(self.engine) as s:
            s.add(tracked)
            s.commit()
            s.refresh(tracked)
        logger.info("Registered upload %s (%d bytes) at %s", tracked.id, len(data), storage_path)
        return tracked

    async def migrate_one(self, file_id: int) -> TrackedFile:
        """
        Move one file's bytes to remote storage.

        An attempt is counted once its outcome is known: uploaded, upload
        failed, or local bytes missing.

        Returns:
            The TrackedFile after the attempt (unchanged if already REMOTE).

        Raises:
            LookupError: no such file.
            ConfigurationError: remote backend unusable; no attempt is counted.
            DataIntegrityError: local bytes are gone; attempts are exhausted.
            TransientDeliveryError: upload failed; the file stays LOCAL.
        """
        async with self._lock:
            return await self._migrate(file_id)

    async def _migrate(self, file_id: int) -> TrackedFile:
        with Session(self.engine) as s:
            tracked = s.get(TrackedFile, file_id)
            if tracked is None:
                raise LookupError(f"TrackedFile {file_id} does not exist")
            if tracked.storage_provider == StorageProvider.REMOTE.value:
                return tracked
            local_path = tracked.storage_path
            name, mime_type = tracked.name, tracked.mime_type
            folder = self._folder_name(s, tracked.letter_id)

        self.check_configured()

        if not self.local.exists(local_path):
            self._mark_failed(file_id, MISSING_LOCAL_FILE, exhaust=True)
            raise DataIntegrityError(f"{MISSING_LOCAL_FILE}: {local_path}")

        try:
            data = self.local.read(local_path)
        except OSError as exc:
            self._mark_failed(file_id, f"Local file unreadable: {exc}", exhaust=True)
            raise DataIntegrityError(f"Local file unreadable: {local_path}") from exc

        try:
            locator = await self.backend.upload(data, name, mime_type, folder=folder)
        except ConfigurationError:
            raise
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            self._mark_failed(file_id, message)
            if isinstance(exc, SyncError):
                raise
            raise TransientDeliveryError(message) from exc

        try:
            tracked = self._record_migration(file_id, locator)
        except Exception as exc:
            logger.error("Could not record migration of file %s; removing remote copy", file_id)
            try:
                await self.backend.delete(locator)
            except Exception as cleanup_exc:
                logger.error("Remote cleanup of %s failed: %s", locator, cleanup_exc)
            try:
                self._mark_failed(file_id, f"Could not record migration: {exc}")
            except Exception as mark_exc:
                logger.error("Could not mark file %s as failed: %s", file_id, mark_exc)
            raise

        try:
            self.local.delete(local_path)
        except OSError as exc:
            logger.warning("Migrated file %s but could not delete %s: %s", file_id, local_path, exc)

        logger.info("Migrated file %s to remote storage", file_id)
        return tracked

    async def migrate_pending(self, limit: int = 5) -> int:
        """
        Migrate the oldest LOCAL files awaiting migration or retry.

        A failure on one file does not stop the others. A ConfigurationError
        stops the run and fails its SyncRun once.

        Returns:
            Number of files attempted (not the number that succeeded).
        """
        async with self._lock:
            file_ids = self._migration_candidates(limit)
            if not file_ids:
                return 0

            with self.audit.track(RunDirection.LOCAL_TO_REMOTE) as run:
                self.check_configured()
                for file_id in file_ids:
                    try:
                        await self._migrate(file_id)
                        run.rows_affected += 1
                    except ConfigurationError:
                        raise
                    except SyncError as exc:
                        logger.warning("File %s not migrated: %s", file_id, exc)
                    except Exception as exc:
                        logger.error("File %s migration failed unexpectedly: %s", file_id, exc)
        return len(file_ids)

    async def open_stream(self, tracked: TrackedFile) -> AsyncIterator[bytes]:
        """
        Resolve a file's bytes from wherever they currently live.

        Raises:
            DataIntegrityError: LOCAL file whose bytes are missing; the record
                is flipped to FAILED.
        """
        if tracked.storage_provider == StorageProvider.REMOTE.value:
            self.check_configured()
            return self.backend.fetch_stream(tracked.storage_path)
        if not self.local.exists(tracked.storage_path):
            self._mark_failed(tracked.id, "Local file not found", count_attempt=False)
            raise DataIntegrityError(f"Local file not found: {tracked.storage_path}")
        return self.local.iter_chunks(tracked.storage_path)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _migration_candidates(self, limit: int) -> List[int]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(TrackedFile.id)
                    .where(
                        TrackedFile.storage_provider == StorageProvider.LOCAL.value,
                        TrackedFile.status.in_(
                            [FileStatus.PENDING_MIGRATION.value, FileStatus.FAILED.value]
                        ),
                        TrackedFile.sync_attempts < self.max_attempts,
                    )
                    .order_by(TrackedFile.created_at, TrackedFile.id)
                    .limit(limit)
                ).all()
            )

    @staticmethod
    def _folder_name(session: Session, letter_id: Optional[str]) -> Optional[str]:
        """Remote folder holding a letter's attachments; None for unassigned files."""
        if not letter_id:
            return None
        letter = session.get(Letter, letter_id)
        return f"letter_{letter.number if letter and letter.number else letter_id}"

    def _record_migration(self, file_id: int, locator: str) -> TrackedFile:
        with Session(self.engine) as s:
            tracked = s.get(TrackedFile, file_id)
            tracked.storage_provider = StorageProvider.REMOTE.value
            tracked.storage_path = locator
            tracked.status = FileStatus.UPLOADED.value
            tracked.upload_error = None
            tracked.sync_attempts += 1
            tracked.last_sync_attempt_at = utcnow()
            s.add(tracked)
            s.commit()
            s.refresh(tracked)
        return tracked

    def _mark_failed(
        self, file_id: int, error: str, exhaust: bool = False, count_attempt: bool = True
    ) -> None:
        with Session(self.engine) as s:
            tracked = s.get(TrackedFile, file_id)
            if tracked is None:
                logger.warning("File %s vanished before it could be marked failed", file_id)
                return
            tracked.status = FileStatus.FAILED.value
            tracked.upload_error = error
            if count_attempt:
                tracked.sync_attempts += 1
                tracked.last_sync_attempt_at = utcnow()
            if exhaust:
                tracked.sync_attempts = max(tracked.sync_attempts, self.max_attempts)
            s.add(tracked)
            s.commit()
