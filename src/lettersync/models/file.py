"""Tracked file model: bytes live in exactly one storage backend at a time."""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from lettersync.models.utils import UTCDateTime, utcnow


class StorageProvider(str, Enum):
    LOCAL = "LOCAL"
    REMOTE = "REMOTE"


class FileStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PENDING_MIGRATION = "PENDING_MIGRATION"
    FAILED = "FAILED"


class TrackedFile(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    letter_id: Optional[str] = Field(default=None, foreign_key="letter.id", index=True)
    name: str
    mime_type: str = "application/octet-stream"
    size_bytes: int = 0

    # LOCAL: path relative to LOCAL_UPLOADS_DIR. REMOTE: backend locator (Drive file id).
    storage_provider: str = Field(default=StorageProvider.LOCAL.value, index=True)
    storage_path: str
    status: str = Field(default=FileStatus.PENDING_MIGRATION.value, index=True)
    upload_error: Optional[str] = None

    sync_attempts: int = 0
    last_sync_attempt_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
