"""Sync audit log model."""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from lettersync.models.utils import UTCDateTime, utcnow


class RunDirection(str, Enum):
    EXPORT = "EXPORT"  # local letters -> tabular mirror
    IMPORT = "IMPORT"  # tabular mirror -> local letters
    CHANGES = "CHANGES"  # change-record batch -> tabular mirror
    LOCAL_TO_REMOTE = "LOCAL_TO_REMOTE"  # file bytes -> remote store


class RunStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SyncRun(SQLModel, table=True):
    """Records each sync run for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    direction: str
    status: str = RunStatus.IN_PROGRESS.value
    rows_affected: int = 0
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)
    finished_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
