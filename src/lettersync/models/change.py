"""Change record model: one captured mutation waiting to reach the mirror."""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from lettersync.models.utils import UTCDateTime, utcnow


class ChangeAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class EntityType(str, Enum):
    LETTER = "letter"
    REQUEST = "request"


class ChangeRecord(SQLModel, table=True):
    """
    Append-only queue entry. Only the sync bookkeeping columns
    (sync_status, retry_count, sync_error, synced_at, claim_*) are ever updated.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(default=EntityType.LETTER.value, index=True)
    entity_id: str = Field(index=True)
    action: str  # ChangeAction value
    field: Optional[str] = None  # None for CREATE / DELETE
    old_value: Optional[str] = None
    new_value: Optional[str] = None

    sync_status: str = Field(default=SyncStatus.PENDING.value, index=True)
    retry_count: int = 0
    sync_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)
    synced_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    # Set together by the conditional UPDATE that claims a batch
    claim_token: Optional[str] = Field(default=None, index=True)
    claimed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
