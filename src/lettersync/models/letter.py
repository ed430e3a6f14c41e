"""Letter model: the tracked entity mirrored into the spreadsheet."""
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from lettersync.models.utils import generate_uuid, UTCDateTime, utcnow


class LetterStatus(str, Enum):
    NOT_REVIEWED = "NOT_REVIEWED"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    CLARIFICATION = "CLARIFICATION"
    READY = "READY"
    DONE = "DONE"


class Letter(SQLModel, table=True):
    """
    One inbound letter. The CRUD surface lives elsewhere; this table carries
    only what the mirror needs plus the sync bookkeeping columns.
    """

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    number: str = Field(index=True)
    org: str = ""
    letter_date: date
    deadline_date: Optional[date] = None
    status: str = LetterStatus.NOT_REVIEWED.value
    type: Optional[str] = None
    content: Optional[str] = None
    jira_link: Optional[str] = None
    answer: Optional[str] = None
    send_status: Optional[str] = None
    comment: Optional[str] = None
    owner: Optional[str] = None  # email or display name
    contacts: Optional[str] = None
    close_date: Optional[date] = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    deleted_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    # Mirror bookkeeping, never tracked as changes
    sheet_row_num: Optional[int] = None
    last_synced_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
