"""
Change capture for letters.

The letters CRUD layer calls these helpers instead of mutating Letter rows
directly. Each helper writes the mutation and its ChangeRecord(s) into the
caller's session; nothing is committed here, so both land in the same
transaction or neither does.
"""
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlmodel import Session

from lettersync.models.change import ChangeAction, EntityType
from lettersync.models.letter import Letter
from lettersync.models.utils import utcnow
from lettersync.sync.changes import ChangeRecordStore

# Letter attributes mirrored to the spreadsheet. Bookkeeping columns
# (sheet_row_num, last_synced_at, updated_at) are not tracked.
SYNC_FIELDS = (
    "number",
    "org",
    "letter_date",
    "deadline_date",
    "status",
    "type",
    "content",
    "jira_link",
    "answer",
    "send_status",
    "comment",
    "owner",
    "contacts",
    "close_date",
    "deleted_at",
)


@dataclass
class FieldChange:
    field: str
    old_value: Optional[str]
    new_value: Optional[str]


def value_to_string(value: Any) -> Optional[str]:
    """Canonical string form used both for comparison and for storage."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def detect_changes(old: Dict[str, Any], new: Dict[str, Any]) -> List[FieldChange]:
    """Compare two snapshots over SYNC_FIELDS and list the differing fields."""
    changes = []
    for field in SYNC_FIELDS:
        old_str = value_to_string(old.get(field))
        new_str = value_to_string(new.get(field))
        if old_str != new_str:
            changes.append(FieldChange(field=field, old_value=old_str, new_value=new_str))
    return changes


def snapshot(letter: Letter) -> Dict[str, Any]:
    return {field: getattr(letter, field) for field in SYNC_FIELDS}


def create_letter(session: Session, store: ChangeRecordStore, **fields) -> Letter:
    """Insert a letter and queue a CREATE record for it."""
    letter = Letter(**fields)
    session.add(letter)
    session.flush()
    store.append(session, letter.id, ChangeAction.CREATE, entity_type=EntityType.LETTER)
    return letter


def update_letter(
    session: Session,
    store: ChangeRecordStore,
    letter: Letter,
    **changes,
) -> List[FieldChange]:
    """
    Apply attribute changes and queue one UPDATE record per changed field.

    A change that moves deleted_at from None to a timestamp is a soft delete
    and is queued as a single DELETE instead.

    Returns:
        The detected field changes (empty if nothing actually changed).
    """
    unknown = set(changes) - set(SYNC_FIELDS)
    if unknown:
        raise ValueError(f"Not a tracked letter field: {sorted(unknown)}")

    before = snapshot(letter)
    for key, value in changes.items():
        setattr(letter, key, value)
    detected = detect_changes(before, snapshot(letter))
    if not detected:
        return []

    letter.updated_at = utcnow()
    session.add(letter)

    if before["deleted_at"] is None and letter.deleted_at is not None:
        store.append(session, letter.id, ChangeAction.DELETE, entity_type=EntityType.LETTER)
    else:
        for change in detected:
            store.append(
                session,
                letter.id,
                ChangeAction.UPDATE,
                field=change.field,
                old_value=change.old_value,
                new_value=change.new_value,
                entity_type=EntityType.LETTER,
            )
    session.flush()
    return detected


def delete_letter(session: Session, store: ChangeRecordStore, letter: Letter) -> None:
    """Soft-delete a letter; the mirror keeps the row with its DELETED_AT stamp."""
    if letter.deleted_at is not None:
        return
    update_letter(session, store, letter, deleted_at=utcnow())
