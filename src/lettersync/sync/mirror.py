"""
TabularMirrorSync — full-table strategy against the spreadsheet mirror.

Two independently triggered paths share this module:

  * run(EXPORT_LOCAL_TO_REMOTE) / run(IMPORT_REMOTE_TO_LOCAL): whole-table
    export or import, each wrapped in one SyncRun.
  * deliver(entity_ids): used by the BatchReconciler to push the current
    state of a few letters (read table once, patch rows, write table once).

The backend only offers read_all / write_all, so both paths rewrite the whole
table. They share one lock and never interleave within a process. Export
never reads the table and import never writes it.

Sheet layout: row 1 is the header, one letter per following row, columns in
COLUMNS order. FILE lists the letter's attachment names and is never read back.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from sqlmodel import Session, select

from lettersync.models.file import TrackedFile
from lettersync.models.letter import Letter, LetterStatus
from lettersync.models.sync import RunDirection
from lettersync.models.utils import as_utc, utcnow
from lettersync.sync.audit import OperationAuditLog
from lettersync.sync.errors import ConfigurationError
from lettersync.sync.tracking import value_to_string

logger = logging.getLogger(__name__)


class TabularBackend(Protocol):
    def check_configured(self) -> None: ...

    async def read_all(self) -> List[List[str]]: ...

    async def write_all(self, rows: List[List[str]]) -> None: ...


class MirrorDirection(str, Enum):
    """Named by effect so the two symmetric operations cannot be confused."""

    EXPORT_LOCAL_TO_REMOTE = "export_local_to_remote"
    IMPORT_REMOTE_TO_LOCAL = "import_remote_to_local"


_RUN_DIRECTION = {
    MirrorDirection.EXPORT_LOCAL_TO_REMOTE: RunDirection.EXPORT,
    MirrorDirection.IMPORT_REMOTE_TO_LOCAL: RunDirection.IMPORT,
}


@dataclass
class MirrorResult:
    success: bool
    rows_affected: int = 0
    conflicts: List[int] = field(default_factory=list)  # sheet row numbers

    @property
    def imported(self) -> int:
        return self.rows_affected


# ─── Row codec ────────────────────────────────────────────────────────────────

COLUMNS = (
    "NUM",
    "ORG",
    "DATE",
    "DEADLINE_DATE",
    "STATUS",
    "FILE",
    "TYPE",
    "CONTENT",
    "JIRA_LINK",
    "ANSWER",
    "SEND_STATUS",
    "COMMENT",
    "OWNER",
    "CONTACTS",
    "CLOSE_DATE",
    "ID",
    "UPDATED_AT",
    "DELETED_AT",
)
HEADER = list(COLUMNS)
COL = {name: idx for idx, name in enumerate(COLUMNS)}

_REQUIRED_TEXT = {"NUM": "number", "ORG": "org"}
_OPTIONAL_TEXT = {
    "TYPE": "type",
    "CONTENT": "content",
    "JIRA_LINK": "jira_link",
    "ANSWER": "answer",
    "SEND_STATUS": "send_status",
    "COMMENT": "comment",
    "OWNER": "owner",
    "CONTACTS": "contacts",
}
_DATES = {"DATE": "letter_date", "DEADLINE_DATE": "deadline_date", "CLOSE_DATE": "close_date"}

STATUS_LABELS = {
    LetterStatus.NOT_REVIEWED.value: "Not reviewed",
    LetterStatus.ACCEPTED.value: "Accepted",
    LetterStatus.IN_PROGRESS.value: "In progress",
    LetterStatus.CLARIFICATION.value: "Clarification",
    LetterStatus.READY.value: "Ready",
    LetterStatus.DONE.value: "Done",
}
STATUS_FROM_LABEL = {
    **{label.lower(): code for code, label in STATUS_LABELS.items()},
    **{code.lower(): code for code in STATUS_LABELS},
}

_DATE_FORMATS = ("%d.%m.%Y", "%d/%m/%Y", "%Y-%m-%d")


def format_sheet_date(value: Optional[date]) -> str:
    return value.strftime("%d.%m.%Y") if value else ""


def format_sheet_datetime(value: Optional[datetime]) -> str:
    return as_utc(value).isoformat() if value else ""


def parse_sheet_date(value: Any) -> Optional[date]:
    """Accepts DD.MM.YYYY, DD/MM/YYYY, YYYY-MM-DD and ISO datetimes."""
    text = str(value or "").strip()
    if not text:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    parsed = parse_sheet_datetime(text)
    return parsed.date() if parsed else None


def parse_sheet_datetime(value: Any) -> Optional[datetime]:
    """ISO datetime as aware UTC; naive text counts as UTC. Date-only text means midnight."""
    text = str(value or "").strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
            except ValueError:
                continue
        return None
    return as_utc(parsed)


def parse_status(value: Any) -> str:
    label = str(value or "").strip().lower()
    return STATUS_FROM_LABEL.get(label, LetterStatus.NOT_REVIEWED.value)


def build_row(letter: Letter, files: Sequence[str] = ()) -> List[str]:
    """One sheet row for a letter, in COLUMNS order. FILE lists attachment names, one per line."""
    row = [""] * len(COLUMNS)
    for column, attr in {**_REQUIRED_TEXT, **_OPTIONAL_TEXT}.items():
        row[COL[column]] = getattr(letter, attr) or ""
    for column, attr in _DATES.items():
        row[COL[column]] = format_sheet_date(getattr(letter, attr))
    row[COL["STATUS"]] = STATUS_LABELS.get(letter.status, STATUS_LABELS["NOT_REVIEWED"])
    row[COL["FILE"]] = "\n".join(files)
    row[COL["ID"]] = letter.id
    row[COL["UPDATED_AT"]] = format_sheet_datetime(letter.updated_at)
    row[COL["DELETED_AT"]] = format_sheet_datetime(letter.deleted_at)
    return row


def normalize_row(row: Iterable[Any]) -> List[str]:
    """Pad/trim to the column count and strip every cell."""
    cells = [str(cell if cell is not None else "").strip() for cell in row]
    cells = cells[: len(COLUMNS)]
    return cells + [""] * (len(COLUMNS) - len(cells))


@dataclass
class ParsedRow:
    letter_id: Optional[str]
    updated_at: Optional[datetime]
    deleted_at: Optional[datetime]
    fields: Dict[str, Any]


def parse_row(row: Iterable[Any]) -> ParsedRow:
    cells = normalize_row(row)
    fields: Dict[str, Any] = {}
    for column, attr in _REQUIRED_TEXT.items():
        fields[attr] = cells[COL[column]]
    for column, attr in _OPTIONAL_TEXT.items():
        fields[attr] = cells[COL[column]] or None
    for column, attr in _DATES.items():
        fields[attr] = parse_sheet_date(cells[COL[column]])
    fields["status"] = parse_status(cells[COL["STATUS"]])
    return ParsedRow(
        letter_id=cells[COL["ID"]] or None,
        updated_at=parse_sheet_datetime(cells[COL["UPDATED_AT"]]),
        deleted_at=parse_sheet_datetime(cells[COL["DELETED_AT"]]),
        fields=fields,
    )


def _differing_fields(letter: Letter, incoming: Dict[str, Any]) -> Dict[str, Any]:
    # Compare through the codec so "" vs None and date spellings don't count.
    current = parse_row(build_row(letter)).fields
    return {
        key: value
        for key, value in incoming.items()
        if value_to_string(value) != value_to_string(current[key])
    }


def _attachment_names(session: Session, letter_ids: Iterable[str]) -> Dict[str, List[str]]:
    """letter id -> names of its tracked files, oldest first."""
    letter_ids = list(letter_ids)
    names: Dict[str, List[str]] = {}
    if not letter_ids:
        return names
    rows = session.exec(
        select(TrackedFile.letter_id, TrackedFile.name)
        .where(TrackedFile.letter_id.in_(letter_ids))
        .order_by(TrackedFile.created_at, TrackedFile.id)
    ).all()
    for letter_id, name in rows:
        names.setdefault(letter_id, []).append(name)
    return names


# ─── Strategy ─────────────────────────────────────────────────────────────────


class TabularMirrorSync:
    """Full-table export/import plus per-entity delivery for the change queue."""

    def __init__(self, engine, backend: Optional[TabularBackend], audit: OperationAuditLog):
        """
        Args:
            engine: SQLAlchemy engine.
            backend: TabularBackend (GoogleSheetsMirror, or a fake in tests).
                None means the mirror is not configured.
            audit: OperationAuditLog receiving one SyncRun per run().
        """
        self.engine = engine
        self.backend = backend
        self.audit = audit
        self._lock = asyncio.Lock()

    def check_configured(self) -> None:
        """Raises ConfigurationError when no usable backend is available."""
        if self.backend is None:
            raise ConfigurationError("Tabular mirror backend is not configured")
        self.backend.check_configured()

    async def run(self, direction: MirrorDirection) -> MirrorResult:
        """
        Execute one audited mirror run in the given direction.

        Raises:
            Whatever the underlying operation raised, after the SyncRun is
            finalized as FAILED.
        """
        direction = MirrorDirection(direction)
        async with self._lock:
            with self.audit.track(_RUN_DIRECTION[direction]) as run:
                if direction is MirrorDirection.EXPORT_LOCAL_TO_REMOTE:
                    result = await self.export_all()
                else:
                    result = await self.import_all()
                run.rows_affected = result.rows_affected
                if result.conflicts:
                    run.note = "Conflicts in rows: " + ", ".join(map(str, result.conflicts))
        logger.info("Mirror %s finished: %d rows", direction.value, result.rows_affected)
        return result

    async def export_all(self) -> MirrorResult:
        """Read every live local letter and overwrite the remote table. Never reads remote."""
        self.check_configured()
        with Session(self.engine) as s:
            letters = s.exec(
                select(Letter)
                .where(Letter.deleted_at.is_(None))
                .order_by(Letter.created_at, Letter.id)
            ).all()
            letter_ids = [letter.id for letter in letters]
            files = _attachment_names(s, letter_ids)
            rows = [HEADER] + [build_row(letter, files.get(letter.id, ())) for letter in letters]

        await self.backend.write_all(rows)

        synced_at = utcnow()
        with Session(self.engine) as s:
            for offset, letter_id in enumerate(letter_ids):
                letter = s.get(Letter, letter_id)
                if letter is None:
                    continue
                letter.sheet_row_num = offset + 2
                letter.last_synced_at = synced_at
                s.add(letter)
            s.commit()
        return MirrorResult(success=True, rows_affected=len(letter_ids))

    async def import_all(self) -> MirrorResult:
        """
        Read the remote table and apply it over local letters. Never writes remote.

        Matching is by ID column, then by letter number. Local edits made since
        the last sync and newer than the row's UPDATED_AT stamp win; those rows
        are reported as conflicts and left untouched locally.
        """
        self.check_configured()
        rows = await self.backend.read_all()

        imported = 0
        conflicts: List[int] = []
        now = utcnow()
        with Session(self.engine) as s:
            for offset, raw in enumerate(rows[1:]):
                row_num = offset + 2
                parsed = parse_row(raw)
                number = parsed.fields["number"]
                if not parsed.letter_id and not number:
                    continue

                existing = s.get(Letter, parsed.letter_id) if parsed.letter_id else None
                if existing is None and number:
                    existing = s.exec(
                        select(Letter).where(
                            Letter.number == number, Letter.deleted_at.is_(None)
                        )
                    ).first()

                if existing is None:
                    if not number:
                        continue
                    s.add(self._letter_from_row(parsed, row_num, now))
                    imported += 1
                    continue

                if parsed.deleted_at and existing.deleted_at is None:
                    existing.deleted_at = parsed.deleted_at
                    existing.updated_at = existing.last_synced_at = now
                    existing.sheet_row_num = row_num
                    s.add(existing)
                    imported += 1
                    continue
                if existing.deleted_at is not None:
                    continue

                incoming = dict(parsed.fields)
                if incoming["letter_date"] is None:
                    incoming.pop("letter_date")
                if not incoming["number"]:
                    incoming.pop("number")
                changed = _differing_fields(existing, incoming)

                if changed:
                    local_dirty = (
                        existing.last_synced_at is not None
                        and existing.updated_at > existing.last_synced_at
                    )
                    sheet_newer = (
                        parsed.updated_at is not None
                        and parsed.updated_at > existing.updated_at
                    )
                    if local_dirty and not sheet_newer:
                        conflicts.append(row_num)
                    else:
                        for key, value in changed.items():
                            setattr(existing, key, value)
                        existing.updated_at = existing.last_synced_at = now
                        imported += 1

                if existing.sheet_row_num != row_num:
                    existing.sheet_row_num = row_num
                s.add(existing)
            s.commit()

        if conflicts:
            logger.warning("Import kept local values for conflicting rows %s", conflicts)
        return MirrorResult(success=True, rows_affected=imported, conflicts=conflicts)

    async def deliver(self, entity_ids: Iterable[str]) -> Dict[str, Optional[str]]:
        """
        Push the current state of the given letters into the table.

        Letters missing locally have their row removed; soft-deleted letters keep
        their row with DELETED_AT filled in.

        Returns:
            {entity_id: None on success, or an error message}.

        Raises:
            ConfigurationError / TransientDeliveryError from the backend; these
            abort the whole delivery.
        """
        async with self._lock:
            return await self._deliver(list(dict.fromkeys(entity_ids)))

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _deliver(self, entity_ids: List[str]) -> Dict[str, Optional[str]]:
        self.check_configured()
        rows = await self.backend.read_all()

        body: List[Optional[List[str]]] = [normalize_row(r) for r in rows[1:]]
        index = {row[COL["ID"]]: i for i, row in enumerate(body) if row[COL["ID"]]}
        outcome: Dict[str, Optional[str]] = {}
        placed = set()

        with Session(self.engine) as s:
            files = _attachment_names(s, entity_ids)
            for entity_id in entity_ids:
                try:
                    letter = s.get(Letter, entity_id)
                    if letter is None:
                        if entity_id in index:
                            body[index[entity_id]] = None
                    else:
                        row = build_row(letter, files.get(entity_id, ()))
                        if entity_id in index:
                            body[index[entity_id]] = row
                        else:
                            body.append(row)
                            index[entity_id] = len(body) - 1
                        placed.add(entity_id)
                    outcome[entity_id] = None
                except Exception as exc:
                    logger.warning("Could not build mirror row for %s: %s", entity_id, exc)
                    outcome[entity_id] = str(exc) or exc.__class__.__name__
                    placed.discard(entity_id)

        final = [row for row in body if row is not None]
        await self.backend.write_all([HEADER] + final)

        synced_at = utcnow()
        with Session(self.engine) as s:
            for offset, row in enumerate(final):
                letter_id = row[COL["ID"]]
                if letter_id not in placed:
                    continue
                letter = s.get(Letter, letter_id)
                if letter is None:
                    continue
                letter.sheet_row_num = offset + 2
                letter.last_synced_at = synced_at
                s.add(letter)
            s.commit()
        return outcome

    @staticmethod
    def _letter_from_row(parsed: ParsedRow, row_num: int, now: datetime) -> Letter:
        fields = dict(parsed.fields)
        if fields["letter_date"] is None:
            fields["letter_date"] = now.date()
        letter = Letter(
            **fields,
            deleted_at=parsed.deleted_at,
            sheet_row_num=row_num,
            created_at=now,
            updated_at=now,
            last_synced_at=now,
        )
        if parsed.letter_id:
            letter.id = parsed.letter_id
        return letter
