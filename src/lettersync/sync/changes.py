"""
ChangeRecordStore — durable queue of pending mutations.

Status transitions:

    PENDING --claim--> PROCESSING --+--> SYNCED   (terminal)
       ^                            +--> SKIPPED  (terminal, superseded)
       |                            +--> FAILED   (retry_count += 1)
       +------- requeue_failed -----------+  while retry_count < ceiling

release_claim() hands an abandoned claim back to PENDING without touching
retry_count.

Every transition out of PENDING/PROCESSING is a conditional UPDATE on the
current status, so a record held by one claim cannot be finalized by another.
append() is the only insert path and purge() the only delete path.
"""
import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from sqlalchemy import delete, func, update
from sqlmodel import Session, select

from lettersync.models.change import ChangeAction, ChangeRecord, EntityType, SyncStatus
from lettersync.models.utils import generate_uuid, utcnow

logger = logging.getLogger(__name__)

PENDING = SyncStatus.PENDING.value
PROCESSING = SyncStatus.PROCESSING.value
SYNCED = SyncStatus.SYNCED.value
FAILED = SyncStatus.FAILED.value
SKIPPED = SyncStatus.SKIPPED.value


class ChangeRecordStore:
    """Persistence and state transitions for ChangeRecord rows."""

    def __init__(self, engine):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
        """
        self.engine = engine

    # ─── Capture ──────────────────────────────────────────────────────────────

    def append(
        self,
        session: Session,
        entity_id: str,
        action: Union[ChangeAction, str],
        field: Optional[str] = None,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
        entity_type: Union[EntityType, str] = EntityType.LETTER,
    ) -> ChangeRecord:
        """
        Add a PENDING record to the caller's session.

        Does not commit: the caller commits the entity mutation and the record
        together, so a failed append rolls the mutation back with it.

        Raises:
            Any storage-layer error from flush().
        """
        record = ChangeRecord(
            entity_type=EntityType(entity_type).value,
            entity_id=entity_id,
            action=ChangeAction(action).value,
            field=field,
            old_value=old_value,
            new_value=new_value,
            sync_status=PENDING,
        )
        session.add(record)
        session.flush()
        return record

    # ─── Operator inspection ──────────────────────────────────────────────────

    def query(
        self,
        *,
        status: Optional[Union[SyncStatus, str]] = None,
        entity_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ChangeRecord], int]:
        """Return (records newest-first, total matching count)."""
        stmt = select(ChangeRecord)
        count_stmt = select(func.count()).select_from(ChangeRecord)
        if status is not None:
            stmt = stmt.where(ChangeRecord.sync_status == SyncStatus(status).value)
            count_stmt = count_stmt.where(ChangeRecord.sync_status == SyncStatus(status).value)
        if entity_id is not None:
            stmt = stmt.where(ChangeRecord.entity_id == entity_id)
            count_stmt = count_stmt.where(ChangeRecord.entity_id == entity_id)

        stmt = (
            stmt.order_by(ChangeRecord.created_at.desc(), ChangeRecord.id.desc())
            .offset(offset)
            .limit(limit)
        )
        with Session(self.engine) as s:
            records = list(s.exec(stmt).all())
            total = s.exec(count_stmt).one()
        return records, total

    def stats(self) -> Dict[str, object]:
        """Queue depth per status, total, and the most recent synced_at."""
        counts = {status.value.lower(): 0 for status in SyncStatus}
        with Session(self.engine) as s:
            rows = s.exec(
                select(ChangeRecord.sync_status, func.count()).group_by(
                    ChangeRecord.sync_status
                )
            ).all()
            last_synced_at = s.exec(select(func.max(ChangeRecord.synced_at))).one()
        for status, count in rows:
            counts[status.lower()] = count
        return {**counts, "total": sum(counts.values()), "last_synced_at": last_synced_at}

    def count_pending(self) -> int:
        with Session(self.engine) as s:
            return s.exec(
                select(func.count())
                .select_from(ChangeRecord)
                .where(ChangeRecord.sync_status == PENDING)
            ).one()

    # ─── Retention ────────────────────────────────────────────────────────────

    def purge(self, older_than: timedelta) -> int:
        """
        Delete SYNCED records whose synced_at predates now - older_than.

        Records in any other status are never deleted.

        Returns:
            Number of rows deleted.
        """
        cutoff = utcnow() - older_than
        stmt = delete(ChangeRecord).where(
            ChangeRecord.sync_status == SYNCED,
            ChangeRecord.synced_at.is_not(None),
            ChangeRecord.synced_at < cutoff,
        )
        with Session(self.engine) as s:
            result = s.connection().execute(stmt)
            s.commit()
        logger.info("Purged %d synced change records older than %s", result.rowcount, cutoff)
        return result.rowcount

    # ─── Batch lifecycle ──────────────────────────────────────────────────────

    def claim(self, batch_size: int) -> Tuple[str, List[ChangeRecord]]:
        """
        Atomically move up to batch_size PENDING records (oldest first) to PROCESSING.

        The move is one conditional UPDATE tagged with a fresh claim token, so
        two callers can never claim the same row.

        Returns:
            (claim_token, claimed records oldest-first)
        """
        token = generate_uuid()
        oldest = (
            select(ChangeRecord.id)
            .where(ChangeRecord.sync_status == PENDING)
            .order_by(ChangeRecord.created_at, ChangeRecord.id)
            .limit(batch_size)
        )
        stmt = (
            update(ChangeRecord)
            .where(ChangeRecord.id.in_(oldest), ChangeRecord.sync_status == PENDING)
            .values(sync_status=PROCESSING, claim_token=token, claimed_at=utcnow())
        )
        with Session(self.engine) as s:
            s.connection().execute(stmt)
            s.commit()
            records = s.exec(
                select(ChangeRecord)
                .where(
                    ChangeRecord.claim_token == token,
                    ChangeRecord.sync_status == PROCESSING,
                )
                .order_by(ChangeRecord.created_at, ChangeRecord.id)
            ).all()
        return token, list(records)

    def find_superseded(self, records: Iterable[ChangeRecord]) -> Set[int]:
        """
        Ids of records that have a newer live (PENDING or PROCESSING) record
        for the same (entity_type, entity_id, field).
        """
        records = list(records)
        if not records:
            return set()
        entity_ids = {r.entity_id for r in records}
        with Session(self.engine) as s:
            live = s.exec(
                select(
                    ChangeRecord.id,
                    ChangeRecord.entity_type,
                    ChangeRecord.entity_id,
                    ChangeRecord.field,
                ).where(
                    ChangeRecord.entity_id.in_(entity_ids),
                    ChangeRecord.sync_status.in_([PENDING, PROCESSING]),
                )
            ).all()

        latest: Dict[Tuple[str, str, Optional[str]], int] = {}
        for record_id, entity_type, entity_id, field in live:
            key = (entity_type, entity_id, field)
            latest[key] = max(latest.get(key, 0), record_id)

        return {
            r.id
            for r in records
            if latest.get((r.entity_type, r.entity_id, r.field), r.id) > r.id
        }

    def mark_synced(self, ids: Iterable[int]) -> int:
        return self._finalize(
            ids, sync_status=SYNCED, synced_at=utcnow(), sync_error=None
        )

    def mark_skipped(self, ids: Iterable[int], note: Optional[str] = None) -> int:
        return self._finalize(ids, sync_status=SKIPPED, sync_error=note)

    def mark_failed(self, ids: Iterable[int], error: str) -> int:
        return self._finalize(
            ids,
            sync_status=FAILED,
            sync_error=error,
            retry_count=ChangeRecord.retry_count + 1,
        )

    def requeue_failed(self, max_retries: int) -> int:
        """
        Move FAILED records below the retry ceiling back to PENDING.

        Records at or above the ceiling stay FAILED for an operator to inspect.
        """
        stmt = (
            update(ChangeRecord)
            .where(
                ChangeRecord.sync_status == FAILED,
                ChangeRecord.retry_count < max_retries,
            )
            .values(sync_status=PENDING, claim_token=None, claimed_at=None)
        )
        with Session(self.engine) as s:
            result = s.connection().execute(stmt)
            s.commit()
        if result.rowcount:
            logger.info("Re-enqueued %d failed change records", result.rowcount)
        return result.rowcount

    def release_claim(self, token: str) -> int:
        """
        Return this claim's still-PROCESSING records to PENDING.

        retry_count is left alone: the records were never attempted.
        """
        stmt = (
            update(ChangeRecord)
            .where(
                ChangeRecord.claim_token == token,
                ChangeRecord.sync_status == PROCESSING,
            )
            .values(sync_status=PENDING, claim_token=None, claimed_at=None)
        )
        with Session(self.engine) as s:
            result = s.connection().execute(stmt)
            s.commit()
        return result.rowcount

    def release_orphaned_claims(self) -> int:
        """
        Return PROCESSING records to PENDING.

        Only safe at process start: with a single scheduler instance, nothing
        can legitimately hold a claim before the first pass runs.
        """
        stmt = (
            update(ChangeRecord)
            .where(ChangeRecord.sync_status == PROCESSING)
            .values(sync_status=PENDING, claim_token=None, claimed_at=None)
        )
        with Session(self.engine) as s:
            result = s.connection().execute(stmt)
            s.commit()
        if result.rowcount:
            logger.warning("Released %d orphaned PROCESSING change records", result.rowcount)
        return result.rowcount

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _finalize(self, ids: Iterable[int], **values) -> int:
        ids = list(ids)
        if not ids:
            return 0
        stmt = (
            update(ChangeRecord)
            .where(ChangeRecord.id.in_(ids), ChangeRecord.sync_status == PROCESSING)
            .values(**values)
        )
        with Session(self.engine) as s:
            result = s.connection().execute(stmt)
            s.commit()
        return result.rowcount
