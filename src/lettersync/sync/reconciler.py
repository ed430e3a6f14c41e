"""
BatchReconciler — drains the change queue in bounded batches.

One pass:
  1. empty queue → return immediately, no SyncRun
  2. strategy configuration check → one FAILED SyncRun, nothing claimed
  3. claim oldest PENDING records (atomic, tagged with a claim token)
  4. skip records superseded by a newer live record for the same field
  5. deliver per entity type; per-entity failures only fail that entity
  6. a run-level failure fails every record still PROCESSING; a
     ConfigurationError instead hands them back to PENDING untouched
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol

from lettersync.models.change import ChangeRecord
from lettersync.models.sync import RunDirection
from lettersync.sync.audit import OperationAuditLog
from lettersync.sync.changes import ChangeRecordStore
from lettersync.sync.errors import ConfigurationError

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 20


class DeliveryStrategy(Protocol):
    def check_configured(self) -> None: ...

    async def deliver(self, entity_ids: Iterable[str]) -> Dict[str, Optional[str]]: ...


@dataclass
class BatchResult:
    processed: int = 0
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(message)


class BatchReconciler:
    def __init__(
        self,
        store: ChangeRecordStore,
        audit: OperationAuditLog,
        strategies: Dict[str, DeliveryStrategy],
    ):
        """
        Args:
            store: ChangeRecordStore holding the queue.
            audit: OperationAuditLog receiving one CHANGES run per non-empty pass.
            strategies: entity_type value → delivery strategy.
        """
        self.store = store
        self.audit = audit
        self.strategies = strategies

    async def process_pending(self, batch_size: int) -> BatchResult:
        """
        Process up to batch_size PENDING change records.

        Never raises for individual record failures; run-level failures are
        reported in the result and in the SyncRun.
        """
        result = BatchResult()
        if self.store.count_pending() == 0:
            return result

        run_id = self.audit.begin(RunDirection.CHANGES)
        try:
            for strategy in self.strategies.values():
                strategy.check_configured()
        except ConfigurationError as exc:
            message = f"Configuration error: {exc}"
            self.audit.fail(run_id, message)
            result.add_error(message)
            logger.error("Change sync not attempted: %s", exc)
            return result

        token, records = self.store.claim(batch_size)
        result.processed = len(records)

        superseded = self.store.find_superseded(records)
        if superseded:
            result.skipped += self.store.mark_skipped(superseded, "Superseded by a newer change")
        survivors = [r for r in records if r.id not in superseded]

        by_type: Dict[str, List[ChangeRecord]] = defaultdict(list)
        for record in survivors:
            by_type[record.entity_type].append(record)

        run_error: Optional[str] = None
        config_error: Optional[str] = None
        for entity_type, group in by_type.items():
            strategy = self.strategies.get(entity_type)
            if strategy is None:
                result.skipped += self.store.mark_skipped(
                    [r.id for r in group], f"No sync strategy for entity type '{entity_type}'"
                )
                continue
            try:
                await self._deliver_group(strategy, group, result)
            except ConfigurationError as exc:
                config_error = f"Configuration error: {exc}"
                logger.error("Change sync for %s rejected by backend: %s", entity_type, exc)
                break
            except Exception as exc:
                run_error = str(exc) or exc.__class__.__name__
                logger.error("Change sync for %s aborted: %s", entity_type, run_error)
                break

        if config_error is not None:
            released = self.store.release_claim(token)
            logger.info("Returned %d change records to the queue", released)
            result.add_error(config_error)
            self.audit.fail(run_id, config_error)
        elif run_error is not None:
            leftover = [r.id for r in records]
            result.failed += self.store.mark_failed(leftover, run_error)
            result.add_error(run_error)
            self.audit.fail(run_id, run_error)
        else:
            self.audit.complete(run_id, rows_affected=result.synced)
        return result

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _deliver_group(
        self, strategy: DeliveryStrategy, group: List[ChangeRecord], result: BatchResult
    ) -> None:
        by_entity: Dict[str, List[int]] = defaultdict(list)
        for record in group:
            by_entity[record.entity_id].append(record.id)

        outcome = await strategy.deliver(list(by_entity))

        for entity_id, ids in by_entity.items():
            if entity_id not in outcome:
                error = "No delivery outcome reported"
            else:
                error = outcome[entity_id]
            if error is None:
                result.synced += self.store.mark_synced(ids)
            else:
                result.failed += self.store.mark_failed(ids, error)
                result.add_error(f"{entity_id}: {error}")
