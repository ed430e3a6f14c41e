"""
OperationAuditLog — append-only history of sync runs.

Each run is created IN_PROGRESS and receives exactly one terminal update.
Nothing in the reconciliation path reads this table back.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional, Union

from sqlmodel import Session, select

from lettersync.models.sync import RunDirection, RunStatus, SyncRun
from lettersync.models.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RunHandle:
    """Mutable outcome filled in by the body of a tracked run."""

    run_id: int
    rows_affected: int = 0
    note: Optional[str] = None


class OperationAuditLog:
    def __init__(self, engine):
        self.engine = engine

    def begin(self, direction: Union[RunDirection, str]) -> int:
        run = SyncRun(direction=RunDirection(direction).value, started_at=utcnow())
        with Session(self.engine) as s:
            s.add(run)
            s.commit()
            s.refresh(run)
        return run.id

    def complete(
        self, run_id: int, rows_affected: int = 0, note: Optional[str] = None
    ) -> SyncRun:
        """Finalize a run as COMPLETED. note carries non-fatal detail (e.g. conflicts)."""
        return self._finish(
            run_id, status=RunStatus.COMPLETED, rows_affected=rows_affected, error=note
        )

    def fail(self, run_id: int, error: str) -> SyncRun:
        return self._finish(run_id, status=RunStatus.FAILED, error=error)

    def list(self, limit: int = 20) -> List[SyncRun]:
        """Most recent runs first."""
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncRun)
                    .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
                    .limit(limit)
                ).all()
            )

    @contextmanager
    def track(self, direction: Union[RunDirection, str]) -> Iterator[RunHandle]:
        """
        Wrap a run: begin on entry, complete on normal exit, fail on exception.

        The exception is re-raised after the FAILED row is written.
        """
        handle = RunHandle(run_id=self.begin(direction))
        try:
            yield handle
        except Exception as exc:
            self.fail(handle.run_id, str(exc) or exc.__class__.__name__)
            raise
        self.complete(handle.run_id, handle.rows_affected, handle.note)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _finish(
        self,
        run_id: int,
        *,
        status: RunStatus,
        rows_affected: int = 0,
        error: Optional[str] = None,
    ) -> SyncRun:
        with Session(self.engine) as s:
            run = s.get(SyncRun, run_id)
            if run is None:
                raise LookupError(f"SyncRun {run_id} does not exist")
            if run.status != RunStatus.IN_PROGRESS.value:
                raise ValueError(f"SyncRun {run_id} is already {run.status}")
            run.status = status.value
            run.rows_affected = rows_affected
            run.error = error
            run.finished_at = utcnow()
            s.add(run)
            s.commit()
            s.refresh(run)
        if status is RunStatus.FAILED:
            logger.warning("Sync run %s (%s) failed: %s", run_id, run.direction, error)
        return run
