"""Integration tests for BatchReconciler against the in-memory mirror."""
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlmodel import Session, select

from lettersync.models.change import ChangeAction, ChangeRecord, SyncStatus
from lettersync.models.letter import Letter
from lettersync.models.sync import RunDirection, RunStatus
from lettersync.sync.errors import ConfigurationError, TransientDeliveryError
from lettersync.sync.mirror import COL, TabularMirrorSync
from lettersync.sync.reconciler import MAX_REPORTED_ERRORS, BatchReconciler
from lettersync.sync.tracking import delete_letter, update_letter


@pytest.fixture(name="reconciler")
def reconciler_fixture(engine, store, audit, tabular):
    mirror = TabularMirrorSync(engine, tabular, audit)
    return BatchReconciler(store, audit, {"letter": mirror})


def _update(engine, store, letter_id, **changes):
    with Session(engine) as s:
        letter = s.get(Letter, letter_id)
        update_letter(s, store, letter, **changes)
        s.commit()


def _records(engine):
    with Session(engine) as s:
        return list(s.exec(select(ChangeRecord).order_by(ChangeRecord.id)).all())


class TestProcessPending:
    @pytest.mark.asyncio
    async def test_empty_queue_is_noop(self, reconciler, audit, tabular):
        result = await reconciler.process_pending(50)
        assert result.processed == 0
        assert audit.list() == []
        assert tabular.reads == 0

    @pytest.mark.asyncio
    async def test_same_field_twice_then_other_field(
        self, reconciler, engine, store, tabular, make_letter
    ):
        letter = make_letter()
        _update(engine, store, letter.id, status="ACCEPTED")
        _update(engine, store, letter.id, status="DONE")
        _update(engine, store, letter.id, owner="bob")

        result = await reconciler.process_pending(50)

        assert (result.processed, result.synced, result.skipped, result.failed) == (3, 2, 1, 0)
        first, second, third = _records(engine)
        assert first.sync_status == SyncStatus.SKIPPED.value
        assert second.sync_status == SyncStatus.SYNCED.value
        assert third.sync_status == SyncStatus.SYNCED.value

        [row] = tabular.rows[1:]
        assert row[COL["STATUS"]] == "Done"
        assert row[COL["OWNER"]] == "bob"
        assert tabular.reads == 1
        assert tabular.writes == 1

    @pytest.mark.asyncio
    async def test_synced_at_set_iff_synced(self, reconciler, engine, store, make_letter):
        letter = make_letter()
        _update(engine, store, letter.id, status="ACCEPTED")
        _update(engine, store, letter.id, status="DONE")
        await reconciler.process_pending(50)
        for record in _records(engine):
            assert (record.synced_at is not None) == (record.sync_status == SyncStatus.SYNCED.value)

    @pytest.mark.asyncio
    async def test_batch_size_bounds_claim(self, reconciler, engine, store, make_letter):
        letter = make_letter()
        for owner in ("a", "b", "c"):
            _update(engine, store, letter.id, owner=owner, comment=owner)
        result = await reconciler.process_pending(2)
        assert result.processed == 2
        assert store.count_pending() == 4

    @pytest.mark.asyncio
    async def test_records_changes_run(self, reconciler, engine, store, audit, make_letter):
        letter = make_letter()
        _update(engine, store, letter.id, status="DONE")
        await reconciler.process_pending(50)
        [run] = audit.list()
        assert run.direction == RunDirection.CHANGES.value
        assert run.status == RunStatus.COMPLETED.value
        assert run.rows_affected == 1

    @pytest.mark.asyncio
    async def test_soft_delete_keeps_row_with_stamp(self, reconciler, engine, store, tabular, make_letter):
        letter = make_letter()
        with Session(engine) as s:
            delete_letter(s, store, s.get(Letter, letter.id))
            s.commit()
        await reconciler.process_pending(50)
        [row] = tabular.rows[1:]
        assert row[COL["DELETED_AT"]] != ""

    @pytest.mark.asyncio
    async def test_missing_letter_row_removed(self, reconciler, engine, store, tabular, make_letter):
        letter = make_letter()
        _update(engine, store, letter.id, status="DONE")
        await reconciler.process_pending(50)
        assert len(tabular.rows) == 2

        with Session(engine) as s:
            s.delete(s.get(Letter, letter.id))
            store.append(s, letter.id, ChangeAction.DELETE)
            s.commit()
        await reconciler.process_pending(50)
        assert tabular.rows[1:] == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_configuration_error_touches_nothing(
        self, reconciler, engine, store, audit, tabular, make_letter
    ):
        letter = make_letter()
        _update(engine, store, letter.id, status="DONE")
        tabular.config_error = ConfigurationError("no credentials")

        result = await reconciler.process_pending(50)

        assert result.processed == 0
        assert len(result.errors) == 1
        [record] = _records(engine)
        assert record.sync_status == SyncStatus.PENDING.value
        assert record.claim_token is None
        [run] = audit.list()
        assert run.status == RunStatus.FAILED.value
        assert tabular.reads == 0

    @pytest.mark.asyncio
    async def test_rejected_credentials_during_delivery_spend_no_retries(
        self, reconciler, engine, store, audit, tabular, make_letter
    ):
        letter = make_letter()
        _update(engine, store, letter.id, status="DONE")
        tabular.read_error = ConfigurationError("Sheets read rejected (403)")

        for _ in range(6):
            store.requeue_failed(max_retries=5)
            result = await reconciler.process_pending(50)
            assert result.failed == 0
            assert result.errors == ["Configuration error: Sheets read rejected (403)"]

        [record] = _records(engine)
        assert record.sync_status == SyncStatus.PENDING.value
        assert record.retry_count == 0
        assert record.claim_token is None
        runs = audit.list()
        assert len(runs) == 6
        assert all(run.status == RunStatus.FAILED.value for run in runs)

        tabular.read_error = None
        result = await reconciler.process_pending(50)
        assert result.synced == 1

    @pytest.mark.asyncio
    async def test_read_failure_fails_whole_batch(
        self, reconciler, engine, store, audit, tabular, make_letter
    ):
        first = make_letter("L-1")
        second = make_letter("L-2")
        _update(engine, store, first.id, status="DONE")
        _update(engine, store, second.id, status="DONE")
        tabular.read_error = TransientDeliveryError("Sheets read timed out")

        result = await reconciler.process_pending(50)

        assert result.failed == 2
        assert result.errors == ["Sheets read timed out"]
        for record in _records(engine):
            assert record.sync_status == SyncStatus.FAILED.value
            assert record.retry_count == 1
            assert record.synced_at is None
        [run] = audit.list()
        assert run.status == RunStatus.FAILED.value
        assert run.error == "Sheets read timed out"

    @pytest.mark.asyncio
    async def test_failed_records_retry_after_requeue(self, reconciler, engine, store, tabular, make_letter):
        letter = make_letter()
        _update(engine, store, letter.id, status="DONE")
        tabular.write_error = TransientDeliveryError("503")
        await reconciler.process_pending(50)

        tabular.write_error = None
        store.requeue_failed(max_retries=5)
        result = await reconciler.process_pending(50)

        assert result.synced == 1
        [record] = _records(engine)
        assert record.sync_status == SyncStatus.SYNCED.value
        assert record.retry_count == 1

    @pytest.mark.asyncio
    async def test_per_entity_failure_is_isolated(self, engine, store, audit):
        strategy = MagicMock()
        strategy.deliver = AsyncMock(return_value={"a": None, "b": "row rejected"})
        reconciler = BatchReconciler(store, audit, {"letter": strategy})
        with Session(engine) as s:
            store.append(s, "a", ChangeAction.CREATE)
            store.append(s, "b", ChangeAction.CREATE)
            s.commit()

        result = await reconciler.process_pending(50)

        assert (result.synced, result.failed) == (1, 1)
        assert result.errors == ["b: row rejected"]
        statuses = {r.entity_id: r.sync_status for r in _records(engine)}
        assert statuses == {"a": SyncStatus.SYNCED.value, "b": SyncStatus.FAILED.value}

    @pytest.mark.asyncio
    async def test_unknown_entity_type_skipped(self, reconciler, engine, store):
        with Session(engine) as s:
            store.append(s, "req-1", ChangeAction.CREATE, entity_type="request")
            s.commit()
        result = await reconciler.process_pending(50)
        assert result.skipped == 1
        [record] = _records(engine)
        assert record.sync_status == SyncStatus.SKIPPED.value
        assert "request" in record.sync_error

    @pytest.mark.asyncio
    async def test_error_list_is_bounded(self, engine, store, audit):
        ids = [f"e{i}" for i in range(MAX_REPORTED_ERRORS + 5)]
        strategy = MagicMock()
        strategy.deliver = AsyncMock(return_value={i: "nope" for i in ids})
        reconciler = BatchReconciler(store, audit, {"letter": strategy})
        with Session(engine) as s:
            for entity_id in ids:
                store.append(s, entity_id, ChangeAction.CREATE)
            s.commit()

        result = await reconciler.process_pending(100)

        assert result.failed == len(ids)
        assert len(result.errors) == MAX_REPORTED_ERRORS
