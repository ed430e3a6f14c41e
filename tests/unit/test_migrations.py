"""Tests for database migration helpers."""
import pytest
from sqlalchemy import inspect, text
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from lettersync.db.engine import init_db
from lettersync.db.migrations import run_migrations


@pytest.fixture(name="migration_engine")
def migration_engine_fixture():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    SQLModel.metadata.drop_all(engine)


def _columns(engine, table):
    return {col["name"] for col in inspect(engine).get_columns(table)}


class TestRunMigrations:
    def test_fresh_schema_is_idempotent(self, migration_engine):
        init_db(migration_engine)
        run_migrations(migration_engine)
        assert "claim_token" in _columns(migration_engine, "changerecord")

    def test_adds_columns_to_legacy_tables(self, migration_engine):
        with migration_engine.connect() as conn:
            conn.execute(text(
                "CREATE TABLE changerecord (id INTEGER PRIMARY KEY, entity_type VARCHAR, "
                "entity_id VARCHAR, action VARCHAR, field VARCHAR, old_value VARCHAR, "
                "new_value VARCHAR, sync_status VARCHAR, retry_count INTEGER, "
                "sync_error VARCHAR, created_at DATETIME, synced_at DATETIME)"
            ))
            conn.execute(text(
                "CREATE TABLE trackedfile (id INTEGER PRIMARY KEY, letter_id VARCHAR, "
                "name VARCHAR, mime_type VARCHAR, size_bytes INTEGER, storage_provider VARCHAR, "
                "storage_path VARCHAR, status VARCHAR, upload_error VARCHAR, created_at DATETIME)"
            ))
            conn.execute(text("INSERT INTO trackedfile (id, name, storage_path) VALUES (1, 'a', 'x')"))
            conn.commit()

        run_migrations(migration_engine)

        assert {"claim_token", "claimed_at"} <= _columns(migration_engine, "changerecord")
        assert {"sync_attempts", "last_sync_attempt_at"} <= _columns(migration_engine, "trackedfile")
        with migration_engine.connect() as conn:
            attempts = conn.execute(text("SELECT sync_attempts FROM trackedfile")).scalar_one()
        assert attempts == 0
