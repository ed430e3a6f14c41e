"""
Database migrations for lettersync.

Uses ALTER TABLE ADD COLUMN for incremental schema evolution of databases
created before the claim and migration-attempt columns existed. Each
migration is idempotent: columns are only added if absent.

Called automatically from init_db() after create_all() so both fresh
installs and existing DBs are handled without manual steps.
"""
from sqlalchemy import inspect, text

# (table, column, SQL type)
COLUMN_MIGRATIONS = (
    ("changerecord", "claim_token", "VARCHAR"),
    ("changerecord", "claimed_at", "DATETIME"),
    ("trackedfile", "sync_attempts", "INTEGER NOT NULL DEFAULT 0"),
    ("trackedfile", "last_sync_attempt_at", "DATETIME"),
)


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times — checks column existence before altering.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        for table, column, col_type in COLUMN_MIGRATIONS:
            _add_column_if_missing(conn, table, column, col_type)
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> bool:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLModel names it).
        column: Column name to add.
        col_type: SQL type clause, e.g. "INTEGER", "DATETIME".

    Returns:
        True if the column was added.
    """
    existing_columns = {col["name"] for col in inspect(conn).get_columns(table)}
    if column in existing_columns:
        return False
    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
    return True
