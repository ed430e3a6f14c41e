"""SQLModel engine singleton and session dependency."""
from typing import Generator

from sqlmodel import Session, SQLModel, create_engine

from lettersync.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        _engine = create_engine(settings.database_url, connect_args=connect_args)
        init_db(_engine)
    return _engine


def init_db(engine) -> None:
    """Create tables and apply column migrations. Idempotent."""
    # Import all models so metadata is populated before create_all
    from lettersync.models.change import ChangeRecord  # noqa
    from lettersync.models.file import TrackedFile  # noqa
    from lettersync.models.letter import Letter  # noqa
    from lettersync.models.sync import SyncRun  # noqa
    from lettersync.db.migrations import run_migrations

    SQLModel.metadata.create_all(engine)
    run_migrations(engine)


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session."""
    with Session(get_engine()) as session:
        yield session
