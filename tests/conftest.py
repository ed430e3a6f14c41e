"""Shared test fixtures."""
from datetime import date
from typing import AsyncIterator, Dict, Generator, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from lettersync.config import Settings
from lettersync.db.engine import init_db
from lettersync.models.letter import Letter
from lettersync.sync.audit import OperationAuditLog
from lettersync.sync.changes import ChangeRecordStore


class FakeTabularBackend:
    """In-memory spreadsheet tab. Counts reads/writes; failures are injectable."""

    def __init__(self, rows: Optional[List[List[str]]] = None):
        self.rows = [list(r) for r in rows or []]
        self.reads = 0
        self.writes = 0
        self.read_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None
        self.config_error: Optional[Exception] = None

    def check_configured(self) -> None:
        if self.config_error is not None:
            raise self.config_error

    async def read_all(self) -> List[List[str]]:
        self.reads += 1
        if self.read_error is not None:
            raise self.read_error
        return [list(r) for r in self.rows]

    async def write_all(self, rows: List[List[str]]) -> None:
        self.writes += 1
        if self.write_error is not None:
            raise self.write_error
        self.rows = [list(r) for r in rows]


class FakeRemoteFileBackend:
    """In-memory object store keyed by generated locators."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.upload_error: Optional[Exception] = None
        self.config_error: Optional[Exception] = None
        self.deleted: List[str] = []
        self.folders: Dict[str, Optional[str]] = {}
        self.uploads = 0

    def check_configured(self) -> None:
        if self.config_error is not None:
            raise self.config_error

    async def upload(
        self, data: bytes, name: str, mime_type: str, folder: Optional[str] = None
    ) -> str:
        self.uploads += 1
        if self.upload_error is not None:
            raise self.upload_error
        locator = f"remote-{self.uploads}"
        self.objects[locator] = data
        self.folders[locator] = folder
        return locator

    async def fetch_stream(self, locator: str) -> AsyncIterator[bytes]:
        data = self.objects[locator]
        for start in range(0, len(data), 4):
            yield data[start:start + 4]

    async def delete(self, locator: str) -> None:
        self.deleted.append(locator)
        self.objects.pop(locator, None)


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="store")
def store_fixture(engine) -> ChangeRecordStore:
    return ChangeRecordStore(engine)


@pytest.fixture(name="audit")
def audit_fixture(engine) -> OperationAuditLog:
    return OperationAuditLog(engine)


@pytest.fixture(name="tabular")
def tabular_fixture() -> FakeTabularBackend:
    return FakeTabularBackend()


@pytest.fixture(name="remote_files")
def remote_files_fixture() -> FakeRemoteFileBackend:
    return FakeRemoteFileBackend()


@pytest.fixture(name="settings")
def settings_fixture(tmp_path) -> Settings:
    """Settings isolated from the developer's .env and environment."""
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        local_uploads_dir=str(tmp_path / "uploads"),
        google_spreadsheet_id="sheet-id",
        google_drive_folder_id="folder-id",
    )


@pytest.fixture(name="make_letter")
def make_letter_fixture(engine):
    """Factory persisting a letter directly (no change records)."""

    def _make(number: str = "L-1", **overrides) -> Letter:
        fields = {"number": number, "org": "ACME", "letter_date": date(2025, 1, 15)}
        fields.update(overrides)
        letter = Letter(**fields)
        with Session(engine) as s:
            s.add(letter)
            s.commit()
            s.refresh(letter)
        return letter

    return _make
