"""Tests for the Google Sheets / Drive adapters with mocked API resources."""
import time
from unittest.mock import MagicMock, patch

import pytest
from googleapiclient.errors import HttpError

from lettersync.backends.drive import GoogleDriveStore, build_drive_store
from lettersync.backends.google import build_credentials, call_remote, translate_error
from lettersync.backends.sheets import GoogleSheetsMirror, build_sheets_mirror
from lettersync.sync.errors import ConfigurationError, TransientDeliveryError


def _http_error(status: int) -> HttpError:
    return HttpError(MagicMock(status=status, reason="err"), b"{}")


class TestErrorMapping:
    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_errors_are_configuration(self, status):
        assert isinstance(translate_error(_http_error(status), "op"), ConfigurationError)

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_other_http_errors_are_transient(self, status):
        assert isinstance(translate_error(_http_error(status), "op"), TransientDeliveryError)

    def test_network_errors_are_transient(self):
        assert isinstance(translate_error(OSError("reset"), "op"), TransientDeliveryError)

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        with pytest.raises(TransientDeliveryError, match="timed out"):
            await call_remote(lambda: time.sleep(0.2), timeout=0.01, operation="slow")

    @pytest.mark.asyncio
    async def test_returns_value(self):
        assert await call_remote(lambda: 42, timeout=1, operation="fast") == 42


class TestCredentials:
    def test_missing_settings(self, settings):
        settings.google_service_account_email = ""
        with pytest.raises(ConfigurationError):
            build_credentials(settings, ["scope"])


class TestGoogleSheetsMirror:
    def _mirror(self, settings):
        service = MagicMock()
        return GoogleSheetsMirror(settings, service=service), service.spreadsheets.return_value.values.return_value

    @pytest.mark.asyncio
    async def test_read_all(self, settings):
        mirror, values = self._mirror(settings)
        values.get.return_value.execute.return_value = {"values": [["NUM"], ["L-1", 5]]}
        rows = await mirror.read_all()
        assert rows == [["NUM"], ["L-1", "5"]]
        assert values.get.call_args.kwargs["spreadsheetId"] == "sheet-id"
        assert values.get.call_args.kwargs["range"] == "'Letters'!A:Z"

    @pytest.mark.asyncio
    async def test_read_all_empty_tab(self, settings):
        mirror, values = self._mirror(settings)
        values.get.return_value.execute.return_value = {}
        assert await mirror.read_all() == []

    @pytest.mark.asyncio
    async def test_write_all_clears_then_updates(self, settings):
        mirror, values = self._mirror(settings)
        await mirror.write_all([["NUM"], ["L-1"]])
        values.clear.assert_called_once()
        body = values.update.call_args.kwargs["body"]
        assert body == {"values": [["NUM"], ["L-1"]]}
        assert values.update.call_args.kwargs["range"] == "'Letters'!A1"

    @pytest.mark.asyncio
    async def test_forbidden_maps_to_configuration_error(self, settings):
        mirror, values = self._mirror(settings)
        values.get.return_value.execute.side_effect = _http_error(403)
        with pytest.raises(ConfigurationError):
            await mirror.read_all()

    def test_missing_spreadsheet_id(self, settings):
        settings.google_spreadsheet_id = ""
        with pytest.raises(ConfigurationError):
            GoogleSheetsMirror(settings, service=MagicMock()).check_configured()
        assert build_sheets_mirror(settings) is None


class _FakeDownload:
    """Stands in for MediaIoBaseDownload: two chunks, then done."""

    def __init__(self, buffer, request, chunksize):
        self.buffer = buffer
        self.chunks = [b"abc", b"def"]

    def next_chunk(self):
        self.buffer.write(self.chunks.pop(0))
        return None, not self.chunks


class TestGoogleDriveStore:
    @pytest.mark.asyncio
    async def test_upload_returns_file_id(self, settings):
        service = MagicMock()
        service.files.return_value.create.return_value.execute.return_value = {"id": "drive-1"}
        store = GoogleDriveStore(settings, service=service)
        assert await store.upload(b"data", "a.pdf", "application/pdf") == "drive-1"
        body = service.files.return_value.create.call_args.kwargs["body"]
        assert body == {"name": "a.pdf", "parents": ["folder-id"]}

    @pytest.mark.asyncio
    async def test_upload_into_existing_subfolder(self, settings):
        service = MagicMock()
        files = service.files.return_value
        files.list.return_value.execute.return_value = {"files": [{"id": "sub-1"}]}
        files.create.return_value.execute.return_value = {"id": "drive-1"}
        store = GoogleDriveStore(settings, service=service)

        await store.upload(b"data", "a.pdf", "application/pdf", folder="letter_L-7")
        await store.upload(b"more", "b.pdf", "application/pdf", folder="letter_L-7")

        query = files.list.call_args.kwargs["q"]
        assert "name = 'letter_L-7'" in query
        assert "'folder-id' in parents" in query
        assert files.list.call_count == 1
        body = files.create.call_args.kwargs["body"]
        assert body == {"name": "b.pdf", "parents": ["sub-1"]}

    @pytest.mark.asyncio
    async def test_upload_creates_missing_subfolder(self, settings):
        service = MagicMock()
        files = service.files.return_value
        files.list.return_value.execute.return_value = {"files": []}
        files.create.return_value.execute.side_effect = [{"id": "sub-9"}, {"id": "drive-1"}]
        store = GoogleDriveStore(settings, service=service)

        assert await store.upload(b"data", "a.pdf", "application/pdf", folder="letter_L-9") == "drive-1"

        folder_body, file_body = [c.kwargs["body"] for c in files.create.call_args_list]
        assert folder_body == {
            "name": "letter_L-9",
            "mimeType": "application/vnd.google-apps.folder",
            "parents": ["folder-id"],
        }
        assert file_body["parents"] == ["sub-9"]

    @pytest.mark.asyncio
    async def test_fetch_stream_yields_chunks(self, settings):
        store = GoogleDriveStore(settings, service=MagicMock())
        with patch("lettersync.backends.drive.MediaIoBaseDownload", _FakeDownload):
            chunks = [chunk async for chunk in store.fetch_stream("drive-1")]
        assert chunks == [b"abc", b"def"]

    @pytest.mark.asyncio
    async def test_delete(self, settings):
        service = MagicMock()
        await GoogleDriveStore(settings, service=service).delete("drive-1")
        service.files.return_value.delete.assert_called_once_with(
            fileId="drive-1", supportsAllDrives=True
        )

    def test_missing_folder(self, settings):
        settings.google_drive_folder_id = ""
        with pytest.raises(ConfigurationError):
            GoogleDriveStore(settings, service=MagicMock()).check_configured()
        assert build_drive_store(settings) is None
