"""Google Sheets adapter for the tabular mirror: one tab, read whole / write whole."""
import logging
from typing import List, Optional

from googleapiclient.discovery import build

from lettersync.backends.google import SHEETS_SCOPE, build_credentials, call_remote
from lettersync.sync.errors import ConfigurationError

logger = logging.getLogger(__name__)


class GoogleSheetsMirror:
    def __init__(self, settings, service=None):
        """
        Args:
            settings: Settings with google_* fields and remote_timeout_seconds.
            service: prebuilt Sheets v4 resource (tests); built lazily otherwise.
        """
        self.settings = settings
        self.spreadsheet_id = settings.google_spreadsheet_id
        self.sheet_name = settings.google_sheet_name
        self.timeout = settings.remote_timeout_seconds
        self._service = service

    def check_configured(self) -> None:
        if not self.spreadsheet_id:
            raise ConfigurationError("GOOGLE_SPREADSHEET_ID is not set")
        if self._service is None:
            self._service = self._build_service()

    async def read_all(self) -> List[List[str]]:
        """All rows of the tab, header included. Empty tab → []."""
        values = self._values()
        result = await call_remote(
            lambda: values.get(spreadsheetId=self.spreadsheet_id, range=self._range()).execute(),
            timeout=self.timeout,
            operation="Sheets read",
        )
        return [[str(cell) for cell in row] for row in result.get("values", [])]

    async def write_all(self, rows: List[List[str]]) -> None:
        """Replace the tab's contents with rows."""
        values = self._values()
        await call_remote(
            lambda: values.clear(spreadsheetId=self.spreadsheet_id, range=self._range()).execute(),
            timeout=self.timeout,
            operation="Sheets clear",
        )
        await call_remote(
            lambda: values.update(
                spreadsheetId=self.spreadsheet_id,
                range=f"{self._quoted_name()}!A1",
                valueInputOption="RAW",
                body={"values": rows},
            ).execute(),
            timeout=self.timeout,
            operation="Sheets write",
        )
        logger.debug("Wrote %d rows to sheet %s", len(rows), self.sheet_name)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _build_service(self):
        credentials = build_credentials(self.settings, [SHEETS_SCOPE])
        return build("sheets", "v4", credentials=credentials, cache_discovery=False)

    def _values(self):
        self.check_configured()
        return self._service.spreadsheets().values()

    def _quoted_name(self) -> str:
        return "'" + self.sheet_name.replace("'", "''") + "'"

    def _range(self) -> str:
        return f"{self._quoted_name()}!A:Z"


def build_sheets_mirror(settings) -> Optional[GoogleSheetsMirror]:
    """None when no spreadsheet is configured at all."""
    if not settings.google_spreadsheet_id:
        return None
    return GoogleSheetsMirror(settings)
