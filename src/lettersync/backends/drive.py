"""Google Drive adapter for migrated file bytes. Locators are Drive file ids."""
import io
import logging
from typing import AsyncIterator, Dict, Optional

from googleapiclient.discovery import build
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload

from lettersync.backends.google import DRIVE_SCOPE, build_credentials, call_remote
from lettersync.sync.errors import ConfigurationError

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


class GoogleDriveStore:
    def __init__(self, settings, service=None):
        """
        Args:
            settings: Settings with google_* fields and remote_timeout_seconds.
            service: prebuilt Drive v3 resource (tests); built lazily otherwise.
        """
        self.settings = settings
        self.folder_id = settings.google_drive_folder_id
        self.timeout = settings.remote_timeout_seconds
        self._service = service
        self._folders: Dict[str, str] = {}

    def check_configured(self) -> None:
        if not self.folder_id:
            raise ConfigurationError("GOOGLE_DRIVE_FOLDER_ID is not set")
        if self._service is None:
            credentials = build_credentials(self.settings, [DRIVE_SCOPE])
            self._service = build("drive", "v3", credentials=credentials, cache_discovery=False)

    async def upload(
        self, data: bytes, name: str, mime_type: str, folder: Optional[str] = None
    ) -> str:
        """Create the file in the configured folder (or a named subfolder of it) and return its id."""
        self.check_configured()
        parent = await self._ensure_folder(folder) if folder else self.folder_id
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=mime_type, resumable=False)
        metadata = {"name": name, "parents": [parent]}
        created = await call_remote(
            lambda: self._service.files()
            .create(body=metadata, media_body=media, fields="id", supportsAllDrives=True)
            .execute(),
            timeout=self.timeout,
            operation="Drive upload",
        )
        logger.debug("Uploaded %s to Drive as %s", name, created["id"])
        return created["id"]

    async def fetch_stream(self, locator: str) -> AsyncIterator[bytes]:
        """Yield the file's bytes chunk by chunk."""
        self.check_configured()
        request = self._service.files().get_media(fileId=locator, supportsAllDrives=True)
        buffer = io.BytesIO()
        downloader = MediaIoBaseDownload(buffer, request, chunksize=DOWNLOAD_CHUNK_SIZE)
        done = False
        while not done:
            _, done = await call_remote(
                downloader.next_chunk, timeout=self.timeout, operation="Drive download"
            )
            chunk = buffer.getvalue()
            buffer.seek(0)
            buffer.truncate()
            if chunk:
                yield chunk

    async def delete(self, locator: str) -> None:
        self.check_configured()
        await call_remote(
            lambda: self._service.files().delete(fileId=locator, supportsAllDrives=True).execute(),
            timeout=self.timeout,
            operation="Drive delete",
        )

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _ensure_folder(self, name: str) -> str:
        """Id of the subfolder with this name under the root folder, created on first use."""
        if name in self._folders:
            return self._folders[name]
        escaped = name.replace("\\", "\\\\").replace("'", "\\'")
        query = (
            f"name = '{escaped}' and mimeType = '{FOLDER_MIME_TYPE}' "
            f"and '{self.folder_id}' in parents and trashed = false"
        )
        found = await call_remote(
            lambda: self._service.files()
            .list(
                q=query,
                fields="files(id)",
                pageSize=1,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            )
            .execute(),
            timeout=self.timeout,
            operation="Drive folder lookup",
        )
        matches = found.get("files", [])
        if matches:
            folder_id = matches[0]["id"]
        else:
            metadata = {"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [self.folder_id]}
            created = await call_remote(
                lambda: self._service.files()
                .create(body=metadata, fields="id", supportsAllDrives=True)
                .execute(),
                timeout=self.timeout,
                operation="Drive folder create",
            )
            folder_id = created["id"]
            logger.info("Created Drive folder %s (%s)", name, folder_id)
        self._folders[name] = folder_id
        return folder_id


def build_drive_store(settings) -> Optional[GoogleDriveStore]:
    """None when no Drive folder is configured at all."""
    if not settings.google_drive_folder_id:
        return None
    return GoogleDriveStore(settings)
