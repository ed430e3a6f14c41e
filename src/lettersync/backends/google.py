"""
Shared plumbing for the Google adapters.

googleapiclient is synchronous; every request runs in the default thread pool
under a timeout so a hung call can't stall the event loop or the worker lock.
"""
import asyncio
import logging
from typing import Callable, Iterable, TypeVar

from google.oauth2 import service_account
from googleapiclient.errors import HttpError

from lettersync.sync.errors import ConfigurationError, SyncError, TransientDeliveryError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive"


def build_credentials(settings, scopes: Iterable[str]) -> service_account.Credentials:
    """
    Service-account credentials from GOOGLE_SERVICE_ACCOUNT_EMAIL / GOOGLE_PRIVATE_KEY.

    Raises:
        ConfigurationError: either setting is empty or the key is rejected.
    """
    if not settings.google_service_account_email or not settings.google_private_key:
        raise ConfigurationError("Google service account credentials are not configured")
    info = {
        "type": "service_account",
        "client_email": settings.google_service_account_email,
        "private_key": settings.google_private_key,
        "token_uri": "https://oauth2.googleapis.com/token",
    }
    try:
        return service_account.Credentials.from_service_account_info(info, scopes=list(scopes))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid Google service account key: {exc}") from exc


def http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "resp", None), "status", 0)
    try:
        return int(status)
    except (TypeError, ValueError):
        return 0


def translate_error(exc: Exception, operation: str) -> SyncError:
    """Map a client-side failure onto the sync error taxonomy."""
    if isinstance(exc, SyncError):
        return exc
    if isinstance(exc, HttpError):
        status = http_status(exc)
        if status in (401, 403):
            return ConfigurationError(f"{operation} rejected ({status}): {exc}")
        return TransientDeliveryError(f"{operation} failed ({status}): {exc}")
    return TransientDeliveryError(f"{operation} failed: {exc}")


async def call_remote(fn: Callable[[], T], *, timeout: float, operation: str) -> T:
    """
    Run a blocking client call in the thread pool.

    Raises:
        TransientDeliveryError: timeout, network failure, or a non-auth HTTP error.
        ConfigurationError: HTTP 401/403.
    """
    loop = asyncio.get_event_loop()
    try:
        return await asyncio.wait_for(loop.run_in_executor(None, fn), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise TransientDeliveryError(f"{operation} timed out after {timeout}s") from exc
    except Exception as exc:
        logger.warning("%s failed: %s", operation, exc)
        raise translate_error(exc, operation) from exc
