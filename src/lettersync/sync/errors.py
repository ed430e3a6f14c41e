"""Typed exception hierarchy for sync failures.

The three leaf types drive different bookkeeping:
transient failures count against a record's retry budget, integrity failures
need an operator, and configuration failures abort a run before any record
is touched.
"""


class SyncError(Exception):
    """Base exception for all sync-engine errors."""


class TransientDeliveryError(SyncError):
    """Network or remote-service failure, including timeouts. Retryable."""


class DataIntegrityError(SyncError):
    """Local state contradicts its metadata (e.g. a LOCAL file with no bytes on disk)."""


class ConfigurationError(SyncError):
    """Missing or rejected external-system credentials / identifiers."""
