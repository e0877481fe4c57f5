"""Exception types for the offline store, content cache and sync layer."""

from typing import Optional


class OfflineError(Exception):
    """Base exception for offline subsystem errors."""


class StorageError(OfflineError):
    """The local store failed (unknown partition or index, database error)."""


class TranslationNotFoundError(OfflineError):
    """The requested translation is not in the catalog."""


class DownloadCanceledError(OfflineError):
    """A translation download was canceled before it finished."""


class BibleAPIError(OfflineError):
    """The remote Bible content API returned an error or was unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncError(OfflineError):
    """A sync run failed part way through."""


class SyncTransportError(SyncError):
    """Pushing a single queue item to the remote failed."""