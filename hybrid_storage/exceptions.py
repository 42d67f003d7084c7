"""
Custom exceptions for hybrid storage.

Local store, remote client and offline queue failures all raise
subclasses of HybridStorageError so callers can handle them uniformly.
Transient remote failures never reach callers of write operations;
they are absorbed by the sync coordinator and turned into queue entries.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .records import Record


class HybridStorageError(Exception):
    """Base exception for all hybrid storage errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(HybridStorageError, ValueError):
    """Raised when settings are invalid or the settings file cannot be parsed."""


# ---------------------------------------------------------------------------
# Local store
# ---------------------------------------------------------------------------


class LocalStoreError(HybridStorageError):
    """Raised when the local store cannot complete an operation."""

    def __init__(
        self,
        message: str,
        collection: str | None = None,
        cause: Exception | None = None,
    ):
        details: dict[str, Any] = {}
        if collection:
            details["collection"] = collection
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.collection = collection
        self.cause = cause


class StorageFullError(LocalStoreError):
    """Raised when the durable medium has no space left."""


class InvalidPayloadError(LocalStoreError):
    """Raised when a payload cannot be serialized or merged."""


class LocalCorruptError(LocalStoreError):
    """Raised when a collection file on disk cannot be parsed."""


class RecordNotFoundError(HybridStorageError):
    """Raised when a record is not present in the local store."""

    def __init__(self, collection: str, key: str):
        super().__init__(
            f"Record not found: {collection}/{key}",
            {"collection": collection, "key": key},
        )
        self.collection = collection
        self.key = key


# ---------------------------------------------------------------------------
# Remote client
# ---------------------------------------------------------------------------


class RemoteError(HybridStorageError):
    """Base class for remote API failures."""

    def __init__(
        self,
        message: str,
        method: str | None = None,
        endpoint: str | None = None,
        cause: Exception | None = None,
    ):
        details: dict[str, Any] = {}
        if method:
            details["method"] = method
        if endpoint:
            details["endpoint"] = endpoint
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.method = method
        self.endpoint = endpoint
        self.cause = cause


class RemoteUnreachableError(RemoteError):
    """Raised when the remote API cannot be reached or is temporarily unavailable.

    Writes failing with this error are queued for replay.
    """

    def __init__(
        self,
        message: str,
        method: str | None = None,
        endpoint: str | None = None,
        cause: Exception | None = None,
        status: int | None = None,
    ):
        super().__init__(message, method, endpoint, cause)
        self.status = status
        if status is not None:
            self.details["status"] = status


class RemoteTimeoutError(RemoteUnreachableError):
    """Raised when a remote call exceeds the configured timeout."""


class RemoteRejectedError(RemoteError):
    """Raised when the remote API refuses a request at the application level.

    Never retried automatically: the request itself is invalid.
    """

    def __init__(
        self,
        message: str,
        status: int,
        method: str | None = None,
        endpoint: str | None = None,
        body: Any = None,
    ):
        super().__init__(message, method, endpoint)
        self.status = status
        self.body = body
        self.details["status"] = status


# ---------------------------------------------------------------------------
# Offline queue
# ---------------------------------------------------------------------------


class QueueError(HybridStorageError):
    """Base class for offline queue failures."""

    def __init__(self, message: str, path: str | None = None, cause: Exception | None = None):
        details: dict[str, Any] = {}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.path = path
        self.cause = cause


class QueueFullError(QueueError):
    """Raised when the offline queue cannot accept another entry."""


class QueueCorruptError(QueueError):
    """Raised when the persisted offline queue fails an integrity check."""


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class WriteRejectedError(HybridStorageError):
    """Raised when the remote side rejected a write that was committed locally.

    The local store keeps the committed change; the write was not queued.
    ``record`` is the committed record, or None for deletes.
    """

    def __init__(
        self,
        collection: str,
        key: str,
        cause: RemoteRejectedError,
        record: Record | None = None,
    ):
        super().__init__(
            f"Remote rejected write to {collection}/{key}: {cause.message}",
            {"collection": collection, "key": key, "status": cause.status},
        )
        self.collection = collection
        self.key = key
        self.record = record
        self.cause = cause


class AuthUnavailableError(HybridStorageError):
    """Raised when authentication cannot be answered remotely or from the local cache."""

    def __init__(self, username: str, cause: Exception | None = None):
        details: dict[str, Any] = {"username": username}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Authentication unavailable for {username}", details)
        self.username = username
        self.cause = cause
