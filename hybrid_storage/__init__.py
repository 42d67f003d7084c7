"""
Hybrid Storage

Offline-first record storage that mirrors every write to a remote
collection API.

Provides:
- A durable local store that serves every read
- Dual writes: local commit first, then a best-effort remote mirror
- A durable offline queue replayed in order when connectivity returns
- Offline authentication from cached credential snapshots
- Export / import with last-write-wins conflict resolution

Usage:

    >>> from hybrid_storage import StorageConfig, StorageFacade
    >>> config = StorageConfig(api_url="https://example.com/api", data_dir="./data")
    >>> async with StorageFacade(config) as storage:
    ...     result = await storage.write("personnel", {"name": "Ana"}, key="p-1")
    ...     result.state            # SYNCED, or QUEUED while offline
    ...     storage.read("personnel", "p-1").payload

Local-only mode:

    # Without an api_url the engine is plain local storage
    storage = StorageFacade(StorageConfig(data_dir="./data"))
"""

from .config import StorageConfig, SyncPolicy, load_config
from .exceptions import (
    AuthUnavailableError,
    ConfigError,
    HybridStorageError,
    InvalidPayloadError,
    LocalCorruptError,
    LocalStoreError,
    QueueCorruptError,
    QueueError,
    QueueFullError,
    RecordNotFoundError,
    RemoteError,
    RemoteRejectedError,
    RemoteTimeoutError,
    RemoteUnreachableError,
    StorageFullError,
    WriteRejectedError,
)
from .facade import ImportSummary, StorageFacade, create_storage
from .local import CredentialCache, LocalStore
from .records import Record, RecordKey, last_write_wins
from .remote import AuthResult, RemoteClient, RemoteRequest
from .sync import (
    ConnectivityState,
    DrainResult,
    NetworkMonitor,
    OfflineQueue,
    QueueEntry,
    SyncCoordinator,
    SyncErrorRecord,
    SyncOutcome,
    SyncStatus,
    TcpProbe,
    WriteResult,
    WriteState,
)

__version__ = "0.1.0"

__all__ = [
    # Facade
    "StorageFacade",
    "ImportSummary",
    "create_storage",
    # Configuration
    "StorageConfig",
    "SyncPolicy",
    "load_config",
    # Records
    "Record",
    "RecordKey",
    "last_write_wins",
    # Local
    "LocalStore",
    "CredentialCache",
    # Remote
    "RemoteClient",
    "RemoteRequest",
    "AuthResult",
    # Sync
    "SyncCoordinator",
    "SyncOutcome",
    "SyncStatus",
    "SyncErrorRecord",
    "WriteResult",
    "WriteState",
    "NetworkMonitor",
    "ConnectivityState",
    "TcpProbe",
    "OfflineQueue",
    "QueueEntry",
    "DrainResult",
    # Exceptions
    "HybridStorageError",
    "ConfigError",
    "LocalStoreError",
    "StorageFullError",
    "InvalidPayloadError",
    "LocalCorruptError",
    "RecordNotFoundError",
    "RemoteError",
    "RemoteUnreachableError",
    "RemoteTimeoutError",
    "RemoteRejectedError",
    "QueueError",
    "QueueFullError",
    "QueueCorruptError",
    "WriteRejectedError",
    "AuthUnavailableError",
]
