"""
Offline-tolerant sync engine.

Provides the durable offline queue, the network monitor and the
coordinator that mirrors local writes to the remote API.
"""

from .coordinator import (
    SyncCoordinator,
    SyncErrorRecord,
    SyncOutcome,
    SyncStatus,
    WriteResult,
    WriteState,
)
from .network import ConnectivityProbe, ConnectivityState, NetworkMonitor, TcpProbe
from .queue import (
    DrainResult,
    OfflineQueue,
    QueueEntry,
    ReplayFn,
    ReplayOutcome,
    ReplayResult,
)

__all__ = [
    # Coordinator
    "SyncCoordinator",
    "SyncOutcome",
    "SyncStatus",
    "SyncErrorRecord",
    "WriteResult",
    "WriteState",
    # Network
    "NetworkMonitor",
    "ConnectivityState",
    "ConnectivityProbe",
    "TcpProbe",
    # Queue
    "OfflineQueue",
    "QueueEntry",
    "DrainResult",
    "ReplayFn",
    "ReplayOutcome",
    "ReplayResult",
]
