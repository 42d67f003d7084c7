"""
Storage facade.

The single surface the application talks to. Reads are served from the
local store; writes are committed locally and mirrored to the remote API
through the sync coordinator. Callers never see the offline queue or the
remote client, except for two deliberate cases:

- A write the remote API refuses raises WriteRejectedError (after the
  local commit, which is kept).
- authenticate() needs a live answer and suspends on the remote call,
  falling back to cached credentials when the remote is unreachable.

Conflict policy for export_all() / import_all(): when the same key exists
in more than one place with different payloads, the copy with the higher
version wins ("last write wins by version"). This can silently discard a
remote edit that was made while the local copy was stale.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .config import StorageConfig, SyncPolicy, load_config
from .exceptions import (
    AuthUnavailableError,
    RecordNotFoundError,
    RemoteError,
    RemoteUnreachableError,
    WriteRejectedError,
)
from .local.credentials import CredentialCache
from .local.store import LocalStore
from .records import Record, RecordKey, last_write_wins, new_key
from .remote.client import AuthResult, RemoteClient
from .sync.coordinator import SyncCoordinator, SyncErrorRecord, SyncStatus, WriteResult, WriteState
from .sync.network import ConnectivityProbe, NetworkMonitor, TcpProbe, always_online
from .sync.queue import DrainResult, OfflineQueue, QueueEntry

logger = logging.getLogger(__name__)


@dataclass
class ImportSummary:
    """Per-collection result of import_all()."""

    imported: list[str] = field(default_factory=list)
    refreshed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)
    rejected: dict[str, str] = field(default_factory=dict)


class StorageFacade:
    """Offline-first record storage with remote mirroring.

    Example:
        >>> config = StorageConfig(api_url="https://example.com/api")
        >>> async with StorageFacade(config) as storage:
        ...     result = await storage.write("personnel", {"name": "Ana"}, key="p-1")
        ...     storage.read("personnel", "p-1").payload
        {'name': 'Ana'}
    """

    def __init__(
        self,
        config: StorageConfig,
        remote: RemoteClient | None = None,
        monitor: NetworkMonitor | None = None,
        probe: ConnectivityProbe | None = None,
        on_sync_error: Callable[[SyncErrorRecord], None] | None = None,
    ) -> None:
        """Initialize the facade and the engine behind it.

        Args:
            config: Storage configuration
            remote: Remote client override (built from config.api_url by default)
            monitor: Network monitor override
            probe: Connectivity probe for the default monitor
            on_sync_error: Callback for remote refusals during replay
        """
        self.config = config
        self.policy: SyncPolicy = config.sync_policy()

        self.local = LocalStore(config.data_dir)
        self.credentials = CredentialCache(config.credentials_path)
        self.queue = OfflineQueue(config.queue_path, config.max_queue_entries)

        if self.policy.remote_enabled:
            assert config.api_url is not None
            self.remote: RemoteClient | None = remote or RemoteClient(
                config.api_url, timeout=config.request_timeout, user_id=config.user_id
            )
            self.monitor = monitor or NetworkMonitor(
                probe or TcpProbe.for_url(config.api_url, timeout=config.request_timeout),
                poll_interval=config.probe_interval,
                debounce=config.probe_debounce,
            )
        else:
            self.remote = None
            self.monitor = monitor or NetworkMonitor(probe or always_online)

        self.coordinator = SyncCoordinator(
            local=self.local,
            queue=self.queue,
            monitor=self.monitor,
            policy=self.policy,
            remote=self.remote,
            retry_interval=config.retry_interval,
            drop_rejected=config.drop_rejected,
            on_sync_error=on_sync_error,
        )
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> StorageFacade:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Start connectivity monitoring and background sync."""
        if self._started:
            return
        self._started = True

        # Subscribe before the first probe so a startup Online edge drains the queue
        await self.coordinator.start()
        if self.policy.remote_enabled:
            await self.monitor.start()
        mode = f"remote {self.config.api_url}" if self.policy.remote_enabled else "local only"
        logger.info(f"Storage started at {self.config.data_dir} ({mode})")

    async def stop(self) -> None:
        """Stop monitoring, finish any running drain and close the remote client."""
        if not self._started:
            return
        self._started = False

        await self.monitor.stop()
        await self.coordinator.stop()
        if self.remote is not None:
            await self.remote.close()
        logger.info("Storage stopped")

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def read(self, collection: str, key: str | None = None) -> list[Record] | Record | None:
        """Read from the local store.

        Returns:
            All records of the collection when key is None, otherwise the
            record or None if absent
        """
        if key is None:
            return self.local.get(collection)
        return self.local.get_record(collection, key)

    async def write(self, collection: str, payload: Any, key: str | None = None) -> WriteResult:
        """Insert or replace a record.

        Returns as soon as the local commit is durable and the remote side
        has either accepted the write or it has been queued.

        Raises:
            InvalidPayloadError / StorageFullError: Local commit failed
            WriteRejectedError: The remote API refused the write
            QueueFullError: The write could not be queued
        """
        key = key or new_key()
        result = await self.coordinator.save(collection, key, payload)
        self._raise_if_rejected(collection, key, result)
        return result

    async def patch(self, collection: str, key: str, partial: dict[str, Any]) -> WriteResult:
        """Merge fields into an existing record.

        Raises:
            RecordNotFoundError: If the record does not exist locally
            WriteRejectedError: The remote API refused the update
        """
        result = await self.coordinator.update(collection, key, partial)
        if result is None:
            raise RecordNotFoundError(collection, key)
        self._raise_if_rejected(collection, key, result)
        return result

    async def remove(self, collection: str, key: str) -> bool:
        """Delete a record.

        Returns:
            True if the record existed locally

        Raises:
            WriteRejectedError: The remote API refused the delete
        """
        existed, outcome = await self.coordinator.delete(collection, key)
        self._raise_if_rejected(collection, key, WriteResult(None, outcome))
        return existed

    @staticmethod
    def _raise_if_rejected(collection: str, key: str, result: WriteResult) -> None:
        if result.state is WriteState.REJECTED and result.outcome.error is not None:
            raise WriteRejectedError(collection, key, result.outcome.error, result.record)

    def collections(self) -> list[str]:
        return self.local.collections()

    def clear_local(self, collection: str | None = None) -> int:
        """Wipe local records. Queued writes are left untouched."""
        removed = self.local.clear(collection)
        logger.warning(f"Cleared {removed} local records ({collection or 'all collections'})")
        return removed

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(self, username: str, password: str) -> AuthResult:
        """Authenticate against the remote API, or the local credential cache.

        Successful remote logins refresh the cached snapshot. The cache is
        consulted only when the remote side cannot answer (disabled,
        offline or unreachable).

        Raises:
            AuthUnavailableError: Remote unreachable and no cached snapshot
        """
        if self.remote is None or not self.monitor.is_online:
            return self._authenticate_cached(username, password)

        try:
            result = await self.remote.authenticate(username, password)
        except RemoteUnreachableError as e:
            logger.warning(f"Remote authentication unavailable, using local cache: {e.message}")
            return self._authenticate_cached(username, password, e)

        if result.success:
            self.credentials.remember(username, password, result.user)
        return result

    def _authenticate_cached(
        self, username: str, password: str, cause: Exception | None = None
    ) -> AuthResult:
        snapshot = self.credentials.get(username)
        if snapshot is None:
            raise AuthUnavailableError(username, cause)
        if snapshot.verify(password):
            return AuthResult(success=True, user=dict(snapshot.user), offline=True)
        return AuthResult(success=False, message="Invalid username or password", offline=True)

    def remember_credentials(
        self, username: str, password: str, user: dict[str, Any] | None = None
    ) -> None:
        """Seed a local login, e.g. a default administrator for local-only mode."""
        self.credentials.remember(username, password, user)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    async def _remote_snapshot(self, collection: str) -> dict[str, Record]:
        """Fetch a collection from the remote API, or nothing if it cannot answer."""
        if self.remote is None or not self.monitor.is_online:
            return {}
        try:
            records = await self.remote.fetch_collection(collection)
        except RemoteError as e:
            logger.warning(f"Could not fetch remote {collection}, using local data: {e.message}")
            return {}
        return {record.key: record for record in records}

    async def _pending_keys(self) -> set[RecordKey]:
        if not self.policy.remote_enabled:
            return set()
        return {key for entry in await self.queue.peek_all() if (key := entry.record_key)}

    async def export_all(
        self, collections: Iterable[str] | None = None
    ) -> dict[str, list[dict[str, Any]]]:
        """Export every record, merged with the remote copy when available.

        Records with undelivered local writes always export their local copy.

        Returns:
            ``{collection: [record dicts]}``
        """
        names = list(collections) if collections is not None else self.local.collections()
        pending = await self._pending_keys()
        snapshot: dict[str, list[dict[str, Any]]] = {}

        for collection in names:
            local = {record.key: record for record in self.local.get(collection)}
            remote = await self._remote_snapshot(collection)

            merged: list[dict[str, Any]] = []
            for key in [*local, *(k for k in remote if k not in local)]:
                if RecordKey(collection, key) in pending:
                    winner = local.get(key)
                else:
                    winner = last_write_wins(local.get(key), remote.get(key))
                if winner is not None:
                    merged.append(winner.to_dict())
            snapshot[collection] = merged

        return snapshot

    async def import_all(
        self, snapshot: dict[str, list[dict[str, Any]]]
    ) -> dict[str, ImportSummary]:
        """Import records, resolving conflicts by version.

        For each incoming record the local copy, the remote copy (when
        reachable) and the incoming copy are compared. An incoming winner
        is written through the normal write path; a remote winner only
        refreshes the local store.

        Returns:
            ImportSummary per collection
        """
        results: dict[str, ImportSummary] = {}

        for collection, items in snapshot.items():
            summary = ImportSummary()
            results[collection] = summary
            remote = await self._remote_snapshot(collection)

            for item in items:
                incoming = self._decode_import(collection, item)
                local = self.local.get_record(collection, incoming.key)
                current = last_write_wins(local, remote.get(incoming.key))
                winner = last_write_wins(current, incoming)

                if winner is incoming:
                    try:
                        result = await self.write(collection, incoming.payload, key=incoming.key)
                    except WriteRejectedError as e:
                        summary.rejected[incoming.key] = e.cause.message
                        continue
                    if result.state is WriteState.QUEUED:
                        summary.queued.append(incoming.key)
                    summary.imported.append(incoming.key)
                elif winner is not local and winner is not None and (
                    local is None or local.payload != winner.payload
                ):
                    self.local.put(collection, winner.key, winner.payload)
                    summary.refreshed.append(incoming.key)
                else:
                    summary.skipped.append(incoming.key)

            logger.info(
                f"Imported {collection}: {len(summary.imported)} written, "
                f"{len(summary.refreshed)} refreshed, {len(summary.skipped)} skipped, "
                f"{len(summary.rejected)} rejected"
            )

        return results

    @staticmethod
    def _decode_import(collection: str, item: dict[str, Any]) -> Record:
        if "key" in item:
            return Record.from_dict(collection, item)
        # Remote-style document, e.g. an export taken from the API directly
        return Record.from_remote(collection, item)

    # ------------------------------------------------------------------
    # Sync diagnostics
    # ------------------------------------------------------------------

    async def status(self) -> SyncStatus:
        return await self.coordinator.status()

    async def sync_now(self) -> DrainResult | None:
        """Replay queued writes now."""
        return await self.coordinator.sync_now()

    async def pending_writes(self) -> list[QueueEntry]:
        return await self.queue.peek_all()

    async def purge_pending(self, ids: Iterable[int] | None = None) -> int:
        """Discard queued writes without delivering them."""
        return await self.queue.purge(ids)

    async def retry_rejected(self, ids: list[int] | None = None) -> int:
        """Replay queued writes the remote API refused earlier, on the next drain."""
        return await self.coordinator.retry_rejected(ids)


def create_storage(config: StorageConfig | None = None, **kwargs: Any) -> StorageFacade:
    """Create a storage facade from explicit or loaded configuration.

    Args:
        config: Configuration; loaded from settings file and environment if None
        **kwargs: Passed to StorageFacade

    Returns:
        An unstarted StorageFacade
    """
    return StorageFacade(config or load_config(), **kwargs)
