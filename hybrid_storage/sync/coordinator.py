"""
Sync coordinator for dual writes.

Every write is committed to the local store first, then mirrored to the
remote API on a best-effort basis. Each write moves through an explicit
state machine:

    LOCAL_COMMITTED -(remote disabled)----------------> done (local only)
    LOCAL_COMMITTED -(offline / older write pending)--> QUEUED
    LOCAL_COMMITTED -(attempt)------------------------> REMOTE_ATTEMPTED
    REMOTE_ATTEMPTED -(success)-----------------------> SYNCED
    REMOTE_ATTEMPTED -(unreachable / timeout)---------> QUEUED
    REMOTE_ATTEMPTED -(rejected)----------------------> REJECTED (not queued)
    QUEUED -(back online, drain delivers it)----------> SYNCED

Writes to the same record are mirrored one at a time. A write waits
while an earlier write to that record is in flight, then is queued if
the earlier one ended up in the queue.

Queued writes are replayed when the network monitor reports an
Offline -> Online transition. Drain requests are coalesced: at most one
drain runs at a time, and any number of requests arriving during a drain
schedule exactly one follow-up drain.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..config import SyncPolicy
from ..exceptions import RemoteRejectedError, RemoteUnreachableError
from ..local.store import LocalStore
from ..records import Record, RecordKey, record_key_from_body
from ..remote.client import RemoteClient, RemoteRequest
from .network import ConnectivityState, NetworkMonitor
from .queue import DrainResult, OfflineQueue, QueueEntry, ReplayResult

logger = logging.getLogger(__name__)


class WriteState(Enum):
    """Where a write ended up."""

    LOCAL_COMMITTED = "local_committed"  # Local only; remote sync disabled
    REMOTE_ATTEMPTED = "remote_attempted"
    QUEUED = "queued"
    SYNCED = "synced"
    REJECTED = "rejected"


@dataclass
class SyncOutcome:
    """Tagged result of mirroring one write to the remote API.

    Attributes:
        state: Terminal state of the write
        entry_id: Offline queue id when state is QUEUED
        error: The remote refusal when state is REJECTED
        reason: Why the write was queued
    """

    state: WriteState
    entry_id: int | None = None
    error: RemoteRejectedError | None = None
    reason: str | None = None


@dataclass
class WriteResult:
    """A locally committed write and its sync outcome."""

    record: Record | None
    outcome: SyncOutcome

    @property
    def state(self) -> WriteState:
        return self.outcome.state


@dataclass
class SyncErrorRecord:
    """A queued write the remote API refused during replay."""

    entry_id: int
    method: str
    endpoint: str
    status: int
    message: str
    dropped: bool
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class SyncStatus:
    """Snapshot of the sync engine for diagnostics."""

    connectivity: ConnectivityState
    remote_enabled: bool
    pending: int
    draining: bool
    last_drain_at: datetime | None = None
    last_drain: DrainResult | None = None
    errors: list[SyncErrorRecord] = field(default_factory=list)

    @property
    def is_synced(self) -> bool:
        return self.pending == 0


class SyncCoordinator:
    """Routes writes to the local store and mirrors them to the remote API.

    Handles:
    - The per-write state machine
    - Queuing undeliverable writes
    - Coalesced drains on reconnect
    - Periodic retry while online with pending writes
    """

    def __init__(
        self,
        local: LocalStore,
        queue: OfflineQueue,
        monitor: NetworkMonitor,
        policy: SyncPolicy,
        remote: RemoteClient | None = None,
        retry_interval: float = 0.0,
        drop_rejected: bool = False,
        on_sync_error: Callable[[SyncErrorRecord], None] | None = None,
        max_error_history: int = 50,
    ) -> None:
        """Initialize the coordinator.

        Args:
            local: Local store, source of truth for reads
            queue: Offline queue for undelivered writes
            monitor: Network monitor providing connectivity
            policy: Sync policy; remote sync is dormant when disabled
            remote: Remote client (required when the policy enables remote sync)
            retry_interval: Seconds between automatic drains while online; 0 disables
            drop_rejected: Discard queued writes the remote refuses during replay
            on_sync_error: Callback invoked for each refusal during replay
            max_error_history: Number of sync errors kept for status()
        """
        if policy.remote_enabled and remote is None:
            raise ValueError("A remote client is required when remote sync is enabled")

        self.local = local
        self.queue = queue
        self.monitor = monitor
        self.policy = policy
        self.remote = remote
        self.retry_interval = retry_interval
        self.drop_rejected = drop_rejected
        self.on_sync_error = on_sync_error

        self._drain_task: asyncio.Task[DrainResult | None] | None = None
        self._drain_requested = False
        self._retry_task: asyncio.Task[None] | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._last_drain: DrainResult | None = None
        self._errors: deque[SyncErrorRecord] = deque(maxlen=max_error_history)
        self._key_locks: dict[RecordKey, asyncio.Lock] = {}
        self._key_users: dict[RecordKey, int] = {}
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to connectivity changes and start the retry loop."""
        if self._running:
            return
        self._running = True

        if not self.policy.remote_enabled:
            logger.info("Remote sync disabled; running in local-only mode")
            return

        self._unsubscribe = self.monitor.subscribe(self._on_connectivity_change)
        await self.queue.load()

        if self.retry_interval > 0:
            self._retry_task = asyncio.create_task(self._retry_loop())

        if self.monitor.is_online and await self.queue.replayable():
            self.request_drain()

    async def stop(self) -> None:
        """Stop background work, letting an in-flight drain finish."""
        self._running = False

        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        if self._retry_task:
            self._retry_task.cancel()
            try:
                await self._retry_task
            except asyncio.CancelledError:
                pass
            self._retry_task = None

        if self._drain_task and not self._drain_task.done():
            self._drain_requested = False
            try:
                await self._drain_task
            except Exception:
                logger.debug("Drain failed during shutdown", exc_info=True)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save(self, collection: str, key: str, payload: Any) -> WriteResult:
        """Insert or replace a record, then mirror it."""
        record = self.local.put(collection, key, payload)
        outcome = await self.mirror(RemoteRequest.save(record))
        return WriteResult(record, outcome)

    async def update(self, collection: str, key: str, partial: dict[str, Any]) -> WriteResult | None:
        """Patch a record, then mirror the patch.

        Returns:
            None if the record does not exist locally (nothing is mirrored)
        """
        record = self.local.update(collection, key, partial)
        if record is None:
            return None
        outcome = await self.mirror(RemoteRequest.update(collection, key, partial, record.version))
        return WriteResult(record, outcome)

    async def delete(self, collection: str, key: str) -> tuple[bool, SyncOutcome]:
        """Delete a record locally, then mirror the delete.

        Returns:
            Whether the record existed locally, and the sync outcome
        """
        existed = self.local.delete(collection, key)
        outcome = await self.mirror(RemoteRequest.delete(collection, key))
        return existed, outcome

    async def mirror(self, request: RemoteRequest) -> SyncOutcome:
        """Deliver an already committed write, or queue it.

        Transient remote failures are absorbed here and never raised.
        A refusal is returned as a REJECTED outcome for the caller to surface.

        Raises:
            QueueFullError: If the write must be queued but the queue is full
        """
        if not self.policy.remote_enabled or self.remote is None:
            return SyncOutcome(WriteState.LOCAL_COMMITTED)

        key = record_key_from_body(request.payload)
        async with self._key_guard(key):
            if not self.monitor.is_online:
                return await self._enqueue(request, "offline")

            if key is not None and await self.queue.has_pending(key):
                return await self._enqueue(
                    request, f"earlier writes to {key.collection}/{key.key} pending"
                )

            # REMOTE_ATTEMPTED
            try:
                await self.remote.send(request)
            except RemoteRejectedError as e:
                logger.error(
                    f"Remote rejected {request.method.value} {request.endpoint} "
                    f"({e.status}): {e.message}"
                )
                return SyncOutcome(WriteState.REJECTED, error=e)
            except RemoteUnreachableError as e:
                logger.warning(f"Remote write failed, queuing for later: {e.message}")
                return await self._enqueue(request, e.message)

            return SyncOutcome(WriteState.SYNCED)

    @asynccontextmanager
    async def _key_guard(self, key: RecordKey | None) -> AsyncIterator[None]:
        """Serialize live mirroring of writes to one record, in arrival order."""
        if key is None:
            yield
            return

        lock = self._key_locks.setdefault(key, asyncio.Lock())
        self._key_users[key] = self._key_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._key_users[key] -= 1
            if not self._key_users[key]:
                del self._key_users[key]
                del self._key_locks[key]

    async def _enqueue(self, request: RemoteRequest, reason: str) -> SyncOutcome:
        entry_id = await self.queue.enqueue(request)
        logger.info(f"Queued {request.method.value} {request.endpoint} as #{entry_id} ({reason})")
        return SyncOutcome(WriteState.QUEUED, entry_id=entry_id, reason=reason)

    # ------------------------------------------------------------------
    # Drains
    # ------------------------------------------------------------------

    @property
    def draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def request_drain(self) -> asyncio.Task[DrainResult | None]:
        """Start a drain, or schedule one follow-up if a drain is running.

        Returns:
            The task running the current drain cycle
        """
        if self.draining:
            self._drain_requested = True
            return self._drain_task  # type: ignore[return-value]

        self._drain_task = asyncio.create_task(self._run_drains())
        self._drain_task.add_done_callback(self._drain_done)
        return self._drain_task

    async def sync_now(self) -> DrainResult | None:
        """Drain the queue now (joining a running drain) and return the last result."""
        return await self.request_drain()

    async def retry_rejected(self, ids: list[int] | None = None) -> int:
        """Release parked writes for replay and start a drain if online.

        Args:
            ids: Queue entry ids to release; None releases all of them

        Returns:
            Number of entries released
        """
        released = await self.queue.release(ids)
        if released and self._running and self.monitor.is_online:
            self.request_drain()
        return released

    async def wait_for_drain(self) -> DrainResult | None:
        """Wait for the running drain cycle, if any, including its follow-ups."""
        task = self._drain_task
        if task is None:
            return None
        return await task

    async def _run_drains(self) -> DrainResult | None:
        result: DrainResult | None = None
        while True:
            self._drain_requested = False
            result = await self._drain_once()
            if not self._drain_requested:
                return result

    async def _drain_once(self) -> DrainResult | None:
        if not self.policy.remote_enabled or self.remote is None:
            return None
        if not self.monitor.is_online:
            logger.debug("Skipping drain while offline")
            return None

        result = await self.queue.drain(self._replay)
        self._last_drain = result

        if result.succeeded or result.dropped or (result.failed and not result.blocked):
            logger.info(
                f"Drain finished: {len(result.succeeded)} delivered, "
                f"{len(result.dropped)} dropped, {len(result.remaining)} pending"
            )
        return result

    def _drain_done(self, task: asyncio.Task[DrainResult | None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Drain aborted: {exc}", exc_info=exc)

    async def _replay(self, entry: QueueEntry) -> ReplayResult:
        assert self.remote is not None
        try:
            await self.remote.send(entry.request)
        except RemoteRejectedError as e:
            error = SyncErrorRecord(
                entry_id=entry.id,
                method=entry.method.value,
                endpoint=entry.endpoint,
                status=e.status,
                message=e.message,
                dropped=self.drop_rejected,
            )
            self._report_sync_error(error)
            if self.drop_rejected:
                return ReplayResult.dropped(e.message)
            return ReplayResult.parked(f"rejected ({e.status}): {e.message}")
        except RemoteUnreachableError as e:
            logger.info(f"Replay of #{entry.id} failed, will retry: {e.message}")
            return ReplayResult.transient(e.message)
        return ReplayResult.ok()

    def _report_sync_error(self, error: SyncErrorRecord) -> None:
        self._errors.append(error)
        logger.error(
            f"Remote rejected queued write #{error.entry_id} "
            f"{error.method} {error.endpoint} ({error.status}): {error.message}"
        )
        if self.on_sync_error:
            try:
                self.on_sync_error(error)
            except Exception:
                logger.exception("Sync error callback failed")

    def _on_connectivity_change(self, state: ConnectivityState) -> None:
        if state is ConnectivityState.ONLINE and self._running:
            self.request_drain()

    async def _retry_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.retry_interval)
                if self.monitor.is_online and not self.draining and await self.queue.replayable():
                    self.request_drain()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Retry loop iteration failed")

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def status(self) -> SyncStatus:
        """Get a snapshot of the sync engine."""
        last = self._last_drain
        return SyncStatus(
            connectivity=self.monitor.current_status(),
            remote_enabled=self.policy.remote_enabled,
            pending=await self.queue.size() if self.policy.remote_enabled else 0,
            draining=self.draining,
            last_drain_at=last.finished_at if last else None,
            last_drain=last,
            errors=list(self._errors),
        )
