"""
Durable offline queue.

Holds writes that could not be delivered to the remote API, in the order
they were issued. The queue is a JSONL file: each enqueue appends one
fsynced line; removals rewrite the file atomically. The first line of a
rewritten file is a header carrying the next sequence number so ids stay
unique after the queue empties.

Entries leave the queue only when a replay succeeds or when they are
purged explicitly. An entry the remote API refused is parked: it stays
at its place in the queue and drains stop at it without replaying it
until it is released or purged.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ..exceptions import QueueCorruptError, QueueError, QueueFullError
from ..local.file_ops import append_jsonl, is_disk_full, read_jsonl, write_jsonl_atomic
from ..logging_utils import StorageLoggerAdapter
from ..records import RecordKey, record_key_from_body
from ..remote.client import HttpMethod, RemoteRequest

logger = logging.getLogger(__name__)

HEADER_FIELD = "_queue"


class ReplayOutcome(Enum):
    """What a replay function reports for one entry."""

    SUCCESS = "success"  # Delivered; entry is removed
    TRANSIENT = "transient"  # Not delivered; entry stays and the drain stops
    DROPPED = "dropped"  # Permanently refused and discarded by policy
    PARKED = "parked"  # Permanently refused; entry stays and blocks later drains


@dataclass(frozen=True)
class ReplayResult:
    """Outcome of replaying one entry, with the error text on failure."""

    outcome: ReplayOutcome
    error: str | None = None

    @classmethod
    def ok(cls) -> ReplayResult:
        return cls(ReplayOutcome.SUCCESS)

    @classmethod
    def transient(cls, error: str) -> ReplayResult:
        return cls(ReplayOutcome.TRANSIENT, error)

    @classmethod
    def dropped(cls, error: str) -> ReplayResult:
        return cls(ReplayOutcome.DROPPED, error)

    @classmethod
    def parked(cls, error: str) -> ReplayResult:
        return cls(ReplayOutcome.PARKED, error)


ReplayFn = Callable[["QueueEntry"], Awaitable[ReplayResult]]


@dataclass
class QueueEntry:
    """A write waiting for delivery.

    Attributes:
        id: Sequence number; defines replay order
        endpoint: API endpoint, relative to the base URL
        method: HTTP method
        payload: Request body
        enqueued_at: When the write was queued
        attempts: Number of failed replay attempts
        last_error: Error from the most recent failed attempt
        parked: Refused by the remote API; not replayed until released
    """

    id: int
    endpoint: str
    method: HttpMethod
    payload: Any
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0
    last_error: str | None = None
    parked: bool = False

    @property
    def record_key(self) -> RecordKey | None:
        """Identity of the record this entry writes, if it targets one."""
        return record_key_from_body(self.payload)

    @property
    def request(self) -> RemoteRequest:
        return RemoteRequest(self.method, self.endpoint, self.payload)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "endpoint": self.endpoint,
            "method": self.method.value,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at.isoformat(),
            "attempts": self.attempts,
            "last_error": self.last_error,
            "parked": self.parked,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueEntry:
        """Create from dictionary."""
        enqueued_at = data.get("enqueued_at")
        return cls(
            id=int(data["id"]),
            endpoint=data["endpoint"],
            method=HttpMethod(data["method"]),
            payload=data.get("payload"),
            enqueued_at=(
                datetime.fromisoformat(enqueued_at) if enqueued_at else datetime.now(UTC)
            ),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
            parked=bool(data.get("parked", False)),
        )


@dataclass
class DrainResult:
    """Result of one drain pass.

    Attributes:
        succeeded: Ids delivered and removed, in replay order
        failed: Id of the entry that stopped the drain (at most one)
        dropped: Ids discarded after a permanent refusal
        remaining: Ids still queued when the drain finished
        blocked: True if the drain stopped at a parked entry without replaying it
    """

    succeeded: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    dropped: list[int] = field(default_factory=list)
    remaining: list[int] = field(default_factory=list)
    blocked: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def completed(self) -> bool:
        """True if the drain did not stop on a failure."""
        return not self.failed


class OfflineQueue:
    """Ordered, durable log of undelivered writes.

    Enqueue and removal never interleave mid-entry (single writer lock),
    and at most one drain runs at a time (drain lock). Writes enqueued
    while a drain is running land after every entry being drained.
    """

    def __init__(self, path: Path, max_entries: int = 10_000):
        """Initialize the queue.

        Args:
            path: Path to the queue file
            max_entries: Capacity; enqueue beyond it raises QueueFullError
        """
        self.path = Path(path)
        self.max_entries = max_entries
        self._entries: list[QueueEntry] = []
        self._next_id = 1
        self._loaded = False
        self._lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()

    async def load(self) -> None:
        """Load the queue from disk if not already loaded."""
        async with self._lock:
            await self._ensure_loaded()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return

        try:
            content = await read_jsonl(self.path)
        except (json.JSONDecodeError, ValueError) as e:
            raise QueueCorruptError(
                f"Offline queue is corrupt: {self.path}", str(self.path), e
            ) from e
        except OSError as e:
            raise QueueError(f"Failed to read offline queue: {self.path}", str(self.path), e) from e

        entries: list[QueueEntry] = []
        next_id = 1
        for item in content.items:
            if HEADER_FIELD in item:
                next_id = max(next_id, int(item[HEADER_FIELD].get("next_id", 1)))
                continue
            try:
                entry = QueueEntry.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                raise QueueCorruptError(
                    f"Invalid entry in offline queue: {item!r}", str(self.path), e
                ) from e
            if entries and entry.id <= entries[-1].id:
                raise QueueCorruptError(
                    f"Offline queue out of order at id {entry.id}", str(self.path)
                )
            entries.append(entry)

        self._entries = entries
        self._next_id = max(next_id, entries[-1].id + 1 if entries else 1)
        self._loaded = True

        if content.torn_tail is not None:
            # An append that never returned; drop it before appending after it
            logger.warning(f"Discarding incomplete trailing entry in {self.path}")
            await self._persist()

        if entries:
            logger.info(f"Loaded {len(entries)} pending writes from {self.path}")

    async def _persist(self) -> None:
        """Rewrite the queue file from memory."""
        lines = [{HEADER_FIELD: {"next_id": self._next_id}}]
        lines.extend(entry.to_dict() for entry in self._entries)
        try:
            await write_jsonl_atomic(self.path, lines)
        except OSError as e:
            if is_disk_full(e):
                raise QueueFullError(
                    f"No space left to rewrite {self.path}", str(self.path), e
                ) from e
            raise QueueError(f"Failed to write offline queue: {self.path}", str(self.path), e) from e

    async def enqueue(self, request: RemoteRequest) -> int:
        """Append a write durably.

        Returns:
            The entry id

        Raises:
            QueueFullError: If the queue is at capacity or the disk is full
        """
        async with self._lock:
            await self._ensure_loaded()

            if len(self._entries) >= self.max_entries:
                raise QueueFullError(
                    f"Offline queue is full ({self.max_entries} entries)", str(self.path)
                )

            entry = QueueEntry(
                id=self._next_id,
                endpoint=request.endpoint,
                method=request.method,
                payload=request.payload,
            )
            try:
                await append_jsonl(self.path, entry.to_dict())
            except (TypeError, ValueError) as e:
                raise QueueError(
                    f"Queue entry is not JSON-serializable: {e}", str(self.path), e
                ) from e
            except OSError as e:
                if is_disk_full(e):
                    raise QueueFullError(
                        f"No space left to append to {self.path}", str(self.path), e
                    ) from e
                raise QueueError(
                    f"Failed to append to offline queue: {self.path}", str(self.path), e
                ) from e

            self._entries.append(entry)
            self._next_id += 1
            logger.debug(f"Queued {entry.method.value} {entry.endpoint} as #{entry.id}")
            return entry.id

    async def size(self) -> int:
        """Number of queued entries."""
        async with self._lock:
            await self._ensure_loaded()
            return len(self._entries)

    async def peek_all(self) -> list[QueueEntry]:
        """Copy of all queued entries in replay order."""
        async with self._lock:
            await self._ensure_loaded()
            return [QueueEntry.from_dict(entry.to_dict()) for entry in self._entries]

    async def has_pending(self, key: RecordKey) -> bool:
        """Check whether any queued entry targets the given record."""
        async with self._lock:
            await self._ensure_loaded()
            return any(entry.record_key == key for entry in self._entries)

    async def replayable(self) -> bool:
        """Check whether a drain would replay anything (queue not empty, head not parked)."""
        async with self._lock:
            await self._ensure_loaded()
            return bool(self._entries) and not self._entries[0].parked

    async def release(self, ids: Iterable[int] | None = None) -> int:
        """Clear the parked flag so the next drain replays those entries again.

        Args:
            ids: Entry ids to release; None releases every parked entry

        Returns:
            Number of entries released
        """
        async with self._lock:
            await self._ensure_loaded()
            wanted = None if ids is None else set(ids)
            released = 0
            for entry in self._entries:
                if entry.parked and (wanted is None or entry.id in wanted):
                    entry.parked = False
                    released += 1
            if released:
                await self._persist()
                logger.info(f"Released {released} parked writes for replay")
            return released

    async def purge(self, ids: Iterable[int] | None = None) -> int:
        """Remove entries without replaying them.

        Args:
            ids: Entry ids to remove; None removes everything

        Returns:
            Number of entries removed
        """
        async with self._lock:
            await self._ensure_loaded()
            before = len(self._entries)
            if ids is None:
                self._entries = []
            else:
                doomed = set(ids)
                self._entries = [e for e in self._entries if e.id not in doomed]
            removed = before - len(self._entries)
            if removed:
                await self._persist()
                logger.warning(f"Purged {removed} pending writes from offline queue")
            return removed

    async def _remove(self, entry_id: int) -> None:
        async with self._lock:
            self._entries = [e for e in self._entries if e.id != entry_id]
            await self._persist()

    async def _record_failure(self, entry_id: int, error: str, park: bool = False) -> None:
        async with self._lock:
            for entry in self._entries:
                if entry.id == entry_id:
                    entry.attempts += 1
                    entry.last_error = error
                    entry.parked = entry.parked or park
                    await self._persist()
                    return

    async def drain(self, replay: ReplayFn) -> DrainResult:
        """Replay queued entries in id order, stopping at the first failure.

        Entries are removed one by one as their replay succeeds, so an
        interrupted drain resumes from the first undelivered entry.
        Entries enqueued after the drain starts are left for the next drain.

        Args:
            replay: Called once per entry with a copy of it; returns a ReplayResult

        Returns:
            DrainResult describing what was delivered and what remains
        """
        async with self._drain_lock:
            async with self._lock:
                await self._ensure_loaded()
                batch = [entry.id for entry in self._entries]

            result = DrainResult()
            for entry_id in batch:
                entry = await self._get(entry_id)
                if entry is None:
                    # Purged while the drain was running
                    continue

                record_key = entry.record_key
                log = StorageLoggerAdapter(
                    logger,
                    entry_id=entry.id,
                    collection=record_key.collection if record_key else None,
                    key=record_key.key if record_key else None,
                    method=entry.method.value,
                )
                if entry.parked:
                    result.failed.append(entry.id)
                    result.blocked = True
                    log.debug(f"Drain stopped at parked entry #{entry.id}")
                    break

                try:
                    replayed = await replay(entry)
                except Exception as e:
                    await self._record_failure(entry.id, str(e))
                    result.failed.append(entry.id)
                    raise

                if replayed.outcome is ReplayOutcome.SUCCESS:
                    await self._remove(entry.id)
                    result.succeeded.append(entry.id)
                    log.debug(f"Replayed #{entry.id} {entry.method.value} {entry.endpoint}")
                elif replayed.outcome is ReplayOutcome.DROPPED:
                    await self._remove(entry.id)
                    result.dropped.append(entry.id)
                    log.warning(
                        f"Dropped #{entry.id} {entry.method.value} {entry.endpoint}: "
                        f"{replayed.error}"
                    )
                elif replayed.outcome is ReplayOutcome.PARKED:
                    await self._record_failure(entry.id, replayed.error or "rejected", park=True)
                    result.failed.append(entry.id)
                    log.warning(
                        f"Parked #{entry.id} {entry.method.value} {entry.endpoint}: "
                        f"{replayed.error}"
                    )
                    break
                else:
                    await self._record_failure(entry.id, replayed.error or "replay failed")
                    result.failed.append(entry.id)
                    break

            async with self._lock:
                result.remaining = [entry.id for entry in self._entries]
            result.finished_at = datetime.now(UTC)
            return result

    async def _get(self, entry_id: int) -> QueueEntry | None:
        async with self._lock:
            for entry in self._entries:
                if entry.id == entry_id:
                    return QueueEntry.from_dict(entry.to_dict())
            return None
