"""Tests for the durable offline queue."""

from __future__ import annotations

import asyncio
import errno
import json
from pathlib import Path

import pytest

from hybrid_storage.exceptions import QueueCorruptError, QueueFullError
from hybrid_storage.records import RecordKey
from hybrid_storage.remote.client import HttpMethod, RemoteRequest
from hybrid_storage.sync.queue import OfflineQueue, QueueEntry, ReplayResult


def save_request(key: str, version: int = 1, collection: str = "personnel") -> RemoteRequest:
    return RemoteRequest(
        HttpMethod.POST, "/data", {"collection": collection, "id": key, "version": version}
    )


@pytest.fixture
def queue_path(tmp_path: Path) -> Path:
    return tmp_path / "sync" / "queue.jsonl"


@pytest.fixture
def queue(queue_path: Path) -> OfflineQueue:
    return OfflineQueue(queue_path)


async def fill(queue: OfflineQueue, *keys: str) -> list[int]:
    return [await queue.enqueue(save_request(key)) for key in keys]


class Recorder:
    """Replay function that records entry ids and fails on chosen ids."""

    def __init__(self, fail_on: set[int] | None = None, delay: float = 0.0) -> None:
        self.replayed: list[int] = []
        self.fail_on = fail_on or set()
        self.delay = delay

    async def __call__(self, entry: QueueEntry) -> ReplayResult:
        self.replayed.append(entry.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if entry.id in self.fail_on:
            return ReplayResult.transient("connection refused")
        return ReplayResult.ok()


class TestEnqueue:
    async def test_ids_increase_in_order(self, queue: OfflineQueue) -> None:
        ids = await fill(queue, "a", "b", "c")

        assert ids == [1, 2, 3]
        entries = await queue.peek_all()
        assert [e.payload["id"] for e in entries] == ["a", "b", "c"]
        assert await queue.size() == 3

    async def test_entries_survive_restart(self, queue: OfflineQueue, queue_path: Path) -> None:
        await fill(queue, "a", "b")

        reopened = OfflineQueue(queue_path)
        entries = await reopened.peek_all()
        assert [e.id for e in entries] == [1, 2]
        assert entries[0].method is HttpMethod.POST
        assert entries[0].endpoint == "/data"

    async def test_ids_unique_after_queue_empties(
        self, queue: OfflineQueue, queue_path: Path
    ) -> None:
        await fill(queue, "a", "b")
        await queue.drain(Recorder())

        reopened = OfflineQueue(queue_path)
        assert await reopened.enqueue(save_request("c")) == 3

    async def test_capacity(self, queue_path: Path) -> None:
        queue = OfflineQueue(queue_path, max_entries=2)
        await fill(queue, "a", "b")

        with pytest.raises(QueueFullError):
            await queue.enqueue(save_request("c"))
        assert await queue.size() == 2

    async def test_disk_full(self, queue: OfflineQueue, monkeypatch: pytest.MonkeyPatch) -> None:
        async def no_space(path: Path, data: object) -> None:
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr("hybrid_storage.sync.queue.append_jsonl", no_space)

        with pytest.raises(QueueFullError):
            await queue.enqueue(save_request("a"))
        assert await queue.size() == 0

    async def test_has_pending(self, queue: OfflineQueue) -> None:
        await fill(queue, "a")

        assert await queue.has_pending(RecordKey("personnel", "a"))
        assert not await queue.has_pending(RecordKey("personnel", "b"))
        assert not await queue.has_pending(RecordKey("schedules", "a"))


class TestDrain:
    async def test_replays_in_order_and_empties(self, queue: OfflineQueue) -> None:
        await fill(queue, "a", "b", "c")
        replay = Recorder()

        result = await queue.drain(replay)

        assert replay.replayed == [1, 2, 3]
        assert result.succeeded == [1, 2, 3]
        assert result.remaining == []
        assert result.completed
        assert await queue.size() == 0

    async def test_stops_at_first_failure(self, queue: OfflineQueue) -> None:
        await fill(queue, "a", "b", "c", "d", "e")
        replay = Recorder(fail_on={3})

        result = await queue.drain(replay)

        assert replay.replayed == [1, 2, 3]
        assert result.succeeded == [1, 2]
        assert result.failed == [3]
        assert result.remaining == [3, 4, 5]
        assert not result.completed

        entries = await queue.peek_all()
        assert [e.id for e in entries] == [3, 4, 5]
        assert entries[0].attempts == 1
        assert entries[0].last_error == "connection refused"

    async def test_progress_is_durable(self, queue: OfflineQueue, queue_path: Path) -> None:
        await fill(queue, "a", "b", "c")
        await queue.drain(Recorder(fail_on={2}))

        reopened = OfflineQueue(queue_path)
        assert [e.id for e in await reopened.peek_all()] == [2, 3]

    async def test_dropped_entries_are_removed(self, queue: OfflineQueue) -> None:
        await fill(queue, "a", "b")

        async def refuse_first(entry: QueueEntry) -> ReplayResult:
            if entry.id == 1:
                return ReplayResult.dropped("invalid record")
            return ReplayResult.ok()

        result = await queue.drain(refuse_first)

        assert result.dropped == [1]
        assert result.succeeded == [2]
        assert await queue.size() == 0

    async def test_replay_exception_keeps_entry(self, queue: OfflineQueue) -> None:
        await fill(queue, "a", "b")

        async def explode(entry: QueueEntry) -> ReplayResult:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await queue.drain(explode)

        entries = await queue.peek_all()
        assert [e.id for e in entries] == [1, 2]
        assert entries[0].last_error == "boom"

    async def test_replay_gets_a_copy(self, queue: OfflineQueue) -> None:
        await fill(queue, "a")

        async def mutate(entry: QueueEntry) -> ReplayResult:
            entry.payload["id"] = "changed"
            return ReplayResult.transient("offline")

        await queue.drain(mutate)

        assert (await queue.peek_all())[0].payload["id"] == "a"

    async def test_entries_added_during_drain_wait_for_next_drain(
        self, queue: OfflineQueue
    ) -> None:
        await fill(queue, "a", "b")
        replayed: list[int] = []

        async def replay(entry: QueueEntry) -> ReplayResult:
            replayed.append(entry.id)
            if entry.id == 1:
                await queue.enqueue(save_request("c"))
            return ReplayResult.ok()

        first = await queue.drain(replay)
        assert first.succeeded == [1, 2]
        assert first.remaining == [3]

        second = await queue.drain(replay)
        assert second.succeeded == [3]
        assert replayed == [1, 2, 3]

    async def test_concurrent_drains_replay_each_entry_once(self, queue: OfflineQueue) -> None:
        await fill(queue, "a", "b", "c")
        replay = Recorder(delay=0.01)

        await asyncio.gather(queue.drain(replay), queue.drain(replay))

        assert replay.replayed == [1, 2, 3]
        assert await queue.size() == 0

    async def test_purged_entries_are_skipped(self, queue: OfflineQueue) -> None:
        await fill(queue, "a", "b", "c")
        replayed: list[int] = []

        async def replay(entry: QueueEntry) -> ReplayResult:
            replayed.append(entry.id)
            if entry.id == 1:
                await queue.purge([2])
            return ReplayResult.ok()

        result = await queue.drain(replay)

        assert replayed == [1, 3]
        assert result.succeeded == [1, 3]


class RefuseFirstAttempt:
    """Replay function that refuses entry 1 the first time it sees it."""

    def __init__(self) -> None:
        self.replayed: list[int] = []

    async def __call__(self, entry: QueueEntry) -> ReplayResult:
        seen = entry.id in self.replayed
        self.replayed.append(entry.id)
        if entry.id == 1 and not seen:
            return ReplayResult.parked("rejected (400): invalid record")
        return ReplayResult.ok()


class TestParking:
    async def test_parked_entry_is_not_replayed_again(
        self, queue: OfflineQueue, queue_path: Path
    ) -> None:
        await fill(queue, "a", "b")
        replay = RefuseFirstAttempt()

        first = await queue.drain(replay)
        second = await OfflineQueue(queue_path).drain(replay)

        assert first.failed == [1] and not first.blocked
        assert second.failed == [1] and second.blocked
        assert replay.replayed == [1]
        entry = (await queue.peek_all())[0]
        assert entry.parked
        assert entry.last_error == "rejected (400): invalid record"
        assert not await queue.replayable()

    async def test_release_makes_entry_replayable(self, queue: OfflineQueue) -> None:
        await fill(queue, "a", "b")
        replay = RefuseFirstAttempt()
        await queue.drain(replay)

        assert await queue.release([2]) == 0
        assert await queue.release() == 1
        assert await queue.replayable()

        result = await queue.drain(replay)

        assert result.succeeded == [1, 2]
        assert await queue.size() == 0


class TestPurge:
    async def test_purge_selected(self, queue: OfflineQueue) -> None:
        await fill(queue, "a", "b", "c")

        assert await queue.purge([1, 3, 99]) == 2
        assert [e.id for e in await queue.peek_all()] == [2]

    async def test_purge_all(self, queue: OfflineQueue, queue_path: Path) -> None:
        await fill(queue, "a", "b")

        assert await queue.purge() == 2
        assert await OfflineQueue(queue_path).size() == 0


class TestRecovery:
    def _write_lines(self, path: Path, lines: list[str]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("".join(lines))

    def _entry_line(self, entry_id: int, key: str) -> str:
        request = save_request(key)
        entry = QueueEntry(entry_id, request.endpoint, request.method, request.payload)
        return json.dumps(entry.to_dict()) + "\n"

    async def test_torn_trailing_line_is_discarded(self, queue_path: Path) -> None:
        self._write_lines(
            queue_path,
            [self._entry_line(1, "a"), '{"id": 2, "endpoint": "/da'],
        )

        queue = OfflineQueue(queue_path)
        assert [e.id for e in await queue.peek_all()] == [1]

        # The file was repaired, so later appends stay readable
        assert await queue.enqueue(save_request("b")) == 2
        assert [e.id for e in await OfflineQueue(queue_path).peek_all()] == [1, 2]

    async def test_corrupt_line_raises(self, queue_path: Path) -> None:
        self._write_lines(
            queue_path,
            [self._entry_line(1, "a"), "garbage\n", self._entry_line(2, "b")],
        )

        with pytest.raises(QueueCorruptError):
            await OfflineQueue(queue_path).load()

    async def test_out_of_order_ids_raise(self, queue_path: Path) -> None:
        self._write_lines(queue_path, [self._entry_line(2, "a"), self._entry_line(1, "b")])

        with pytest.raises(QueueCorruptError):
            await OfflineQueue(queue_path).load()

    async def test_invalid_entry_raises(self, queue_path: Path) -> None:
        self._write_lines(queue_path, ['{"id": 1}\n'])

        with pytest.raises(QueueCorruptError):
            await OfflineQueue(queue_path).load()
