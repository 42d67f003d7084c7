"""End-to-end tests for the storage facade."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from hybrid_storage.config import StorageConfig
from hybrid_storage.exceptions import (
    AuthUnavailableError,
    InvalidPayloadError,
    RecordNotFoundError,
    RemoteRejectedError,
    RemoteUnreachableError,
    WriteRejectedError,
)
from hybrid_storage.facade import StorageFacade, create_storage
from hybrid_storage.records import Record
from hybrid_storage.sync.coordinator import WriteState
from hybrid_storage.sync.network import NetworkMonitor
from hybrid_storage.sync.queue import DrainResult

if TYPE_CHECKING:
    from conftest import FakeProbe, FakeRemote


def unreachable() -> RemoteUnreachableError:
    return RemoteUnreachableError("connection refused", "POST", "/data")


@pytest.fixture
async def storage(
    config: StorageConfig, fake_remote: FakeRemote, monitor: NetworkMonitor
) -> AsyncIterator[StorageFacade]:
    facade = StorageFacade(config, remote=fake_remote, monitor=monitor)
    async with facade:
        # Let the startup drain finish before the test drives connectivity
        await facade.coordinator.wait_for_drain()
        yield facade


async def reconnect(storage: StorageFacade) -> DrainResult | None:
    storage.monitor.report(False)
    storage.monitor.report(True)
    return await storage.coordinator.wait_for_drain()


class TestReadYourWrites:
    @pytest.mark.parametrize("online", [True, False])
    async def test_read_after_write(self, storage: StorageFacade, online: bool) -> None:
        storage.monitor.report(online)

        await storage.write("personnel", {"name": "Ana"}, key="p-1")

        assert storage.read("personnel", "p-1").payload == {"name": "Ana"}

    async def test_write_while_remote_unreachable(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        fake_remote.fail_all = unreachable()

        result = await storage.write("personnel", {"name": "Ana"}, key="p-1")

        assert result.state is WriteState.QUEUED
        assert storage.read("personnel", "p-1").payload == {"name": "Ana"}

    async def test_generated_key(self, storage: StorageFacade) -> None:
        result = await storage.write("personnel", {"name": "Ana"})

        assert result.record.key
        assert storage.read("personnel", result.record.key).payload == {"name": "Ana"}

    async def test_read_collection(self, storage: StorageFacade) -> None:
        await storage.write("personnel", {"name": "Ana"}, key="p-1")
        await storage.write("personnel", {"name": "Ben"}, key="p-2")

        assert [r.key for r in storage.read("personnel")] == ["p-1", "p-2"]
        assert storage.read("personnel", "nobody") is None

    async def test_invalid_payload_is_not_mirrored(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        with pytest.raises(InvalidPayloadError):
            await storage.write("personnel", {"when": object()}, key="p-1")

        assert fake_remote.calls == []
        assert storage.read("personnel", "p-1") is None


class TestQueueing:
    async def test_unreachable_adds_exactly_one_entry(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        fake_remote.fail_next(unreachable())
        before = len(await storage.pending_writes())

        await storage.write("personnel", {"name": "Ana"}, key="p-1")

        pending = await storage.pending_writes()
        assert len(pending) == before + 1
        assert pending[-1].payload["name"] == "Ana"

    async def test_rejected_write_surfaces_and_is_not_queued(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        fake_remote.fail_next(RemoteRejectedError("Missing collection", 400))

        with pytest.raises(WriteRejectedError) as exc_info:
            await storage.write("personnel", {"name": "Ana"}, key="p-1")

        assert exc_info.value.record.payload == {"name": "Ana"}
        assert await storage.pending_writes() == []
        assert storage.read("personnel", "p-1").payload == {"name": "Ana"}

    async def test_rejected_delete_surfaces(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        await storage.write("personnel", {"name": "Ana"}, key="p-1")
        fake_remote.fail_next(RemoteRejectedError("Forbidden", 403))

        with pytest.raises(WriteRejectedError) as exc_info:
            await storage.remove("personnel", "p-1")

        assert exc_info.value.record is None
        assert storage.read("personnel", "p-1") is None

    async def test_a_b_c_scenario(self, storage: StorageFacade, fake_remote: FakeRemote) -> None:
        await storage.write("items", {"name": "A"}, key="a")
        fake_remote.fail_next(unreachable(), unreachable())
        await storage.write("items", {"name": "B"}, key="b")
        await storage.write("items", {"name": "C"}, key="c")

        assert [e.payload["id"] for e in await storage.pending_writes()] == ["b", "c"]

        calls_before = len(fake_remote.calls)
        await reconnect(storage)

        assert await storage.pending_writes() == []
        assert [r.payload["id"] for r in fake_remote.calls[calls_before:]] == ["b", "c"]
        assert fake_remote.sent_ids() == ["a", "b", "c"]

    async def test_duplicate_drain_trigger_is_idempotent(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        storage.monitor.report(False)
        await storage.write("items", {"name": "A"}, key="a")

        await reconnect(storage)
        await reconnect(storage)
        await storage.sync_now()

        assert len(fake_remote.calls) == 1
        assert list(fake_remote.documents["items"]) == ["a"]

    async def test_refused_replay_waits_for_operator(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        storage.monitor.report(False)
        await storage.write("items", {"name": "A"}, key="a")
        fake_remote.fail_for["a"] = RemoteRejectedError("Missing collection", 400)

        await reconnect(storage)
        await storage.sync_now()

        assert len(fake_remote.calls) == 1
        assert [e.parked for e in await storage.pending_writes()] == [True]

        del fake_remote.fail_for["a"]
        assert await storage.retry_rejected() == 1
        await storage.coordinator.wait_for_drain()

        assert await storage.pending_writes() == []
        assert fake_remote.sent_ids() == ["a"]

    async def test_queue_survives_restart(
        self,
        config: StorageConfig,
        fake_remote: FakeRemote,
        probe: FakeProbe,
        monitor: NetworkMonitor,
    ) -> None:
        probe.online = False
        async with StorageFacade(config, remote=fake_remote, monitor=monitor) as first:
            await first.write("items", {"name": "A"}, key="a")
            assert first.monitor.current_status().value == "offline"

        probe.online = True
        second = StorageFacade(config, remote=fake_remote, monitor=NetworkMonitor(probe))
        async with second:
            await second.coordinator.wait_for_drain()
            assert await second.pending_writes() == []

        assert fake_remote.sent_ids() == ["a"]


class TestPatchAndRemove:
    async def test_patch(self, storage: StorageFacade, fake_remote: FakeRemote) -> None:
        await storage.write("personnel", {"name": "Ana", "rank": "Lt"}, key="p-1")

        result = await storage.patch("personnel", "p-1", {"rank": "Capt"})

        assert result.record.payload == {"name": "Ana", "rank": "Capt"}
        assert fake_remote.documents["personnel"]["p-1"]["rank"] == "Capt"

    async def test_patch_missing_record(self, storage: StorageFacade) -> None:
        with pytest.raises(RecordNotFoundError):
            await storage.patch("personnel", "ghost", {"rank": "Capt"})

    async def test_remove(self, storage: StorageFacade, fake_remote: FakeRemote) -> None:
        await storage.write("personnel", {"name": "Ana"}, key="p-1")

        assert await storage.remove("personnel", "p-1") is True
        assert await storage.remove("personnel", "p-1") is False
        assert "p-1" not in fake_remote.documents["personnel"]


class TestAuthenticate:
    async def test_remote_login_refreshes_cache(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        fake_remote.users["admin"] = ("secret", {"role": "admin"})

        result = await storage.authenticate("admin", "secret")

        assert result.success and not result.offline
        assert storage.credentials.get("admin").verify("secret")

    async def test_refused_login(self, storage: StorageFacade, fake_remote: FakeRemote) -> None:
        fake_remote.users["admin"] = ("secret", {})

        result = await storage.authenticate("admin", "wrong")

        assert not result.success
        assert storage.credentials.get("admin") is None

    async def test_offline_login_uses_cache(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        fake_remote.users["admin"] = ("secret", {"role": "admin"})
        await storage.authenticate("admin", "secret")
        fake_remote.fail_all = unreachable()

        ok = await storage.authenticate("admin", "secret")
        bad = await storage.authenticate("admin", "nope")

        assert ok.success and ok.offline
        assert ok.user == {"role": "admin"}
        assert not bad.success and bad.offline

    async def test_offline_without_cache(self, storage: StorageFacade) -> None:
        storage.monitor.report(False)

        with pytest.raises(AuthUnavailableError):
            await storage.authenticate("admin", "secret")


class TestExportImport:
    async def test_export_merges_newer_remote_copy(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        await storage.write("personnel", {"name": "Ana"}, key="p-1")
        fake_remote.documents["personnel"]["p-1"] = {
            "collection": "personnel",
            "id": "p-1",
            "version": 10,
            "name": "Ana (edited remotely)",
        }
        fake_remote.documents["personnel"]["p-9"] = {
            "collection": "personnel",
            "id": "p-9",
            "version": 1,
            "name": "Remote only",
        }

        snapshot = await storage.export_all()

        exported = {item["key"]: item for item in snapshot["personnel"]}
        assert exported["p-1"]["payload"] == {"name": "Ana (edited remotely)"}
        assert exported["p-9"]["payload"] == {"name": "Remote only"}

    async def test_export_keeps_pending_local_copy(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        storage.monitor.report(False)
        await storage.write("personnel", {"name": "local edit"}, key="p-1")
        fake_remote.documents["personnel"] = {
            "p-1": {"collection": "personnel", "id": "p-1", "version": 99, "name": "remote"}
        }
        fake_remote.fail_for["p-1"] = unreachable()
        await reconnect(storage)
        assert len(await storage.pending_writes()) == 1

        snapshot = await storage.export_all(["personnel"])

        assert snapshot["personnel"][0]["payload"] == {"name": "local edit"}

    async def test_export_local_only_when_remote_unreachable(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        await storage.write("personnel", {"name": "Ana"}, key="p-1")
        fake_remote.fail_all = unreachable()

        snapshot = await storage.export_all()

        assert [item["key"] for item in snapshot["personnel"]] == ["p-1"]

    async def test_import_newer_record_is_written(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        await storage.write("personnel", {"name": "old"}, key="p-1")
        incoming = Record("personnel", "p-1", {"name": "new"}, version=50).to_dict()

        results = await storage.import_all({"personnel": [incoming]})

        assert results["personnel"].imported == ["p-1"]
        assert storage.read("personnel", "p-1").payload == {"name": "new"}
        assert fake_remote.documents["personnel"]["p-1"]["name"] == "new"

    async def test_import_older_record_is_skipped(self, storage: StorageFacade) -> None:
        await storage.write("personnel", {"name": "current"}, key="p-1")
        await storage.write("personnel", {"name": "current"}, key="p-1")
        stale = Record("personnel", "p-1", {"name": "stale"}, version=1).to_dict()

        results = await storage.import_all({"personnel": [stale]})

        assert results["personnel"].skipped == ["p-1"]
        assert storage.read("personnel", "p-1").payload == {"name": "current"}

    async def test_import_prefers_newer_remote_copy(
        self, storage: StorageFacade, fake_remote: FakeRemote
    ) -> None:
        fake_remote.documents["personnel"] = {
            "p-1": {"collection": "personnel", "id": "p-1", "version": 30, "name": "remote"}
        }
        incoming = Record("personnel", "p-1", {"name": "incoming"}, version=5).to_dict()

        results = await storage.import_all({"personnel": [incoming]})

        assert results["personnel"].refreshed == ["p-1"]
        assert storage.read("personnel", "p-1").payload == {"name": "remote"}
        assert fake_remote.calls == []

    async def test_import_remote_style_documents(self, storage: StorageFacade) -> None:
        document = {"collection": "personnel", "id": "p-7", "version": 3, "name": "Dee"}

        results = await storage.import_all({"personnel": [document]})

        assert results["personnel"].imported == ["p-7"]
        assert storage.read("personnel", "p-7").payload == {"name": "Dee"}

    async def test_import_while_offline_is_queued(self, storage: StorageFacade) -> None:
        storage.monitor.report(False)
        incoming = Record("personnel", "p-1", {"name": "new"}, version=5).to_dict()

        results = await storage.import_all({"personnel": [incoming]})

        assert results["personnel"].queued == ["p-1"]
        assert len(await storage.pending_writes()) == 1


class TestStatus:
    async def test_status_reports_pending(self, storage: StorageFacade) -> None:
        storage.monitor.report(False)
        await storage.write("items", {}, key="a")

        status = await storage.status()

        assert status.pending == 1
        assert status.remote_enabled
        assert not status.is_synced

    async def test_purge_pending(self, storage: StorageFacade) -> None:
        storage.monitor.report(False)
        await storage.write("items", {}, key="a")
        await storage.write("items", {}, key="b")

        assert await storage.purge_pending() == 2
        assert (await storage.status()).is_synced


class TestLocalOnlyMode:
    async def test_no_remote_configured(self, data_dir: Path) -> None:
        storage = create_storage(StorageConfig(data_dir=data_dir))
        async with storage:
            result = await storage.write("personnel", {"name": "Ana"}, key="p-1")

            assert storage.remote is None
            assert result.state is WriteState.LOCAL_COMMITTED
            assert storage.read("personnel", "p-1").payload == {"name": "Ana"}
            assert (await storage.status()).pending == 0
            assert await storage.export_all() == {
                "personnel": [storage.read("personnel", "p-1").to_dict()]
            }

        assert not (data_dir / "sync" / "queue.jsonl").exists()

    async def test_seeded_login(self, data_dir: Path) -> None:
        async with StorageFacade(StorageConfig(data_dir=data_dir)) as storage:
            storage.remember_credentials("admin", "admin123", {"role": "admin"})

            result = await storage.authenticate("admin", "admin123")

        assert result.success and result.offline

    async def test_clear_local(self, data_dir: Path) -> None:
        async with StorageFacade(StorageConfig(data_dir=data_dir)) as storage:
            await storage.write("personnel", {}, key="p-1")
            await storage.write("schedules", {}, key="s-1")

            assert storage.collections() == ["personnel", "schedules"]
            assert storage.clear_local() == 2
            assert storage.read("personnel") == []
