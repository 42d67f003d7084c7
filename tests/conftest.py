"""
Shared test configuration and fixtures.

Provides an in-memory remote API double and a controllable connectivity
probe so the sync engine can be driven through online/offline
transitions without a network.
"""

from __future__ import annotations

import asyncio
from collections import deque
from pathlib import Path
from typing import Any

import pytest

from hybrid_storage.config import StorageConfig
from hybrid_storage.records import Record
from hybrid_storage.remote.client import AuthResult, HttpMethod, RemoteRequest
from hybrid_storage.sync.network import NetworkMonitor

API_URL = "http://remote.test/api"


class FakeRemote:
    """
    In-memory stand-in for RemoteClient.

    Every call is recorded in ``calls``; successful writes also land in
    ``sent`` and update ``documents``. Failures are scripted with
    fail_next() (one per call, in order), per record id with
    ``fail_for``, or for every call with ``fail_all``.
    """

    def __init__(self) -> None:
        self.calls: list[RemoteRequest] = []
        self.sent: list[RemoteRequest] = []
        self.documents: dict[str, dict[str, dict[str, Any]]] = {}
        self.failures: deque[Exception] = deque()
        self.fail_all: Exception | None = None
        self.fail_for: dict[str, Exception] = {}
        self.gate: asyncio.Event | None = None
        self.users: dict[str, tuple[str, dict[str, Any]]] = {}
        self.closed = False

    def fail_next(self, *errors: Exception) -> None:
        self.failures.extend(errors)

    def sent_ids(self) -> list[str]:
        return [request.payload["id"] for request in self.sent]

    async def send(self, request: RemoteRequest) -> Any:
        self.calls.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.popleft()
        if self.fail_all is not None:
            raise self.fail_all
        if request.payload.get("id") in self.fail_for:
            raise self.fail_for[request.payload["id"]]

        self.sent.append(request)
        body = dict(request.payload)
        docs = self.documents.setdefault(body["collection"], {})
        if request.method is HttpMethod.POST:
            docs[body["id"]] = body
        elif request.method is HttpMethod.PUT:
            docs.setdefault(body["id"], {}).update(body)
        elif request.method is HttpMethod.DELETE:
            docs.pop(body["id"], None)
        return {"success": True}

    async def fetch_collection(self, collection: str, user_id: str | None = None) -> list[Record]:
        if self.fail_all is not None:
            raise self.fail_all
        return [
            Record.from_remote(collection, document)
            for document in self.documents.get(collection, {}).values()
        ]

    async def authenticate(self, username: str, password: str) -> AuthResult:
        if self.fail_all is not None:
            raise self.fail_all
        known = self.users.get(username)
        if known is None or known[0] != password:
            return AuthResult(success=False, message="Invalid credentials")
        return AuthResult(success=True, user=dict(known[1]))

    async def close(self) -> None:
        self.closed = True


class FakeProbe:
    """Connectivity probe whose answer is set by the test."""

    def __init__(self, online: bool = True) -> None:
        self.online = online
        self.calls = 0

    async def __call__(self) -> bool:
        self.calls += 1
        return self.online


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Data directory for one test."""
    return tmp_path / "data"


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe(online=True)


@pytest.fixture
def monitor(probe: FakeProbe) -> NetworkMonitor:
    """Monitor with immediate transitions, driven by report() or the probe."""
    return NetworkMonitor(probe, poll_interval=0, debounce=1)


@pytest.fixture
def config(data_dir: Path) -> StorageConfig:
    """Remote-enabled configuration with background loops disabled."""
    return StorageConfig(
        api_url=API_URL,
        data_dir=data_dir,
        probe_interval=0,
        retry_interval=0,
    )
