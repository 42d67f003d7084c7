"""
Cached credential snapshots for offline authentication.

After a successful remote login the username, a salted PBKDF2 hash of
the password and the returned user profile are kept in
``{data_dir}/credentials.json``. When the remote API cannot be reached
the facade verifies logins against this snapshot instead.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..exceptions import LocalCorruptError, LocalStoreError, StorageFullError
from .file_ops import is_disk_full, read_json, write_json_atomic

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 200_000


def hash_password(password: str, salt: bytes) -> str:
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return base64.b64encode(digest).decode("ascii")


@dataclass
class CredentialSnapshot:
    """A cached login."""

    username: str
    salt: str
    password_hash: str
    user: dict[str, Any] = field(default_factory=dict)
    cached_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def verify(self, password: str) -> bool:
        candidate = hash_password(password, base64.b64decode(self.salt))
        return hmac.compare_digest(candidate, self.password_hash)

    def to_dict(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "salt": self.salt,
            "password_hash": self.password_hash,
            "user": self.user,
            "cached_at": self.cached_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CredentialSnapshot:
        cached_at = data.get("cached_at")
        return cls(
            username=data["username"],
            salt=data["salt"],
            password_hash=data["password_hash"],
            user=data.get("user") or {},
            cached_at=datetime.fromisoformat(cached_at) if cached_at else datetime.now(UTC),
        )


class CredentialCache:
    """File-backed map of username -> CredentialSnapshot."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._snapshots: dict[str, CredentialSnapshot] | None = None
        self._lock = threading.Lock()

    def _load(self) -> dict[str, CredentialSnapshot]:
        if self._snapshots is not None:
            return self._snapshots
        try:
            data = read_json(self.path) or {}
            self._snapshots = {
                name: CredentialSnapshot.from_dict(item) for name, item in data.items()
            }
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise LocalCorruptError(f"Credential cache is corrupt: {self.path}", cause=e) from e
        except OSError as e:
            raise LocalStoreError(f"Failed to read credential cache: {self.path}", cause=e) from e
        return self._snapshots

    def _persist(self, snapshots: dict[str, CredentialSnapshot]) -> None:
        try:
            write_json_atomic(self.path, {k: v.to_dict() for k, v in snapshots.items()})
        except OSError as e:
            if is_disk_full(e):
                raise StorageFullError(f"No space left to write {self.path}", cause=e) from e
            raise LocalStoreError(f"Failed to write credential cache: {self.path}", cause=e) from e
        self._snapshots = snapshots

    def get(self, username: str) -> CredentialSnapshot | None:
        with self._lock:
            return self._load().get(username)

    def remember(self, username: str, password: str, user: dict[str, Any] | None = None) -> None:
        """Cache a credential snapshot, replacing any previous one."""
        salt = secrets.token_bytes(16)
        snapshot = CredentialSnapshot(
            username=username,
            salt=base64.b64encode(salt).decode("ascii"),
            password_hash=hash_password(password, salt),
            user=dict(user or {}),
        )
        with self._lock:
            self._persist({**self._load(), username: snapshot})
        logger.debug(f"Cached credentials for {username}")

    def forget(self, username: str) -> bool:
        with self._lock:
            snapshots = self._load()
            if username not in snapshots:
                return False
            self._persist({k: v for k, v in snapshots.items() if k != username})
            return True
