"""
Record data model.

A record is one addressable unit inside a collection. Identity is the
(collection, key) pair; version is the local revision assigned by the
local store on every commit and is what "last write wins" compares.

Remote documents use a flat envelope:

    {"collection": "personnel", "id": "p-1", "version": 7, ...payload}

Payloads that are not JSON objects travel under a single "value" field.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, NamedTuple

# Fields owned by the envelope or stamped by the server, never part of a payload
ENVELOPE_FIELDS = frozenset({"collection", "id", "_id", "version", "createTime", "updateTime"})

SCALAR_FIELD = "value"


class RecordKey(NamedTuple):
    """Identity of a record."""

    collection: str
    key: str


def new_key() -> str:
    """Generate a key for a record created without one."""
    return uuid.uuid4().hex


@dataclass
class Record:
    """A versioned record owned by the local store.

    Attributes:
        collection: Collection name
        key: Record key, unique within the collection
        payload: Opaque JSON-serializable value
        version: Monotonically increasing local revision
        updated_at: When the record was last committed locally
    """

    collection: str
    key: str
    payload: Any
    version: int = 0
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def identity(self) -> RecordKey:
        return RecordKey(self.collection, self.key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for local persistence and export."""
        return {
            "key": self.key,
            "payload": self.payload,
            "version": self.version,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, collection: str, data: dict[str, Any]) -> Record:
        """Create from a dictionary produced by to_dict()."""
        updated_at = data.get("updated_at")
        if isinstance(updated_at, str):
            updated_at = datetime.fromisoformat(updated_at)
        elif updated_at is None:
            updated_at = datetime.now(UTC)

        return cls(
            collection=collection,
            key=str(data["key"]),
            payload=data.get("payload"),
            version=int(data.get("version", 0)),
            updated_at=updated_at,
        )

    def to_wire(self) -> dict[str, Any]:
        """Build the POST /data body for this record."""
        body: dict[str, Any] = {
            "collection": self.collection,
            "id": self.key,
            "version": self.version,
        }
        if isinstance(self.payload, dict):
            body.update({k: v for k, v in self.payload.items() if k not in ENVELOPE_FIELDS})
        else:
            body[SCALAR_FIELD] = self.payload
        return body

    @classmethod
    def from_remote(cls, collection: str, document: dict[str, Any]) -> Record:
        """Decode a document returned by GET /data."""
        key = document.get("id", document.get("_id"))
        if key is None:
            raise ValueError(f"Remote document in {collection} has no id")

        payload: Any = {k: v for k, v in document.items() if k not in ENVELOPE_FIELDS}
        if set(payload) == {SCALAR_FIELD}:
            payload = payload[SCALAR_FIELD]

        updated_at = document.get("updateTime")
        try:
            timestamp = datetime.fromisoformat(updated_at) if updated_at else datetime.now(UTC)
        except ValueError:
            timestamp = datetime.now(UTC)

        return cls(
            collection=collection,
            key=str(key),
            payload=payload,
            version=int(document.get("version") or 0),
            updated_at=timestamp,
        )


def update_body(collection: str, key: str, partial: dict[str, Any], version: int) -> dict[str, Any]:
    """Build the PUT /data body for a partial update."""
    body: dict[str, Any] = {"collection": collection, "id": key, "version": version}
    body.update({k: v for k, v in partial.items() if k not in ENVELOPE_FIELDS})
    return body


def delete_body(collection: str, key: str) -> dict[str, Any]:
    """Build the DELETE /data body."""
    return {"collection": collection, "id": key}


def record_key_from_body(body: Any) -> RecordKey | None:
    """Extract the record identity carried by a /data request body."""
    if not isinstance(body, dict):
        return None
    collection = body.get("collection")
    key = body.get("id")
    if collection is None or key is None:
        return None
    return RecordKey(str(collection), str(key))


def last_write_wins(local: Record | None, incoming: Record | None) -> Record | None:
    """Pick the winner between two copies of the same record.

    The higher version wins. On a tie the local copy is kept, which means
    a remote edit made against a stale local copy can be discarded.
    """
    if local is None:
        return incoming
    if incoming is None:
        return local
    if incoming.version > local.version:
        return incoming
    return local
