"""
Local file-based record store.

The local store is the source of truth for reads and is always available.
Every operation is synchronous and persists to disk before returning.

Directory structure:
    {data_dir}/
      collections/
        {collection}.json

Each collection file holds the records keyed by record key plus the
collection's version counter, so a commit is a single atomic rename:

    {"next_version": 8, "records": {"p-1": {"key": "p-1", "payload": ..., ...}}}
"""

from __future__ import annotations

import json
import logging
import re
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..exceptions import InvalidPayloadError, LocalCorruptError, LocalStoreError, StorageFullError
from ..records import Record
from .file_ops import is_disk_full, read_json, write_json_atomic

logger = logging.getLogger(__name__)

_COLLECTION_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


class _Collection:
    """In-memory image of one collection file."""

    def __init__(self, next_version: int = 1, records: dict[str, Record] | None = None):
        self.next_version = next_version
        self.records: dict[str, Record] = records or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "next_version": self.next_version,
            "records": {key: record.to_dict() for key, record in self.records.items()},
        }


class LocalStore:
    """Synchronous durable store of records grouped by collection.

    Versions are assigned per collection from a counter that never
    decreases, including across deletes and restarts.
    """

    def __init__(self, base_path: Path):
        """Initialize the local store.

        Args:
            base_path: Data directory; collections live under ``collections/``
        """
        self.base_path = Path(base_path)
        self.collections_path = self.base_path / "collections"
        self._cache: dict[str, _Collection] = {}
        self._lock = threading.RLock()

    def _collection_file(self, collection: str) -> Path:
        return self.collections_path / f"{collection}.json"

    def _validate_collection(self, collection: str) -> None:
        if not _COLLECTION_RE.match(collection):
            raise InvalidPayloadError(f"Invalid collection name: {collection!r}", collection)

    def _load(self, collection: str) -> _Collection:
        self._validate_collection(collection)
        cached = self._cache.get(collection)
        if cached is not None:
            return cached

        path = self._collection_file(collection)
        try:
            data = read_json(path)
        except json.JSONDecodeError as e:
            raise LocalCorruptError(f"Collection file is corrupt: {path}", collection, e) from e
        except OSError as e:
            raise LocalStoreError(f"Failed to read collection: {path}", collection, e) from e

        if data is None:
            loaded = _Collection()
        else:
            try:
                records = {
                    key: Record.from_dict(collection, item)
                    for key, item in data.get("records", {}).items()
                }
                loaded = _Collection(int(data.get("next_version", 1)), records)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise LocalCorruptError(
                    f"Collection file is corrupt: {path}", collection, e
                ) from e

        self._cache[collection] = loaded
        return loaded

    def _commit(self, collection: str, image: _Collection) -> None:
        """Persist a collection image, then make it the cached one."""
        path = self._collection_file(collection)
        try:
            write_json_atomic(path, image.to_dict())
        except (TypeError, ValueError) as e:
            raise InvalidPayloadError(
                f"Payload is not JSON-serializable: {e}", collection, e
            ) from e
        except OSError as e:
            if is_disk_full(e):
                raise StorageFullError(f"No space left to write {path}", collection, e) from e
            raise LocalStoreError(f"Failed to write collection: {path}", collection, e) from e
        self._cache[collection] = image

    @staticmethod
    def _copy_payload(collection: str, payload: Any) -> Any:
        try:
            return json.loads(json.dumps(payload, allow_nan=False))
        except (TypeError, ValueError) as e:
            raise InvalidPayloadError(
                f"Payload is not JSON-serializable: {e}", collection, e
            ) from e

    def get(self, collection: str) -> list[Record]:
        """Get all records of a collection, in insertion order."""
        with self._lock:
            return list(self._load(collection).records.values())

    def get_record(self, collection: str, key: str) -> Record | None:
        """Get a single record, or None if absent."""
        with self._lock:
            return self._load(collection).records.get(key)

    def put(self, collection: str, key: str, payload: Any) -> Record:
        """Insert or replace a record.

        Returns:
            The committed record carrying its new version

        Raises:
            InvalidPayloadError: If the payload is not JSON-serializable
            StorageFullError: If the disk is full
        """
        payload = self._copy_payload(collection, payload)
        with self._lock:
            current = self._load(collection)
            record = Record(
                collection=collection,
                key=key,
                payload=payload,
                version=current.next_version,
                updated_at=datetime.now(UTC),
            )
            image = _Collection(current.next_version + 1, {**current.records, key: record})
            self._commit(collection, image)
            logger.debug(f"Committed {collection}/{key} v{record.version}")
            return record

    def update(self, collection: str, key: str, partial: dict[str, Any]) -> Record | None:
        """Merge fields into an existing object payload.

        Returns:
            The updated record, or None if the key does not exist

        Raises:
            InvalidPayloadError: If the stored payload is not an object
        """
        if not isinstance(partial, dict):
            raise InvalidPayloadError("Partial update must be a JSON object", collection)
        partial = self._copy_payload(collection, partial)

        with self._lock:
            current = self._load(collection)
            existing = current.records.get(key)
            if existing is None:
                return None
            if not isinstance(existing.payload, dict):
                raise InvalidPayloadError(
                    f"Cannot patch non-object payload of {collection}/{key}", collection
                )

            record = Record(
                collection=collection,
                key=key,
                payload={**existing.payload, **partial},
                version=current.next_version,
                updated_at=datetime.now(UTC),
            )
            image = _Collection(current.next_version + 1, {**current.records, key: record})
            self._commit(collection, image)
            return record

    def delete(self, collection: str, key: str) -> bool:
        """Delete a record.

        Returns:
            True if the record existed and was removed
        """
        with self._lock:
            current = self._load(collection)
            if key not in current.records:
                return False
            records = {k: v for k, v in current.records.items() if k != key}
            self._commit(collection, _Collection(current.next_version, records))
            return True

    def collections(self) -> list[str]:
        """List collections that have a file on disk."""
        with self._lock:
            names = set(self._cache)
            if self.collections_path.exists():
                names.update(
                    p.stem
                    for p in self.collections_path.glob("*.json")
                    if _COLLECTION_RE.match(p.stem)
                )
            return sorted(names)

    def clear(self, collection: str | None = None) -> int:
        """Remove every record of one collection, or of all collections.

        Version counters are kept so later writes still get higher versions.

        Returns:
            Number of records removed
        """
        with self._lock:
            targets = [collection] if collection is not None else self.collections()
            removed = 0
            for name in targets:
                current = self._load(name)
                if not current.records:
                    continue
                removed += len(current.records)
                self._commit(name, _Collection(current.next_version))
            return removed
