"""
Local durable storage.

Collections are stored as one JSON document per collection, written
atomically (temp file + rename) so every commit is all-or-nothing.

Key classes:
- LocalStore: Synchronous record store, source of truth for reads
- CredentialCache: Snapshot of successful logins for offline authentication
"""

from .credentials import CredentialCache, CredentialSnapshot
from .file_ops import (
    append_jsonl,
    read_json,
    read_jsonl,
    write_json_atomic,
    write_jsonl_atomic,
)
from .store import LocalStore

__all__ = [
    "LocalStore",
    "CredentialCache",
    "CredentialSnapshot",
    # Low-level file operations
    "read_json",
    "write_json_atomic",
    "read_jsonl",
    "write_jsonl_atomic",
    "append_jsonl",
]
