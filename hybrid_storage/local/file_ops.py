"""
JSON and JSONL file operations for local persistence.

Provides:
- Atomic whole-file writes using temp file + fsync + rename
- Durable appends for JSONL logs
- Tolerant JSONL reading that reports a torn trailing line

The local store is synchronous, so the JSON helpers are plain functions.
The offline queue is driven from asyncio, so the JSONL helpers use aiofiles.
Errors propagate as OSError / ValueError; callers translate them into
their own exception types.
"""

from __future__ import annotations

import errno
import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os


def is_disk_full(exc: BaseException) -> bool:
    """Check whether an OS error means the medium is out of space."""
    return isinstance(exc, OSError) and exc.errno in (errno.ENOSPC, errno.EDQUOT)


# ---------------------------------------------------------------------------
# Synchronous JSON documents
# ---------------------------------------------------------------------------


def read_json(path: Path) -> Any | None:
    """Read a JSON file.

    Returns:
        Parsed JSON data or None if the file doesn't exist or is empty

    Raises:
        json.JSONDecodeError: If the file content is not valid JSON
    """
    if not path.exists():
        return None
    content = path.read_text(encoding="utf-8")
    return json.loads(content) if content.strip() else None


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON file atomically using temp file + rename.

    The payload is serialized before anything touches the disk, so a
    serialization error leaves the existing file untouched.

    Raises:
        TypeError / ValueError: If data is not JSON-serializable
        OSError: If the write or rename fails
    """
    content = json.dumps(data, indent=2, ensure_ascii=False, allow_nan=False)

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.remove(temp_path)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Asynchronous JSONL logs
# ---------------------------------------------------------------------------


@dataclass
class JsonlContent:
    """Result of reading a JSONL file."""

    items: list[dict[str, Any]] = field(default_factory=list)
    torn_tail: str | None = None


async def ensure_directory(path: Path) -> None:
    """Ensure directory exists, creating if necessary."""
    await aiofiles.os.makedirs(path, exist_ok=True)


async def read_jsonl(path: Path) -> JsonlContent:
    """Read all lines from a JSONL file.

    A final line without a trailing newline is the remains of an append
    that never completed. It is returned separately in ``torn_tail``
    instead of being parsed.

    Raises:
        json.JSONDecodeError: If a complete line is not valid JSON
        ValueError: If a complete line is valid JSON but not an object
    """
    result = JsonlContent()
    if not await aiofiles.os.path.exists(path):
        return result

    async with aiofiles.open(path, encoding="utf-8") as f:
        content = await f.read()

    lines = content.split("\n")
    tail = lines.pop()
    if tail.strip():
        result.torn_tail = tail

    for line in lines:
        line = line.strip()
        if not line:
            continue
        item = json.loads(line)
        if not isinstance(item, dict):
            raise ValueError(f"Expected JSON object, got {type(item).__name__}")
        result.items.append(item)
    return result


async def append_jsonl(path: Path, data: dict[str, Any]) -> None:
    """Append a single JSON object to a JSONL file and fsync it."""
    line = json.dumps(data, ensure_ascii=False, allow_nan=False) + "\n"
    await ensure_directory(path.parent)

    async with aiofiles.open(path, "a", encoding="utf-8") as f:
        await f.write(line)
        await f.flush()
        os.fsync(f.fileno())


async def write_jsonl_atomic(path: Path, data: list[dict[str, Any]]) -> None:
    """Write entire JSONL file atomically."""
    lines = [json.dumps(item, ensure_ascii=False, allow_nan=False) + "\n" for item in data]
    await ensure_directory(path.parent)

    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".jsonl")
    try:
        os.close(fd)
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            for line in lines:
                await f.write(line)
            await f.flush()
            os.fsync(f.fileno())

        await aiofiles.os.replace(temp_path, path)
    except BaseException:
        try:
            await aiofiles.os.remove(temp_path)
        except OSError:
            pass
        raise
