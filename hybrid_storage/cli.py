"""
Operator CLI for hybrid storage.

Usage:
    hybrid-storage status
    hybrid-storage sync [--retry-rejected]
    hybrid-storage export [--output FILE] [COLLECTION ...]
    hybrid-storage import FILE
    hybrid-storage queue
    hybrid-storage purge --yes [ID ...]

Configuration comes from ``~/.hybrid_storage/settings.yaml`` and the
HYBRID_STORAGE_* environment variables; ``--api-url`` / ``--data-dir``
override both.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .config import load_config
from .exceptions import HybridStorageError
from .facade import StorageFacade
from .logging_utils import configure_console_logging, configure_structured_logging

logger = logging.getLogger(__name__)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def _status(storage: StorageFacade, args: argparse.Namespace) -> int:
    status = await storage.status()
    _print_json(
        {
            "connectivity": status.connectivity.value,
            "remote_enabled": status.remote_enabled,
            "pending": status.pending,
            "draining": status.draining,
            "last_drain_at": status.last_drain_at,
            "errors": [vars(error) for error in status.errors],
            "collections": storage.collections(),
        }
    )
    return 0


async def _sync(storage: StorageFacade, args: argparse.Namespace) -> int:
    if not storage.policy.remote_enabled:
        print("Remote sync is disabled (no api_url configured)", file=sys.stderr)
        return 1
    if args.retry_rejected:
        await storage.retry_rejected()
    result = await storage.sync_now()
    if result is None:
        print("Remote API is offline; nothing replayed", file=sys.stderr)
        return 1
    _print_json(
        {
            "delivered": result.succeeded,
            "failed": result.failed,
            "dropped": result.dropped,
            "pending": result.remaining,
        }
    )
    return 0 if result.completed else 2


async def _export(storage: StorageFacade, args: argparse.Namespace) -> int:
    snapshot = await storage.export_all(args.collections or None)
    if args.output:
        Path(args.output).write_text(
            json.dumps(snapshot, indent=2, ensure_ascii=False), encoding="utf-8"
        )
        total = sum(len(items) for items in snapshot.values())
        print(f"Exported {total} records from {len(snapshot)} collections to {args.output}")
    else:
        _print_json(snapshot)
    return 0


async def _import(storage: StorageFacade, args: argparse.Namespace) -> int:
    snapshot = json.loads(Path(args.file).read_text(encoding="utf-8"))
    if not isinstance(snapshot, dict):
        print("Import file must contain an object of collections", file=sys.stderr)
        return 1
    results = await storage.import_all(snapshot)
    _print_json({collection: vars(summary) for collection, summary in results.items()})
    return 1 if any(summary.rejected for summary in results.values()) else 0


async def _queue(storage: StorageFacade, args: argparse.Namespace) -> int:
    entries = await storage.pending_writes()
    _print_json([entry.to_dict() for entry in entries])
    return 0


async def _purge(storage: StorageFacade, args: argparse.Namespace) -> int:
    if not args.yes:
        print("Refusing to discard queued writes without --yes", file=sys.stderr)
        return 1
    removed = await storage.purge_pending(args.ids or None)
    print(f"Purged {removed} queued writes")
    return 0


COMMANDS = {
    "status": _status,
    "sync": _sync,
    "export": _export,
    "import": _import,
    "queue": _queue,
    "purge": _purge,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hybrid-storage",
        description="Inspect and operate an offline-first hybrid storage directory",
    )
    parser.add_argument("--config", type=Path, help="Path to settings.yaml")
    parser.add_argument("--api-url", help="Remote API base URL (overrides configuration)")
    parser.add_argument("--data-dir", type=Path, help="Data directory (overrides configuration)")
    parser.add_argument("--json-logs", action="store_true", help="Emit structured JSON logs")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show connectivity, pending writes and sync errors")
    sync = sub.add_parser("sync", help="Replay queued writes now")
    sync.add_argument(
        "--retry-rejected",
        action="store_true",
        help="Replay writes the remote API refused earlier instead of stopping at them",
    )

    export = sub.add_parser("export", help="Export records as JSON")
    export.add_argument("collections", nargs="*", help="Collections to export (default: all)")
    export.add_argument("-o", "--output", help="Write to FILE instead of stdout")

    imp = sub.add_parser("import", help="Import records from a JSON export")
    imp.add_argument("file", help="Export file to import")

    sub.add_parser("queue", help="List queued writes")

    purge = sub.add_parser("purge", help="Discard queued writes")
    purge.add_argument("ids", nargs="*", type=int, help="Entry ids (default: all)")
    purge.add_argument("--yes", action="store_true", help="Confirm discarding writes")
    return parser


async def run(args: argparse.Namespace) -> int:
    config = load_config(args.config, api_url=args.api_url, data_dir=args.data_dir)
    # One-shot commands rely on the startup probe only
    config.probe_interval = 0
    config.retry_interval = 0

    async with StorageFacade(config) as storage:
        return await COMMANDS[args.command](storage, args)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    if args.json_logs:
        # Command output owns stdout
        configure_structured_logging(level, stream=sys.stderr)
    else:
        configure_console_logging(level)

    try:
        return asyncio.run(run(args))
    except (HybridStorageError, ValueError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
