"""
Logging utilities for hybrid storage.

Components log through ``logging.getLogger(__name__)``. This module adds
a JSON-lines formatter for log shippers, a plain console setup for the
CLI, and an adapter that stamps sync context onto every record so a
drain can be followed entry by entry.

Sync context fields (``entry_id``, ``collection``, ``key``, ``method``)
are always emitted at the top level of a JSON line when present; any
other ``extra`` values are grouped under ``context``.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

SYNC_FIELDS = ("entry_id", "collection", "key", "method")

# Attributes every LogRecord carries; anything else came from ``extra``
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)
    return value


class JsonLinesFormatter(logging.Formatter):
    """
    Formats each record as one JSON object per line.

    Keys: ``time`` (UTC, from the record's creation time), ``level``,
    ``logger``, ``message``, the sync context fields, ``context`` for other
    extras, ``source`` (module:line) from WARNING up, and ``error`` with the
    formatted traceback when the record carries exception info.
    """

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context: dict[str, Any] = {}
        for name, value in vars(record).items():
            if name in _RECORD_ATTRS or name.startswith("_"):
                continue
            if name in SYNC_FIELDS:
                line[name] = _jsonable(value)
            else:
                context[name] = _jsonable(value)
        if context:
            line["context"] = context

        if record.levelno >= logging.WARNING:
            line["source"] = f"{record.module}:{record.lineno}"
        if record.exc_info:
            line["error"] = self.formatException(record.exc_info)

        return json.dumps(line, ensure_ascii=False)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Send a logger's output to a stream as JSON lines, replacing its handlers.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: root logger)
        stream: Output stream (default: stderr, so stdout stays free for command output)

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonLinesFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def configure_console_logging(level: int = logging.INFO) -> None:
    """Configure plain console logging for interactive use (stderr)."""
    logging.basicConfig(level=level, format="%(levelname)s  %(name)s: %(message)s")
    for noisy in ("aiohttp", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class StorageLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps sync context onto every record.

    Context given at construction is the default; ``extra`` passed to a
    single call wins over it for that call. None values are left out.
    """

    def __init__(self, logger: logging.Logger, **context: Any) -> None:
        super().__init__(logger, {k: v for k, v in context.items() if v is not None})

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs
