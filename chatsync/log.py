"""Logging setup for chatsync.

Records go to the ``chatsync`` logger.  :func:`configure_logging` attaches a
console handler plus two rotating files in the log directory: a plain text
log and a JSON-lines log carrying the structured ``extra={"json": ...}``
payloads emitted by :mod:`chatsync.telemetry`.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from .util.time import utc_now_iso

LOG_DIR_ENV = "CHATSYNC_LOG_DIR"
TEXT_LOG_NAME = "chatsync.log"
JSON_LOG_NAME = "chatsync.jsonl"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUPS = 5

logger = logging.getLogger("chatsync")

_log_dir: Path | None = None


def _structured(record: logging.LogRecord) -> dict[str, Any] | None:
    data = getattr(record, "json", None)
    return data if isinstance(data, dict) else None


class ConsoleFormatter(logging.Formatter):
    """Render ``LEVEL: message`` and append the event payload, if any."""

    def __init__(self) -> None:
        super().__init__("%(levelname)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        data = _structured(record)
        # Debug payload records already carry the payload in their message.
        if data is None or record.getMessage() != data.get("event"):
            return line
        payload = data.get("payload")
        if not payload:
            return line
        return f"{line} {json.dumps(payload, ensure_ascii=False, default=repr)}"


class JsonFormatter(logging.Formatter):
    """Serialize records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        data = dict(_structured(record) or {})
        data.setdefault("message", record.getMessage())
        data.setdefault("level", record.levelname)
        data.setdefault("logger", record.name)
        data.setdefault("timestamp", utc_now_iso())
        if record.exc_info:
            data.setdefault("exc_info", self.formatException(record.exc_info))
        return json.dumps(data, ensure_ascii=False, default=repr)


class JsonlHandler(RotatingFileHandler):
    """Rotating handler writing :class:`JsonFormatter` output to *filename*."""

    def __init__(self, filename: Path | str, *, max_bytes: int = _MAX_BYTES) -> None:
        path = Path(filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(path, maxBytes=max_bytes, backupCount=_BACKUPS, encoding="utf-8")
        self.setFormatter(JsonFormatter())


def resolve_log_dir(log_dir: str | Path | None = None) -> Path:
    """Return the log directory: explicit, ``$CHATSYNC_LOG_DIR``, or ``~/.chatsync/logs``."""
    if log_dir is None:
        log_dir = os.environ.get(LOG_DIR_ENV) or Path.home() / ".chatsync" / "logs"
    path = Path(log_dir).expanduser().resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def configure_logging(
    level: int = logging.INFO,
    *,
    log_dir: str | Path | None = None,
    console: bool = True,
) -> Path:
    """Attach the chatsync handlers once and return the log directory.

    *level* applies to the console only; both files record everything from
    ``DEBUG`` up.
    """
    global _log_dir

    if _log_dir is not None:
        return _log_dir
    directory = resolve_log_dir(log_dir)

    if console and sys.stderr is not None:
        stream = logging.StreamHandler()
        stream.setLevel(level)
        stream.setFormatter(ConsoleFormatter())
        logger.addHandler(stream)

    text = RotatingFileHandler(
        directory / TEXT_LOG_NAME,
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUPS,
        encoding="utf-8",
    )
    text.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(text)
    logger.addHandler(JsonlHandler(directory / JSON_LOG_NAME))

    logger.setLevel(logging.DEBUG)
    _log_dir = directory
    return directory


__all__ = [
    "ConsoleFormatter",
    "JSON_LOG_NAME",
    "JsonFormatter",
    "JsonlHandler",
    "LOG_DIR_ENV",
    "TEXT_LOG_NAME",
    "configure_logging",
    "logger",
    "resolve_log_dir",
]
