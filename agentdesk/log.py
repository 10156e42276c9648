"""Logging setup for the ``agentdesk`` logger.

Records go to the console at the requested level and, at ``DEBUG``, to a
rotating text log plus a rotating JSON lines log used for telemetry.
"""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from .util.time import utc_now_iso

LOG_DIR_ENV = "AGENTDESK_LOG_DIR"
TEXT_LOG_NAME = "agentdesk.log"
JSON_LOG_NAME = "agentdesk.jsonl"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUPS = 5

logger = logging.getLogger("agentdesk")


def _event_payload(record: logging.LogRecord) -> dict[str, Any] | None:
    extra = getattr(record, "json", None)
    if isinstance(extra, dict) and extra.get("event") == record.msg:
        return extra
    return None


class ConsoleFormatter(logging.Formatter):
    """Show ``LEVEL: message`` followed by the telemetry payload, if any."""

    def __init__(self) -> None:
        super().__init__("%(levelname)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        """Render *record*, appending a non-empty event payload as JSON."""
        text = super().format(record)
        event = _event_payload(record)
        if event is None or not event.get("payload"):
            return text
        return f"{text} {json.dumps(event['payload'], ensure_ascii=False, default=str)}"


class JsonFormatter(logging.Formatter):
    """One JSON object per record; structured ``extra={"json": ...}`` wins."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        extra = getattr(record, "json", None)
        data: dict[str, Any] = dict(extra) if isinstance(extra, dict) else {}
        data.setdefault("message", record.getMessage())
        data.setdefault("level", record.levelname)
        data.setdefault("logger", record.name)
        data.setdefault("timestamp", utc_now_iso())
        if record.exc_info and "exc_info" not in data:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False, default=str)


class JsonlHandler(RotatingFileHandler):
    """Rotating file handler writing :class:`JsonFormatter` lines."""

    def __init__(self, filename: Path | str) -> None:
        path = Path(filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(path, maxBytes=_MAX_BYTES, backupCount=_BACKUPS, encoding="utf-8")
        self.setFormatter(JsonFormatter())


def log_directory(log_dir: str | Path | None = None) -> Path:
    """Return the log directory, honouring ``AGENTDESK_LOG_DIR``."""
    if log_dir is None:
        log_dir = os.environ.get(LOG_DIR_ENV) or Path.home() / ".agentdesk" / "logs"
    return Path(log_dir).expanduser().resolve()


def configure_logging(level: int = logging.INFO, *, log_dir: str | Path | None = None) -> None:
    """Attach console and file handlers to the ``agentdesk`` logger once."""
    if logger.handlers:
        return
    directory = log_directory(log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(ConsoleFormatter())

    text_file = RotatingFileHandler(
        directory / TEXT_LOG_NAME,
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUPS,
        encoding="utf-8",
    )
    text_file.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    json_file = JsonlHandler(directory / JSON_LOG_NAME)

    # files always capture DEBUG; only the console follows *level*
    for handler in (text_file, json_file):
        handler.setLevel(logging.DEBUG)
    for handler in (console, text_file, json_file):
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)


__all__ = [
    "ConsoleFormatter",
    "JsonFormatter",
    "JsonlHandler",
    "configure_logging",
    "log_directory",
    "logger",
]
