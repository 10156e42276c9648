"""Structured telemetry events written through the ``agentdesk`` logger."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any

from .log import logger
from .util.json import make_json_safe

SENSITIVE_KEYS = frozenset(
    {"authorization", "token", "secret", "password", "api_key", "x-api-key", "cookie"}
)
REDACTED = "[REDACTED]"


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if isinstance(key, str) and key.lower() in SENSITIVE_KEYS else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


def sanitize(data: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of *data* with credentials replaced by ``[REDACTED]``."""
    return _redact(data)


def _safe(payload: Any) -> Any:
    if payload is None:
        return {}
    if isinstance(payload, (str, bytes, bytearray)) or not isinstance(
        payload, (Mapping, Sequence)
    ):
        return make_json_safe(payload)
    return make_json_safe(_redact(payload))


def log_event(
    event: str,
    payload: Mapping[str, Any] | None = None,
    *,
    start_time: float | None = None,
) -> None:
    """Log *event* at ``INFO`` with its redacted *payload*.

    The record carries the payload size in bytes and, when *start_time* (a
    :func:`time.monotonic` reading) is given, the elapsed milliseconds.
    """
    safe_payload = _safe(payload)
    data: dict[str, Any] = {
        "event": event,
        "payload": safe_payload,
        "size_bytes": len(json.dumps(safe_payload, ensure_ascii=False).encode("utf-8"))
        if safe_payload
        else 0,
    }
    if start_time is not None:
        data["duration_ms"] = int((time.monotonic() - start_time) * 1000)
    logger.info(event, extra={"json": data})


def log_debug_payload(event: str, payload: Any = None) -> None:
    """Log the full *payload* of *event* when ``DEBUG`` is enabled."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    safe_payload = _safe(payload)
    logger.debug(
        f"{event} {json.dumps(safe_payload, ensure_ascii=False)}",
        extra={"json": {"event": event, "level": "DEBUG", "payload": safe_payload}},
    )
