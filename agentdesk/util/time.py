"""Time-related helpers for agentdesk."""

from __future__ import annotations

import datetime


def utc_now() -> datetime.datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.datetime.now(datetime.UTC)


def utc_now_iso() -> str:
    """Return current UTC time in ISO format without sub-second precision."""
    return utc_now().isoformat(timespec="seconds")


def format_timestamp(value: datetime.datetime) -> str:
    """Serialise *value* to ISO 8601 keeping microseconds.

    Naive datetimes are assumed to be UTC so that reloaded values compare
    equal to the ones that were written.
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.UTC)
    return value.isoformat(timespec="microseconds")


def parse_timestamp(value: str | float | int | None) -> datetime.datetime:
    """Parse a persisted timestamp.

    ISO strings are the canonical form. Numeric values are accepted as POSIX
    seconds for manifests written by older builds. Invalid values raise
    :class:`ValueError`.
    """

    if value is None:
        raise ValueError("Missing timestamp")
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.datetime.fromtimestamp(float(value), datetime.UTC)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.UTC)
    return parsed
