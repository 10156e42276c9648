"""JSON serialisation helpers."""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

__all__ = [
    "dump_manifest",
    "load_manifest",
    "make_json_safe",
    "write_bytes_atomic",
    "write_json_atomic",
]


def make_json_safe(
    value: Any,
    *,
    default: Callable[[Any], Any] | None = None,
    sort_sets: bool = True,
    max_depth: int = 32,
) -> Any:
    """Return a structure compatible with :func:`json.dumps`.

    Mappings get string keys, tuples and sets become lists, bytes are
    summarised by length and everything else goes through *default*
    (``repr`` unless overridden).
    """

    if default is None:
        default = repr

    def _convert(item: Any, depth: int) -> Any:
        if depth > max_depth:
            return "<max depth exceeded>"
        if isinstance(item, str) or item is None:
            return item
        if isinstance(item, (bool, int, float)):
            return item
        if isinstance(item, Mapping):
            return {
                (key if isinstance(key, str) else str(key)): _convert(val, depth + 1)
                for key, val in item.items()
            }
        if isinstance(item, (bytes, bytearray)):
            return f"<{len(item)} bytes>"
        if isinstance(item, (set, frozenset)):
            converted = [_convert(entry, depth + 1) for entry in item]
            if sort_sets:
                try:
                    converted.sort()
                except TypeError:
                    pass
            return converted
        if isinstance(item, Sequence):
            return [_convert(entry, depth + 1) for entry in item]
        try:
            converted_value = default(item)
        except Exception:
            return f"<unserialisable {type(item).__name__}>"
        if converted_value is item:
            return f"<unserialisable {type(item).__name__}>"
        return _convert(converted_value, depth + 1)

    return _convert(value, 0)


def dump_manifest(payload: Any) -> str:
    """Return the canonical on-disk text for a manifest *payload*.

    Keys are sorted and the output is pretty-printed so that diffs between
    successive saves stay small.
    """

    return json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2) + "\n"


def write_bytes_atomic(path: Path, data: bytes) -> None:
    """Write *data* to *path* through a temporary file and ``os.replace``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="wb",
        delete=False,
        dir=str(path.parent),
        suffix=".tmp",
    ) as handle:
        temp_path = Path(handle.name)
        handle.write(data)
    try:
        os.replace(temp_path, path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write *payload* to *path* as a canonical manifest, atomically."""

    write_bytes_atomic(path, dump_manifest(payload).encode("utf-8"))


def load_manifest(path: Path) -> Any:
    """Return decoded JSON stored at *path*.

    Raises :class:`FileNotFoundError` when the file is absent and
    :class:`ValueError` when it does not contain valid JSON.
    """

    text = path.read_text(encoding="utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {path}: {exc}") from exc
