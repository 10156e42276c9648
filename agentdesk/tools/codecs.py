"""Per-tool-name registry decoding raw tool payloads into typed values.

Tool sets are not fixed: MCP servers contribute tools at runtime, so decoded
inputs and outputs are resolved through a registry keyed by tool name rather
than a closed union of types.  Tools registered without a model decode to
plain JSON values.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError
from pydantic_core import PydanticSerializationError

logger = logging.getLogger(__name__)

__all__ = ["ToolCodec", "ToolCodecRegistry", "as_mapping"]


@dataclass(frozen=True, slots=True)
class ToolCodec:
    input_model: type[BaseModel] | None = None
    output_model: type[BaseModel] | None = None


class ToolCodecRegistry:
    """Map tool names to the models used for their input and output."""

    def __init__(self) -> None:
        self._codecs: dict[str, ToolCodec] = {}

    def register(
        self,
        name: str,
        *,
        input_model: type[BaseModel] | None = None,
        output_model: type[BaseModel] | None = None,
    ) -> None:
        """Register models used to decode payloads of *name*."""
        self._codecs[name] = ToolCodec(input_model=input_model, output_model=output_model)

    def unregister(self, name: str) -> None:
        """Forget the models of *name*."""
        self._codecs.pop(name, None)

    def __contains__(self, name: object) -> bool:
        return name in self._codecs

    def names(self) -> list[str]:
        """Names with registered models."""
        return list(self._codecs)

    # ------------------------------------------------------------------
    def decode_input(self, name: str, data: bytes | str | Mapping[str, Any] | None) -> Any | None:
        """Decode a persisted input payload."""
        codec = self._codecs.get(name)
        return self._decode(name, codec.input_model if codec else None, data, "input")

    def decode_output(self, name: str, data: bytes | str | Mapping[str, Any] | None) -> Any | None:
        """Decode a persisted output payload."""
        codec = self._codecs.get(name)
        return self._decode(name, codec.output_model if codec else None, data, "output")

    @staticmethod
    def _decode(
        name: str,
        model: type[BaseModel] | None,
        data: bytes | str | Mapping[str, Any] | None,
        direction: str,
    ) -> Any | None:
        if data is None:
            return None
        try:
            if model is not None:
                if isinstance(data, Mapping):
                    return model.model_validate(dict(data))
                return model.model_validate_json(data)
            if isinstance(data, Mapping):
                return dict(data)
            return json.loads(data)
        except (ValidationError, ValueError, TypeError) as exc:
            logger.debug("could not decode %s %s: %s", name, direction, exc)
            return None

    # ------------------------------------------------------------------
    @staticmethod
    def encode(value: Any) -> bytes | None:
        """Return the transport encoding of a decoded *value*, or ``None``."""
        if value is None:
            return None
        try:
            if isinstance(value, BaseModel):
                return value.model_dump_json().encode("utf-8")
            return json.dumps(value, ensure_ascii=False, sort_keys=True).encode("utf-8")
        except (TypeError, ValueError, PydanticSerializationError) as exc:
            logger.debug("could not encode %s: %s", type(value).__name__, exc)
            return None


def as_mapping(value: Any) -> dict[str, Any]:
    """Return *value* as a plain mapping for display purposes."""

    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, Mapping):
        return dict(value)
    return {}
