"""Base class shared by built-in, sub-agent and MCP tools."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from ..llm.types import ToolResult
from ..util.cancellation import CancellationEvent

__all__ = ["Tool", "ToolContext"]

_SUMMARY_LIMIT = 120


@dataclass(slots=True)
class ToolContext:
    """Per-invocation information handed to :meth:`Tool.run`."""

    tool_use_id: str
    working_directory: Path
    cancellation: CancellationEvent | None = None


class Tool(ABC):
    """A callable capability advertised to the model.

    Subclasses set :attr:`name`, :attr:`description` and optionally pydantic
    :attr:`input_model` / :attr:`output_model`; the models drive both the JSON
    schema sent to the model and the decoding of persisted payloads.
    """

    name: str = ""
    description: str = ""
    input_model: type[BaseModel] | None = None
    output_model: type[BaseModel] | None = None

    @property
    def metadata(self) -> Mapping[str, str]:
        """Extra facts recorded on every execution of this tool."""
        return {}

    def input_schema(self) -> dict[str, Any]:
        """JSON schema of the tool input."""
        if self.input_model is None:
            return {"type": "object", "properties": {}}
        return self.input_model.model_json_schema()

    def openai_schema(self) -> dict[str, Any]:
        """Function schema in the chat completions format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema(),
            },
        }

    def format_summary(self, tool_input: Mapping[str, Any] | None) -> str:
        """Return a one-line human readable description of a call."""
        if not tool_input:
            return self.name
        text = json.dumps(dict(tool_input), ensure_ascii=False, default=str)
        if len(text) > _SUMMARY_LIMIT:
            text = text[: _SUMMARY_LIMIT - 1] + "…"
        return f"{self.name} {text}"

    @abstractmethod
    async def run(self, tool_input: Any, context: ToolContext) -> ToolResult:
        """Execute the tool with decoded *tool_input*."""
