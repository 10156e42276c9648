"""File tools operating inside a conversation's working directory."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field

from ..llm.types import ToolResult
from ..util.paths import resolve_within
from .base import Tool, ToolContext

__all__ = ["ListTool", "ReadTool", "WriteTool"]

_MAX_READ_CHARS = 200_000


class ReadInput(BaseModel):
    path: str
    offset: int = Field(0, ge=0, description="First line to return (0-based)")
    limit: int | None = Field(None, ge=1, description="Maximum number of lines")


class WriteInput(BaseModel):
    path: str
    content: str


class ListInput(BaseModel):
    path: str = "."


class ListEntry(BaseModel):
    name: str
    is_dir: bool
    size: int | None = None


class ListOutput(BaseModel):
    path: str
    entries: list[ListEntry] = Field(default_factory=list)


def _path_summary(name: str, tool_input: Mapping[str, Any] | None) -> str:
    path = (tool_input or {}).get("path")
    return f"{name} {path}" if path else name


class ReadTool(Tool):
    name = "Read"
    description = "Read a UTF-8 text file from the working directory."
    input_model = ReadInput

    def format_summary(self, tool_input: Mapping[str, Any] | None) -> str:
        """Describe a read call."""
        return _path_summary(self.name, tool_input)

    async def run(self, tool_input: ReadInput, context: ToolContext) -> ToolResult:
        """Return the requested lines of a text file."""
        try:
            path = resolve_within(context.working_directory, tool_input.path)
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except (OSError, ValueError) as exc:
            return ToolResult.error(f"Cannot read {tool_input.path}: {exc}")
        lines = text.splitlines(keepends=True)
        end = None if tool_input.limit is None else tool_input.offset + tool_input.limit
        selected = "".join(lines[tool_input.offset:end])
        if len(selected) > _MAX_READ_CHARS:
            selected = selected[:_MAX_READ_CHARS] + "\n[truncated]"
        return ToolResult(content=selected)


class WriteTool(Tool):
    name = "Write"
    description = "Create or overwrite a UTF-8 text file in the working directory."
    input_model = WriteInput

    def format_summary(self, tool_input: Mapping[str, Any] | None) -> str:
        """Describe a write call."""
        return _path_summary(self.name, tool_input)

    async def run(self, tool_input: WriteInput, context: ToolContext) -> ToolResult:
        """Write text to a file, creating parent directories."""
        try:
            path = resolve_within(context.working_directory, tool_input.path)
            path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_text, tool_input.content, encoding="utf-8")
        except (OSError, ValueError) as exc:
            return ToolResult.error(f"Cannot write {tool_input.path}: {exc}")
        return ToolResult(content=f"Wrote {len(tool_input.content)} characters to {path}")


class ListTool(Tool):
    name = "List"
    description = "List the entries of a directory inside the working directory."
    input_model = ListInput
    output_model = ListOutput

    def format_summary(self, tool_input: Mapping[str, Any] | None) -> str:
        """Describe a list call."""
        return _path_summary(self.name, tool_input or {"path": "."})

    async def run(self, tool_input: ListInput, context: ToolContext) -> ToolResult:
        """List directory entries."""
        try:
            path = resolve_within(context.working_directory, tool_input.path)
            children = sorted(path.iterdir(), key=lambda child: child.name)
            entries = [
                ListEntry(
                    name=child.name,
                    is_dir=child.is_dir(),
                    size=None if child.is_dir() else child.stat().st_size,
                )
                for child in children
            ]
        except (OSError, ValueError) as exc:
            return ToolResult.error(f"Cannot list {tool_input.path}: {exc}")
        output = ListOutput(path=str(path), entries=entries)
        lines = [f"{entry.name}/" if entry.is_dir else entry.name for entry in entries]
        return ToolResult(content="\n".join(lines) or "(empty)", output=output)
