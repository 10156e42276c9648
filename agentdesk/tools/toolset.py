"""Ordered collection of tools plus the codec registry derived from them."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Any

from .base import Tool
from .codecs import ToolCodecRegistry

__all__ = ["ToolSet"]


class ToolSet:
    """Tools available to one model client, addressable by name."""

    def __init__(
        self,
        tools: Iterable[Tool] = (),
        *,
        codecs: ToolCodecRegistry | None = None,
    ) -> None:
        self._tools: dict[str, Tool] = {}
        self.codecs = codecs if codecs is not None else ToolCodecRegistry()
        for tool in tools:
            self.add(tool)

    def add(self, tool: Tool) -> None:
        """Register *tool* and its codecs."""
        if not tool.name:
            raise ValueError(f"{type(tool).__name__} has no name")
        if tool.name in self._tools:
            raise ValueError(f"duplicate tool name: {tool.name}")
        self._tools[tool.name] = tool
        self.codecs.register(
            tool.name,
            input_model=tool.input_model,
            output_model=tool.output_model,
        )

    def remove(self, name: str) -> None:
        """Remove the tool called *name*."""
        if self._tools.pop(name, None) is not None:
            self.codecs.unregister(name)

    def get(self, name: str) -> Tool | None:
        """Return the tool called *name*."""
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        """Tool names in registration order."""
        return list(self._tools)

    def without(self, *names: str) -> "ToolSet":
        """Return a copy excluding *names*, sharing this set's codecs."""
        return ToolSet(
            (tool for tool in self._tools.values() if tool.name not in names),
            codecs=self.codecs,
        )

    def openai_schemas(self) -> list[dict[str, Any]]:
        """Function schemas of every tool."""
        return [tool.openai_schema() for tool in self._tools.values()]
