"""Shared dataclasses for model client interactions.

The model client yields complete turns (:class:`AssistantMessage`,
:class:`ToolResultMessage`) rather than token deltas; requests are either a
plain string or a sequence of request parts.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

__all__ = [
    "AfterToolExecutionContext",
    "AssistantMessage",
    "BeforeToolExecutionContext",
    "ContentBlock",
    "DocumentPart",
    "FilePart",
    "FileUploadContext",
    "ImagePart",
    "Prompt",
    "RequestPart",
    "StreamMessage",
    "TextBlock",
    "TextPart",
    "ThinkingBlock",
    "ToolResult",
    "ToolResultMessage",
    "ToolUseBlock",
    "UserMessage",
]


# ----------------------------------------------------------------------
# Streamed content


@dataclass(frozen=True, slots=True)
class TextBlock:
    text: str


@dataclass(frozen=True, slots=True)
class ThinkingBlock:
    """Reasoning emitted by the model ahead of its visible answer."""

    thinking: str
    signature: str | None = None


@dataclass(frozen=True, slots=True)
class ToolUseBlock:
    """A tool invocation requested by the model."""

    id: str
    name: str
    input: Mapping[str, Any] = field(default_factory=dict)

    def input_bytes(self) -> bytes:
        """Return the raw JSON encoding of :attr:`input`."""

        return json.dumps(dict(self.input), ensure_ascii=False, sort_keys=True).encode(
            "utf-8"
        )


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock]


@dataclass(frozen=True, slots=True)
class AssistantMessage:
    content: tuple[ContentBlock, ...] = ()

    @property
    def text(self) -> str:
        """Concatenated text blocks."""
        return "".join(
            block.text for block in self.content if isinstance(block, TextBlock)
        )

    @property
    def tool_uses(self) -> tuple[ToolUseBlock, ...]:
        """Tool use blocks in order."""
        return tuple(
            block for block in self.content if isinstance(block, ToolUseBlock)
        )


@dataclass(frozen=True, slots=True)
class UserMessage:
    content: str


@dataclass(frozen=True, slots=True)
class ToolResultMessage:
    tool_use_id: str
    content: str
    is_error: bool = False


StreamMessage = Union[AssistantMessage, UserMessage, ToolResultMessage]


# ----------------------------------------------------------------------
# Outbound request parts


@dataclass(frozen=True, slots=True)
class TextPart:
    text: str


@dataclass(frozen=True, slots=True)
class ImagePart:
    media_type: str
    data: bytes
    source_path: str | None = None


@dataclass(frozen=True, slots=True)
class DocumentPart:
    """A binary document (PDF) forwarded to the model as-is."""

    media_type: str
    data: bytes
    title: str | None = None
    source_path: str | None = None


@dataclass(frozen=True, slots=True)
class FilePart:
    """Any other attachment; sent base64 encoded with its file name."""

    media_type: str
    data: bytes
    file_name: str
    source_path: str | None = None


RequestPart = Union[TextPart, ImagePart, DocumentPart, FilePart]
Prompt = Union[str, Sequence[RequestPart]]


# ----------------------------------------------------------------------
# Tool results and hook contexts


@dataclass(slots=True)
class ToolResult:
    """Outcome of a tool body.

    ``content`` is the raw text shown to the model; ``output`` optionally
    carries the structured value the tool produced.
    """

    content: str
    is_error: bool = False
    output: Any | None = None

    @classmethod
    def error(cls, message: str) -> "ToolResult":
        """Build an error result carrying *message*."""
        return cls(content=message, is_error=True)


@dataclass(frozen=True, slots=True)
class BeforeToolExecutionContext:
    tool_name: str
    tool_use_id: str
    input: Mapping[str, Any]
    decoded_input: Any | None = None


@dataclass(frozen=True, slots=True)
class AfterToolExecutionContext:
    tool_name: str
    tool_use_id: str
    result: ToolResult
    decoded_output: Any | None = None


@dataclass(frozen=True, slots=True)
class FileUploadContext:
    file_path: str
