"""Transcript messages and their content blocks."""

from __future__ import annotations

import datetime
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Union

from ..util.time import utc_now
from .execution import ToolExecution

__all__ = [
    "ConversationMessage",
    "FileAttachment",
    "FileAttachmentContent",
    "MessageContent",
    "MessageKind",
    "TextContent",
    "ThinkingContent",
    "ToolExecutionContent",
]


class MessageKind(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class FileAttachment:
    """A user supplied file copied under the conversation directory."""

    id: str
    path: Path
    file_name: str
    mime_type: str
    file_size: int

    def relative_to(self, conversation_dir: Path) -> str:
        """Return :attr:`path` relative to *conversation_dir* in POSIX form."""
        relative = self.path.resolve().relative_to(Path(conversation_dir).resolve())
        return PurePosixPath(*relative.parts).as_posix()

    @classmethod
    def from_relative(
        cls,
        conversation_dir: Path,
        *,
        id: str,
        relative_path: str,
        file_name: str,
        mime_type: str,
        file_size: int,
    ) -> "FileAttachment":
        """Build an attachment from a path relative to *conversation_dir*."""
        relative = PurePosixPath(relative_path)
        if relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"attachment path escapes the conversation: {relative_path}")
        return cls(
            id=id,
            path=Path(conversation_dir).joinpath(*relative.parts),
            file_name=file_name,
            mime_type=mime_type,
            file_size=file_size,
        )


@dataclass(frozen=True, slots=True)
class TextContent:
    text: str


@dataclass(frozen=True, slots=True)
class ThinkingContent:
    thinking: str
    signature: str | None = None


@dataclass(frozen=True, slots=True)
class ToolExecutionContent:
    """Reference to an execution owned by the conversation."""

    execution: ToolExecution

    @property
    def execution_id(self) -> str:
        """Identifier of the referenced execution."""
        return self.execution.id


@dataclass(frozen=True, slots=True)
class FileAttachmentContent:
    attachment: FileAttachment


MessageContent = Union[TextContent, ThinkingContent, ToolExecutionContent, FileAttachmentContent]


@dataclass(slots=True)
class ConversationMessage:
    id: str
    content: list[MessageContent] = field(default_factory=list)
    kind: MessageKind = MessageKind.USER
    timestamp: datetime.datetime = field(default_factory=utc_now)
    resulted_in_error: bool = False

    @classmethod
    def create(
        cls, content: list[MessageContent], kind: MessageKind
    ) -> "ConversationMessage":
        """Return a new message stamped with the current time."""
        return cls(id=str(uuid.uuid4()), content=content, kind=kind)

    @classmethod
    def text(cls, text: str, kind: MessageKind = MessageKind.USER) -> "ConversationMessage":
        """Return a message holding a single text block."""
        return cls.create([TextContent(text)], kind)

    @property
    def text_content(self) -> str:
        """Concatenated text blocks."""
        return "\n".join(
            block.text for block in self.content if isinstance(block, TextContent)
        )

    @property
    def is_sent(self) -> bool:
        """Whether the message already reached the model."""
        return self.kind is MessageKind.USER

    @property
    def executions(self) -> list[ToolExecution]:
        """Executions referenced by this message."""
        return [
            block.execution
            for block in self.content
            if isinstance(block, ToolExecutionContent)
        ]

    @property
    def attachments(self) -> list[FileAttachment]:
        """Attachments carried by this message."""
        return [
            block.attachment
            for block in self.content
            if isinstance(block, FileAttachmentContent)
        ]
