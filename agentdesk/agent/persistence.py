"""On-disk manifests for conversations.

Layout under the conversations root::

    conversations.json              index, newest first
    <conversation-id>/
        session.json                opaque model client state
        tool_outputs.json           {"executions": {<tool-use-id>: ...}}
        messages.json               {"messages": [...]}
        files/                      model working directory
        attachments/<message-id>/   user attachments

Manifests reference tool executions from messages by id only.  Attachment
paths are stored relative to the conversation directory so the root may
move between launches.
"""

from __future__ import annotations

import base64
import binascii
import datetime
import logging
import shutil
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from ..tools.codecs import ToolCodecRegistry
from ..util.json import load_manifest, write_bytes_atomic, write_json_atomic
from ..util.time import format_timestamp, parse_timestamp
from .execution import ExecutionRegistry, ToolExecution
from .messages import (
    ConversationMessage,
    FileAttachment,
    FileAttachmentContent,
    MessageContent,
    MessageKind,
    TextContent,
    ThinkingContent,
    ToolExecutionContent,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ConversationMetadata",
    "ConversationStore",
    "ConversationsManifest",
    "MessagesManifest",
    "PersistedContent",
    "PersistedFileAttachment",
    "PersistedMessage",
    "PersistedText",
    "PersistedThinking",
    "PersistedToolReference",
    "PersistedToolExecution",
    "ToolOutputsManifest",
    "execution_from_persisted",
    "execution_to_persisted",
    "message_from_persisted",
    "message_to_persisted",
]

INDEX_FILE = "conversations.json"
SESSION_FILE = "session.json"
TOOL_OUTPUTS_FILE = "tool_outputs.json"
MESSAGES_FILE = "messages.json"
FILES_DIR = "files"
ATTACHMENTS_DIR = "attachments"


def _encode_bytes(data: bytes | None) -> str | None:
    if data is None:
        return None
    return base64.b64encode(data).decode("ascii")


def _decode_bytes(value: Any) -> bytes | None:
    if not isinstance(value, str):
        return None
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError):
        logger.debug("ignoring malformed base64 payload")
        return None


def _require_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ValueError(f"missing or invalid {key!r}")
    return value


# ----------------------------------------------------------------------
# Index


@dataclass(slots=True)
class ConversationMetadata:
    id: str
    last_message_timestamp: datetime.datetime

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the index entry form."""
        return {
            "id": self.id,
            "lastMessageTimestamp": format_timestamp(self.last_message_timestamp),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ConversationMetadata":
        """Parse an index entry."""
        return cls(
            id=_require_str(payload, "id"),
            last_message_timestamp=parse_timestamp(payload.get("lastMessageTimestamp")),
        )


@dataclass(slots=True)
class ConversationsManifest:
    conversations: list[ConversationMetadata] = field(default_factory=list)

    def sort(self) -> None:
        """Order entries newest first."""
        self.conversations.sort(key=lambda entry: entry.last_message_timestamp, reverse=True)

    def upsert(self, metadata: ConversationMetadata) -> None:
        """Insert or replace the entry for ``metadata.id``."""
        self.remove(metadata.id)
        self.conversations.append(metadata)
        self.sort()

    def remove(self, conversation_id: str) -> bool:
        """Drop *conversation_id*; return whether it was present."""
        before = len(self.conversations)
        self.conversations = [
            entry for entry in self.conversations if entry.id != conversation_id
        ]
        return len(self.conversations) != before

    def ids(self) -> list[str]:
        """Conversation ids in index order."""
        return [entry.id for entry in self.conversations]

    def to_dict(self) -> dict[str, Any]:
        """Serialize the whole index."""
        return {"conversations": [entry.to_dict() for entry in self.conversations]}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ConversationsManifest":
        """Parse the index, skipping invalid entries."""
        entries: list[ConversationMetadata] = []
        raw_entries = payload.get("conversations")
        if not isinstance(raw_entries, list):
            if raw_entries is not None:
                logger.warning("conversation index has no conversation list")
            raw_entries = []
        for raw in raw_entries:
            try:
                entries.append(ConversationMetadata.from_dict(raw))
            except (TypeError, ValueError, AttributeError) as exc:
                logger.warning("skipping invalid index entry %r: %s", raw, exc)
        manifest = cls(entries)
        manifest.sort()
        return manifest


# ----------------------------------------------------------------------
# Tool outputs


@dataclass(slots=True)
class PersistedToolExecution:
    id: str
    name: str
    input: str
    output: str
    is_error: bool = False
    input_data: bytes | None = None
    output_data: bytes | None = None
    is_complete: bool = True
    metadata: dict[str, str] = field(default_factory=dict)
    children: list["PersistedToolExecution"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with base64 encoded payloads."""
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "input": self.input,
            "output": self.output,
            "isError": self.is_error,
            "isComplete": self.is_complete,
        }
        if self.input_data is not None:
            payload["inputData"] = _encode_bytes(self.input_data)
        if self.output_data is not None:
            payload["outputData"] = _encode_bytes(self.output_data)
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        if self.children:
            payload["children"] = [child.to_dict() for child in self.children]
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PersistedToolExecution":
        """Parse one persisted execution and its children."""
        metadata = payload.get("metadata")
        children = payload.get("children")
        return cls(
            id=_require_str(payload, "id"),
            name=_require_str(payload, "name"),
            input=str(payload.get("input") or ""),
            output=str(payload.get("output") or ""),
            is_error=bool(payload.get("isError", False)),
            input_data=_decode_bytes(payload.get("inputData")),
            output_data=_decode_bytes(payload.get("outputData")),
            # manifests written before completion tracking only held
            # finished executions
            is_complete=bool(payload.get("isComplete", True)),
            metadata=(
                {str(k): str(v) for k, v in metadata.items()}
                if isinstance(metadata, Mapping)
                else {}
            ),
            children=[
                cls.from_dict(child)
                for child in (children if isinstance(children, list) else ())
                if isinstance(child, Mapping)
            ],
        )


@dataclass(slots=True)
class ToolOutputsManifest:
    executions: dict[str, PersistedToolExecution] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the executions keyed by id."""
        return {
            "executions": {
                key: execution.to_dict() for key, execution in self.executions.items()
            }
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ToolOutputsManifest":
        """Parse the manifest, skipping invalid executions."""
        raw = payload.get("executions")
        if not isinstance(raw, Mapping):
            raise ValueError("tool outputs manifest has no executions mapping")
        executions: dict[str, PersistedToolExecution] = {}
        for key, value in raw.items():
            if not isinstance(value, Mapping):
                logger.warning("skipping invalid tool output %s", key)
                continue
            try:
                executions[str(key)] = PersistedToolExecution.from_dict(value)
            except ValueError as exc:
                logger.warning("skipping invalid tool output %s: %s", key, exc)
        return cls(executions)


# ----------------------------------------------------------------------
# Messages


@dataclass(slots=True)
class PersistedFileAttachment:
    id: str
    relative_path: str
    file_name: str
    mime_type: str
    file_size: int

    def to_dict(self) -> dict[str, Any]:
        """Serialize attachment metadata."""
        return {
            "id": self.id,
            "relativePath": self.relative_path,
            "fileName": self.file_name,
            "mimeType": self.mime_type,
            "fileSize": self.file_size,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PersistedFileAttachment":
        """Parse attachment metadata."""
        size = payload.get("fileSize", 0)
        if isinstance(size, bool) or not isinstance(size, (int, float)):
            raise ValueError("missing or invalid 'fileSize'")
        return cls(
            id=_require_str(payload, "id"),
            relative_path=_require_str(payload, "relativePath"),
            file_name=_require_str(payload, "fileName"),
            mime_type=str(payload.get("mimeType") or "application/octet-stream"),
            file_size=int(size),
        )


@dataclass(frozen=True, slots=True)
class PersistedText:
    text: str


@dataclass(frozen=True, slots=True)
class PersistedThinking:
    thinking: str
    signature: str | None = None


@dataclass(frozen=True, slots=True)
class PersistedToolReference:
    tool_use_id: str


PersistedContent = Union[
    PersistedText, PersistedThinking, PersistedToolReference, PersistedFileAttachment
]


def content_to_dict(content: PersistedContent) -> dict[str, Any]:
    """Wrap *content* in its tagged form."""
    if isinstance(content, PersistedText):
        return {"type": "text", "data": content.text}
    if isinstance(content, PersistedThinking):
        data: dict[str, Any] = {"thinking": content.thinking}
        if content.signature is not None:
            data["signature"] = content.signature
        return {"type": "thinking", "data": data}
    if isinstance(content, PersistedToolReference):
        return {"type": "toolExecution", "data": content.tool_use_id}
    return {"type": "fileAttachment", "data": content.to_dict()}


def content_from_dict(payload: Mapping[str, Any]) -> PersistedContent:
    """Parse one tagged content block."""
    kind = payload.get("type")
    data = payload.get("data")
    if kind == "text":
        if not isinstance(data, str):
            raise ValueError("text content must be a string")
        return PersistedText(data)
    if kind == "thinking":
        # older builds stored the bare reasoning text
        if isinstance(data, str):
            return PersistedThinking(data)
        if isinstance(data, Mapping) and isinstance(data.get("thinking"), str):
            signature = data.get("signature")
            return PersistedThinking(
                data["thinking"], signature if isinstance(signature, str) else None
            )
        raise ValueError("invalid thinking content")
    if kind == "toolExecution":
        if not isinstance(data, str):
            raise ValueError("tool execution reference must be an id string")
        return PersistedToolReference(data)
    if kind == "fileAttachment":
        if not isinstance(data, Mapping):
            raise ValueError("invalid file attachment content")
        return PersistedFileAttachment.from_dict(data)
    raise ValueError(f"unknown content type: {kind!r}")


@dataclass(slots=True)
class PersistedMessage:
    id: str
    content: list[PersistedContent]
    kind: MessageKind
    timestamp: datetime.datetime
    resulted_in_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize the message and its content."""
        return {
            "id": self.id,
            "content": [content_to_dict(block) for block in self.content],
            "kind": self.kind.value,
            "timestamp": format_timestamp(self.timestamp),
            "resultedInError": self.resulted_in_error,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PersistedMessage":
        """Parse a message; invalid content blocks are skipped."""
        if not isinstance(payload, Mapping):
            raise ValueError(f"invalid message entry: {payload!r}")
        raw_content = payload.get("content")
        if raw_content is None:
            raw_content = []
        elif not isinstance(raw_content, list):
            raise ValueError("message content must be a list")
        content: list[PersistedContent] = []
        for raw in raw_content:
            try:
                content.append(content_from_dict(raw))
            except (TypeError, ValueError, AttributeError) as exc:
                logger.warning("skipping invalid message content: %s", exc)
        return cls(
            id=_require_str(payload, "id"),
            content=content,
            kind=MessageKind(payload.get("kind")),
            timestamp=parse_timestamp(payload.get("timestamp")),
            resulted_in_error=bool(payload.get("resultedInError", False)),
        )


@dataclass(slots=True)
class MessagesManifest:
    messages: list[PersistedMessage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Serialize all messages."""
        return {"messages": [message.to_dict() for message in self.messages]}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MessagesManifest":
        """Parse the manifest; a malformed entry raises ``ValueError``."""
        raw = payload.get("messages")
        if not isinstance(raw, list):
            raise ValueError("messages manifest has no message list")
        return cls([PersistedMessage.from_dict(entry) for entry in raw])


# ----------------------------------------------------------------------
# Conversions between live objects and manifests


def execution_to_persisted(
    execution: ToolExecution, codecs: ToolCodecRegistry
) -> PersistedToolExecution:
    """Encode *execution*; values that fail to encode fall back to raw bytes."""
    input_data = codecs.encode(execution.decoded_input) or execution.input_data
    output_data = codecs.encode(execution.decoded_output) or execution.output_data
    children = [
        execution_to_persisted(child, codecs) for child in (execution.children or ())
    ]
    return PersistedToolExecution(
        id=execution.id,
        name=execution.name,
        input=execution.input_summary,
        output=execution.output_text,
        is_error=execution.is_error,
        input_data=input_data,
        output_data=output_data,
        is_complete=execution.is_complete,
        metadata=dict(execution.metadata),
        children=children,
    )


def execution_from_persisted(
    persisted: PersistedToolExecution, codecs: ToolCodecRegistry
) -> ToolExecution:
    """Rebuild a live execution, decoding payloads through *codecs*."""
    children: ExecutionRegistry | None = None
    if persisted.children:
        children = ExecutionRegistry(
            execution_from_persisted(child, codecs) for child in persisted.children
        )
    return ToolExecution(
        persisted.id,
        persisted.name,
        persisted.input,
        decoded_input=codecs.decode_input(persisted.name, persisted.input_data),
        decoded_output=codecs.decode_output(persisted.name, persisted.output_data),
        metadata=persisted.metadata,
        output_text=persisted.output,
        is_error=persisted.is_error,
        is_complete=persisted.is_complete,
        input_data=persisted.input_data,
        output_data=persisted.output_data,
        children=children,
    )


def message_to_persisted(
    message: ConversationMessage, conversation_dir: Path
) -> PersistedMessage:
    """Convert *message* to its persisted form."""
    content: list[PersistedContent] = []
    for block in message.content:
        if isinstance(block, TextContent):
            content.append(PersistedText(block.text))
        elif isinstance(block, ThinkingContent):
            content.append(PersistedThinking(block.thinking, block.signature))
        elif isinstance(block, ToolExecutionContent):
            content.append(PersistedToolReference(block.execution_id))
        elif isinstance(block, FileAttachmentContent):
            attachment = block.attachment
            content.append(
                PersistedFileAttachment(
                    id=attachment.id,
                    relative_path=attachment.relative_to(conversation_dir),
                    file_name=attachment.file_name,
                    mime_type=attachment.mime_type,
                    file_size=attachment.file_size,
                )
            )
    return PersistedMessage(
        id=message.id,
        content=content,
        kind=message.kind,
        timestamp=message.timestamp,
        resulted_in_error=message.resulted_in_error,
    )


def message_from_persisted(
    persisted: PersistedMessage,
    conversation_dir: Path,
    executions: ExecutionRegistry,
) -> ConversationMessage:
    """Rebuild a message, resolving tool references through *executions*."""
    content: list[MessageContent] = []
    for block in persisted.content:
        if isinstance(block, PersistedText):
            content.append(TextContent(block.text))
        elif isinstance(block, PersistedThinking):
            content.append(ThinkingContent(block.thinking, block.signature))
        elif isinstance(block, PersistedToolReference):
            execution = executions.get(block.tool_use_id)
            if execution is None:
                logger.warning(
                    "message %s references unknown tool execution %s",
                    persisted.id,
                    block.tool_use_id,
                )
                continue
            content.append(ToolExecutionContent(execution))
        elif isinstance(block, PersistedFileAttachment):
            try:
                attachment = FileAttachment.from_relative(
                    conversation_dir,
                    id=block.id,
                    relative_path=block.relative_path,
                    file_name=block.file_name,
                    mime_type=block.mime_type,
                    file_size=block.file_size,
                )
            except ValueError as exc:
                logger.warning("skipping attachment %s: %s", block.id, exc)
                continue
            content.append(FileAttachmentContent(attachment))
    return ConversationMessage(
        id=persisted.id,
        content=content,
        kind=persisted.kind,
        timestamp=persisted.timestamp,
        resulted_in_error=persisted.resulted_in_error,
    )


# ----------------------------------------------------------------------
# Store


_INDEX_LOCK = threading.Lock()


class ConversationStore:
    """Filesystem layout and manifest IO for all conversations under *root*."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()

    @property
    def index_path(self) -> Path:
        """Location of the conversation index."""
        return self.root / INDEX_FILE

    def conversation_dir(self, conversation_id: str) -> Path:
        """Directory holding one conversation."""
        return self.root / conversation_id

    def session_path(self, conversation_id: str) -> Path:
        """Path of the session blob."""
        return self.conversation_dir(conversation_id) / SESSION_FILE

    def tool_outputs_path(self, conversation_id: str) -> Path:
        """Path of the tool outputs manifest."""
        return self.conversation_dir(conversation_id) / TOOL_OUTPUTS_FILE

    def messages_path(self, conversation_id: str) -> Path:
        """Path of the messages manifest."""
        return self.conversation_dir(conversation_id) / MESSAGES_FILE

    def files_dir(self, conversation_id: str) -> Path:
        """Working directory handed to tools."""
        return self.conversation_dir(conversation_id) / FILES_DIR

    def attachments_dir(self, conversation_id: str) -> Path:
        """Directory for copied attachments."""
        return self.conversation_dir(conversation_id) / ATTACHMENTS_DIR

    def ensure_conversation_dir(self, conversation_id: str) -> Path:
        """Create the conversation directory and its working directory."""
        directory = self.conversation_dir(conversation_id)
        self.files_dir(conversation_id).mkdir(parents=True, exist_ok=True)
        return directory

    # ------------------------------------------------------------------
    def has_session(self, conversation_id: str) -> bool:
        """Return ``True`` when a session blob exists."""
        return self.session_path(conversation_id).is_file()

    def write_session(self, conversation_id: str, data: bytes) -> None:
        """Atomically write the session blob."""
        write_bytes_atomic(self.session_path(conversation_id), data)

    def read_session(self, conversation_id: str) -> bytes | None:
        """Return the session blob or ``None`` when missing."""
        try:
            return self.session_path(conversation_id).read_bytes()
        except FileNotFoundError:
            return None

    def write_tool_outputs(self, conversation_id: str, manifest: ToolOutputsManifest) -> None:
        """Atomically write the tool outputs manifest."""
        write_json_atomic(self.tool_outputs_path(conversation_id), manifest.to_dict())

    def read_tool_outputs(self, conversation_id: str) -> ToolOutputsManifest | None:
        """Return the tool outputs manifest or ``None`` when missing."""
        payload = self._read_optional(self.tool_outputs_path(conversation_id))
        return None if payload is None else ToolOutputsManifest.from_dict(payload)

    def write_messages(self, conversation_id: str, manifest: MessagesManifest) -> None:
        """Atomically write the messages manifest."""
        write_json_atomic(self.messages_path(conversation_id), manifest.to_dict())

    def read_messages(self, conversation_id: str) -> MessagesManifest | None:
        """Return the messages manifest or ``None`` when missing."""
        payload = self._read_optional(self.messages_path(conversation_id))
        return None if payload is None else MessagesManifest.from_dict(payload)

    @staticmethod
    def _read_optional(path: Path) -> Mapping[str, Any] | None:
        try:
            payload = load_manifest(path)
        except FileNotFoundError:
            return None
        if not isinstance(payload, Mapping):
            raise ValueError(f"{path} does not contain a JSON object")
        return payload

    # ------------------------------------------------------------------
    def load_index(self) -> ConversationsManifest:
        """Return the index; a missing or unreadable file yields an empty one."""
        try:
            payload = load_manifest(self.index_path)
        except FileNotFoundError:
            return ConversationsManifest()
        except (OSError, ValueError) as exc:
            logger.warning("conversation index unreadable, starting empty: %s", exc)
            return ConversationsManifest()
        if not isinstance(payload, Mapping):
            logger.warning("conversation index is not a JSON object")
            return ConversationsManifest()
        return ConversationsManifest.from_dict(payload)

    def update_index(self, entries: ConversationMetadata | Iterable[ConversationMetadata]) -> None:
        """Merge *entries* into the on-disk index, keeping other conversations."""
        if isinstance(entries, ConversationMetadata):
            entries = (entries,)
        with _INDEX_LOCK:
            manifest = self.load_index()
            for entry in entries:
                manifest.upsert(entry)
            write_json_atomic(self.index_path, manifest.to_dict())

    def remove_from_index(self, conversation_id: str) -> bool:
        """Drop *conversation_id* from the on-disk index."""
        with _INDEX_LOCK:
            manifest = self.load_index()
            removed = manifest.remove(conversation_id)
            if removed:
                write_json_atomic(self.index_path, manifest.to_dict())
        return removed

    def delete_conversation(self, conversation_id: str) -> None:
        """Drop the index entry, then the directory.

        A crash in between leaves an orphaned directory, never an index entry
        without data.
        """
        self.remove_from_index(conversation_id)
        shutil.rmtree(self.conversation_dir(conversation_id), ignore_errors=True)
