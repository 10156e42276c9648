"""Conversation runtime: executions, transcript, persistence and controller."""

from .attachments import AttachmentError, FileAttachmentManager
from .controller import Controller, build_system_prompt
from .conversation import Conversation, ConversationState, describe_error
from .events import ChangeEvent, ChangeKind, ConversationEvents
from .execution import ExecutionRegistry, ToolExecution
from .messages import (
    ConversationMessage,
    FileAttachment,
    FileAttachmentContent,
    MessageKind,
    TextContent,
    ThinkingContent,
    ToolExecutionContent,
)
from .persistence import ConversationStore

__all__ = [
    "AttachmentError",
    "ChangeEvent",
    "ChangeKind",
    "Controller",
    "Conversation",
    "ConversationEvents",
    "ConversationMessage",
    "ConversationState",
    "ConversationStore",
    "ExecutionRegistry",
    "FileAttachment",
    "FileAttachmentContent",
    "FileAttachmentManager",
    "MessageKind",
    "TextContent",
    "ThinkingContent",
    "ToolExecution",
    "ToolExecutionContent",
    "build_system_prompt",
    "describe_error",
]
