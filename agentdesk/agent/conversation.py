"""A single conversation: transcript, tool executions and persistence."""

from __future__ import annotations

import asyncio
import datetime
import json
import logging
import uuid
import weakref
from collections.abc import Iterable, Sequence
from enum import Enum
from pathlib import Path
from typing import Any

from ..llm.client import SupportsModelClient
from ..llm.errors import APIError, MaxTurnsReachedError, RequestCancelledError
from ..llm.hooks import HookKind, HookRegistration
from ..llm.types import (
    AfterToolExecutionContext,
    AssistantMessage,
    BeforeToolExecutionContext,
    FileUploadContext,
    Prompt,
    StreamMessage,
    TextBlock,
    TextPart,
    ThinkingBlock,
    ToolResultMessage,
    ToolUseBlock,
    UserMessage,
)
from ..telemetry import log_event
from ..tools.subagent import SUB_AGENT_TOOL_NAME, SubAgentOutput, sub_agent_task_ids
from ..util.cancellation import CancellationEvent, OperationCancelledError
from ..util.time import utc_now
from .attachments import AttachmentError, FileAttachmentManager
from .events import ChangeEvent, ChangeKind, ConversationEvents
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
from .persistence import (
    ConversationMetadata,
    ConversationStore,
    MessagesManifest,
    ToolOutputsManifest,
    execution_from_persisted,
    execution_to_persisted,
    message_from_persisted,
    message_to_persisted,
)

logger = logging.getLogger(__name__)

__all__ = ["Conversation", "ConversationState", "describe_error"]

DEFAULT_TITLE = "New Conversation"
CANCELLED_TEXT = "Request cancelled"
_CANCELLATION_ERRORS = (RequestCancelledError, OperationCancelledError, asyncio.CancelledError)


class ConversationState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"


def describe_error(exc: BaseException) -> str:
    """Return the transcript text for a failed turn."""
    if isinstance(exc, APIError):
        return f"API Error: {exc.message}"
    if isinstance(exc, MaxTurnsReachedError):
        return "Maximum conversation turns reached"
    if isinstance(exc, _CANCELLATION_ERRORS):
        return CANCELLED_TEXT
    return str(exc) or type(exc).__name__


class Conversation:
    """Ordered transcript plus the tool executions it references.

    Hooks are registered on the model client at construction and hold only a
    weak reference back to the conversation; :meth:`close` disposes them.
    All mutation is expected to happen on the event loop running
    :meth:`send_message`.
    """

    def __init__(
        self,
        client: SupportsModelClient,
        store: ConversationStore,
        *,
        conversation_id: str | None = None,
        events: ConversationEvents | None = None,
    ) -> None:
        self.id = conversation_id or str(uuid.uuid4())
        self.client = client
        self.store = store
        self.events = events if events is not None else ConversationEvents()
        self.created_at = utc_now()
        self.tool_executions = ExecutionRegistry(on_change=self._on_registry_change)
        self.uploading_files: set[str] = set()
        self.attachments = FileAttachmentManager(self.directory)
        self._messages: dict[str, ConversationMessage] = {}
        self._state = ConversationState.IDLE
        self._hook_registrations: list[HookRegistration] = []
        self._register_hooks()

    # ------------------------------------------------------------------
    @property
    def directory(self) -> Path:
        """Directory holding this conversation."""
        return self.store.conversation_dir(self.id)

    @property
    def working_directory(self) -> Path:
        """Working directory handed to tools."""
        return self.store.files_dir(self.id)

    @property
    def messages(self) -> list[ConversationMessage]:
        """Messages in transcript order."""
        return list(self._messages.values())

    @property
    def state(self) -> ConversationState:
        """Current send state."""
        return self._state

    @property
    def title(self) -> str:
        """First line of the first user message."""
        for message in self._messages.values():
            if message.kind is MessageKind.USER:
                text = message.text_content.strip()
                if text:
                    return text
        return DEFAULT_TITLE

    @property
    def last_message_timestamp(self) -> datetime.datetime:
        """Timestamp of the newest message."""
        if not self._messages:
            return self.created_at
        return next(reversed(self._messages.values())).timestamp

    def tool_execution_history(self) -> list[dict[str, Any]]:
        """Return name, input and output of every completed execution."""
        return [
            {
                "name": execution.name,
                "input": execution.input_summary,
                "output": execution.output_text,
                "is_error": execution.is_error,
            }
            for execution in self.tool_executions
            if execution.is_complete
        ]

    # ------------------------------------------------------------------
    def _emit(self, kind: ChangeKind, subject_id: str | None = None) -> None:
        self.events.emit(ChangeEvent(kind, self.id, subject_id))

    def _on_registry_change(self, kind: ChangeKind, subject_id: str) -> None:
        self._emit(kind, subject_id or None)

    def _set_state(self, state: ConversationState) -> None:
        if self._state is not state:
            self._state = state
            self._emit(ChangeKind.STATE_CHANGED)

    def _append_message(self, message: ConversationMessage) -> None:
        self._messages[message.id] = message
        self._emit(ChangeKind.MESSAGE_ADDED, message.id)

    # ------------------------------------------------------------------
    # Hooks

    def _register_hooks(self) -> None:
        ref = weakref.ref(self)

        def _forward(handler_name: str):
            def _hook(context: Any) -> None:
                conversation = ref()
                if conversation is not None:
                    getattr(conversation, handler_name)(context)

            return _hook

        handlers = {
            HookKind.BEFORE_TOOL_EXECUTION: "_on_before_tool_execution",
            HookKind.AFTER_TOOL_EXECUTION: "_on_after_tool_execution",
            HookKind.BEFORE_FILE_UPLOAD: "_on_before_file_upload",
            HookKind.AFTER_FILE_UPLOAD: "_on_after_file_upload",
        }
        for kind, handler_name in handlers.items():
            self._hook_registrations.append(self.client.add_hook(kind, _forward(handler_name)))

    def close(self) -> None:
        """Deregister the hooks installed on the model client."""
        registrations, self._hook_registrations = self._hook_registrations, []
        for registration in registrations:
            registration.dispose()

    def _on_before_tool_execution(self, context: BeforeToolExecutionContext) -> None:
        tool_input = context.decoded_input if context.decoded_input is not None else context.input
        summary = self.client.format_tool_call_summary(context.tool_name, tool_input)
        execution = self.tool_executions.update_before_execution(
            context.tool_use_id,
            context.tool_name,
            summary,
            context.decoded_input,
            self.client.tool_metadata(context.tool_name),
        )
        execution.input_data = json.dumps(
            dict(context.input), ensure_ascii=False, sort_keys=True, default=str
        ).encode("utf-8")
        if context.tool_name == SUB_AGENT_TOOL_NAME:
            task_ids = sub_agent_task_ids(context.tool_use_id, context.decoded_input)
            self.tool_executions.register_fan_out(context.tool_use_id, task_ids)

    def _on_after_tool_execution(self, context: AfterToolExecutionContext) -> None:
        if context.tool_use_id not in self.tool_executions:
            logger.debug("after hook for unknown tool use %s ignored", context.tool_use_id)
            return
        result = context.result
        codecs = self.client.codecs
        self.tool_executions.complete_execution(
            context.tool_use_id,
            result.content,
            context.decoded_output,
            result.is_error,
            output_data=codecs.encode(context.decoded_output),
        )
        if context.tool_name == SUB_AGENT_TOOL_NAME:
            self._finalize_sub_agent(context.tool_use_id, context.decoded_output)
        self.save_session()

    def _finalize_sub_agent(self, tool_use_id: str, decoded_output: Any) -> None:
        try:
            if isinstance(decoded_output, SubAgentOutput):
                self.tool_executions.finalize_fan_out(
                    tool_use_id,
                    [
                        ToolExecution(
                            call.id,
                            call.name,
                            call.summary,
                            is_complete=True,
                            is_error=call.is_error,
                        )
                        for call in decoded_output.tool_calls()
                    ],
                )
        finally:
            self.tool_executions.cleanup_fan_out(tool_use_id)

    def handle_sub_agent_tool_call(self, task_id: str, tool_name: str, summary: str) -> None:
        """Record live progress reported by a running SubAgent task."""
        self.tool_executions.add_child_execution(task_id, tool_name, summary)

    def _on_before_file_upload(self, context: FileUploadContext) -> None:
        self.uploading_files.add(context.file_path)
        self._emit(ChangeKind.UPLOADS_CHANGED, context.file_path)

    def _on_after_file_upload(self, context: FileUploadContext) -> None:
        self.uploading_files.discard(context.file_path)
        self._emit(ChangeKind.UPLOADS_CHANGED, context.file_path)

    # ------------------------------------------------------------------
    # Sending

    async def send_message(
        self,
        text: str,
        attachments: Sequence[str | Path] = (),
        *,
        cancellation: CancellationEvent | None = None,
    ) -> None:
        """Run one user turn to completion.

        Failures never propagate except task cancellation, which is recorded
        in the transcript like any other cancellation and then re-raised.
        """
        if self._state is ConversationState.STREAMING:
            raise RuntimeError("a message is already being sent in this conversation")
        message_id = str(uuid.uuid4())
        copied = await self._copy_attachments(attachments, message_id)
        content: list[MessageContent] = [TextContent(text)]
        content.extend(FileAttachmentContent(attachment) for attachment in copied)
        self._append_message(
            ConversationMessage(id=message_id, content=content, kind=MessageKind.USER)
        )
        log_event(
            "CONVERSATION_SEND",
            {"conversation_id": self.id, "attachments": len(copied)},
        )

        self._set_state(ConversationState.STREAMING)
        try:
            prompt = await self._build_prompt(text, copied)
            stream = self.client.query(prompt, cancellation=cancellation)
            try:
                async for stream_message in stream:
                    if cancellation is not None and cancellation.cancelled:
                        raise RequestCancelledError()
                    self._consume(stream_message)
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
        except asyncio.CancelledError as exc:
            self._fail_turn(exc)
            raise
        except Exception as exc:
            self._fail_turn(exc)
        else:
            self.save_session()
        finally:
            self._set_state(ConversationState.IDLE)

    async def _copy_attachments(
        self, sources: Iterable[str | Path], message_id: str
    ) -> list[FileAttachment]:
        copied: list[FileAttachment] = []
        for source in sources:
            try:
                copied.append(
                    await asyncio.to_thread(self.attachments.copy_file, source, message_id)
                )
            except AttachmentError as exc:
                logger.warning("skipping attachment: %s", exc)
        return copied

    async def _build_prompt(self, text: str, attachments: Sequence[FileAttachment]) -> Prompt:
        if not attachments:
            return text
        parts: list[Any] = [TextPart(text)]
        for attachment in attachments:
            try:
                parts.append(
                    await asyncio.to_thread(self.attachments.create_content_block, attachment)
                )
            except AttachmentError as exc:
                logger.warning("skipping attachment %s: %s", attachment.file_name, exc)
        return parts

    def _consume(self, message: StreamMessage) -> None:
        if isinstance(message, AssistantMessage):
            content = self._map_assistant_content(message, mark_complete=False)
            if content:
                self._append_message(ConversationMessage.create(content, MessageKind.ASSISTANT))
        elif isinstance(message, ToolResultMessage):
            # clients without hooks only report results through the stream
            execution = self.tool_executions.get(message.tool_use_id)
            if execution is not None and not execution.is_complete:
                self.tool_executions.complete_execution(
                    message.tool_use_id, message.content, None, message.is_error
                )

    def _map_assistant_content(
        self, message: AssistantMessage, *, mark_complete: bool
    ) -> list[MessageContent]:
        content: list[MessageContent] = []
        for block in message.content:
            if isinstance(block, TextBlock):
                if block.text:
                    content.append(TextContent(block.text))
            elif isinstance(block, ThinkingBlock):
                content.append(ThinkingContent(block.thinking, block.signature))
            elif isinstance(block, ToolUseBlock):
                content.append(ToolExecutionContent(self._observe(block, mark_complete)))
        return content

    def _observe(self, block: ToolUseBlock, mark_complete: bool) -> ToolExecution:
        known = block.id in self.tool_executions
        execution = self.tool_executions.observe_tool_use(
            block.id,
            block.name,
            self.client.codecs.decode_input(block.name, block.input),
            input_summary=self.client.format_tool_call_summary(block.name, block.input),
            input_data=block.input_bytes(),
            metadata=self.client.tool_metadata(block.name),
        )
        if mark_complete and not known:
            execution.is_complete = True
        return execution

    def _fail_turn(self, exc: BaseException) -> None:
        if self._messages:
            last_id, last = next(reversed(self._messages.items()))
            if last.kind is MessageKind.ASSISTANT:
                del self._messages[last_id]
                self._emit(ChangeKind.MESSAGE_REMOVED, last_id)
        text = describe_error(exc)
        if isinstance(exc, _CANCELLATION_ERRORS):
            log_event("CONVERSATION_CANCELLED", {"conversation_id": self.id})
        else:
            logger.warning("turn failed in conversation %s: %s", self.id, text, exc_info=exc)
        error_message = ConversationMessage.text(text, MessageKind.ERROR)
        error_message.resulted_in_error = True
        self._append_message(error_message)
        self.save_session()

    # ------------------------------------------------------------------
    # Persistence

    def save_session(self) -> bool:
        """Write every file of this conversation; failures are logged only.

        Each manifest is written independently so that one failing write
        does not prevent the others.
        """
        codecs = self.client.codecs
        conversation_dir = self.directory
        steps = (
            ("directory", lambda: self.store.ensure_conversation_dir(self.id)),
            ("session", lambda: self.store.write_session(self.id, self.client.export_session())),
            (
                "tool outputs",
                lambda: self.store.write_tool_outputs(
                    self.id,
                    ToolOutputsManifest(
                        {
                            execution.id: execution_to_persisted(execution, codecs)
                            for execution in self.tool_executions
                        }
                    ),
                ),
            ),
            (
                "messages",
                lambda: self.store.write_messages(
                    self.id,
                    MessagesManifest(
                        [
                            message_to_persisted(message, conversation_dir)
                            for message in self._messages.values()
                        ]
                    ),
                ),
            ),
            (
                "index",
                lambda: self.store.update_index(
                    ConversationMetadata(self.id, self.last_message_timestamp)
                ),
            ),
        )
        ok = True
        for label, step in steps:
            try:
                step()
            except Exception:
                logger.exception("failed to save %s of conversation %s", label, self.id)
                ok = False
        if ok:
            self._emit(ChangeKind.SAVED)
        return ok

    def restore(self) -> None:
        """Import the persisted session blob and rebuild the transcript."""
        data = self.store.read_session(self.id)
        if data is not None:
            self.client.import_session(data)
        self.rebuild_messages_from_history()

    def rebuild_messages_from_history(self) -> None:
        """Reload executions, then messages.

        The messages manifest is authoritative when present.  Otherwise the
        transcript is derived from the client history; attachments cannot be
        recovered on that path.
        """
        codecs = self.client.codecs
        try:
            outputs = self.store.read_tool_outputs(self.id)
        except (OSError, ValueError) as exc:
            logger.warning("tool outputs of %s unreadable: %s", self.id, exc)
            outputs = None
        if outputs is not None:
            self.tool_executions.replace(
                execution_from_persisted(persisted, codecs)
                for persisted in outputs.executions.values()
            )

        try:
            manifest = self.store.read_messages(self.id)
        except (OSError, ValueError) as exc:
            logger.warning("messages of %s unreadable: %s", self.id, exc)
            manifest = None
        if manifest is not None:
            self._messages = {
                persisted.id: message_from_persisted(
                    persisted, self.directory, self.tool_executions
                )
                for persisted in manifest.messages
            }
        else:
            self._messages = {}
            for message in self.client.history:
                self._rebuild_from_stream(message)
        self._order_executions_by_transcript()
        self._emit(ChangeKind.MESSAGES_RELOADED)

    def _rebuild_from_stream(self, message: StreamMessage) -> None:
        if isinstance(message, UserMessage):
            rebuilt = ConversationMessage.text(message.content, MessageKind.USER)
            self._messages[rebuilt.id] = rebuilt
        elif isinstance(message, AssistantMessage):
            content = self._map_assistant_content(message, mark_complete=True)
            if content:
                rebuilt = ConversationMessage.create(content, MessageKind.ASSISTANT)
                self._messages[rebuilt.id] = rebuilt
        elif isinstance(message, ToolResultMessage):
            execution = self.tool_executions.get(message.tool_use_id)
            if execution is not None and not execution.output_text:
                execution.output_text = message.content
                execution.is_error = message.is_error

    def _order_executions_by_transcript(self) -> None:
        ordered: list[ToolExecution] = []
        seen: set[str] = set()
        for message in self._messages.values():
            for execution in message.executions:
                if execution.id not in seen:
                    seen.add(execution.id)
                    ordered.append(execution)
        ordered.extend(
            execution for execution in self.tool_executions if execution.id not in seen
        )
        self.tool_executions.replace(ordered)

    def delete_files(self) -> None:
        """Remove this conversation from the index and delete its directory."""
        self.store.delete_conversation(self.id)
