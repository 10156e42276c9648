"""Model client contract and an OpenAI-compatible agent client.

:class:`SupportsModelClient` is everything :class:`~agentdesk.agent.conversation.Conversation`
relies on: hook registration, an async stream of complete messages per
query, tool summaries and metadata, and an opaque session blob.
:class:`AgentClient` implements it on top of the ``openai`` SDK and runs the
tool loop itself, firing hooks around every tool body.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from collections.abc import AsyncIterator, Mapping, Sequence
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ..settings import LLMSettings
from ..telemetry import log_debug_payload, log_event
from ..tools.base import ToolContext
from ..tools.codecs import ToolCodecRegistry, as_mapping
from ..tools.toolset import ToolSet
from ..util.cancellation import CancellationEvent, OperationCancelledError
from .errors import APIError, MaxTurnsReachedError, RequestCancelledError, ToolPermissionError
from .hooks import HookCallback, HookKind, HookRegistration, HookRegistry
from .types import (
    AfterToolExecutionContext,
    AssistantMessage,
    BeforeToolExecutionContext,
    ContentBlock,
    DocumentPart,
    FilePart,
    FileUploadContext,
    ImagePart,
    Prompt,
    StreamMessage,
    TextBlock,
    TextPart,
    ThinkingBlock,
    ToolResult,
    ToolResultMessage,
    ToolUseBlock,
    UserMessage,
)

logger = logging.getLogger(__name__)

# When the backend does not require authentication, the official OpenAI client
# still insists on a non-empty ``api_key``.
NO_API_KEY = "sk-no-key"

SESSION_FORMAT_VERSION = 1
INTERRUPTED_TOOL_RESULT = "Tool call was interrupted before it produced a result."

_WIRE_KEYS = frozenset({"role", "content", "tool_calls", "tool_call_id", "name"})


@runtime_checkable
class SupportsModelClient(Protocol):
    """Interface expected from model clients driving a conversation."""

    @property
    def codecs(self) -> ToolCodecRegistry:
        """Registry decoding tool payloads by tool name."""

    @property
    def history(self) -> Sequence[StreamMessage]:
        """Messages exchanged so far, oldest first."""

    def add_hook(self, kind: HookKind | str, callback: HookCallback) -> HookRegistration:
        """Register *callback* for *kind*."""

    def query(
        self, prompt: Prompt, *, cancellation: CancellationEvent | None = None
    ) -> AsyncIterator[StreamMessage]:
        """Send *prompt* and stream the resulting messages."""

    def format_tool_call_summary(self, tool_name: str, tool_input: Any) -> str:
        """Return a human readable summary of a tool call."""

    def tool_metadata(self, tool_name: str) -> Mapping[str, str]:
        """Return metadata recorded for executions of *tool_name*."""

    def export_session(self) -> bytes:
        """Serialise the multi-turn state."""

    def import_session(self, data: bytes) -> None:
        """Restore state produced by :meth:`export_session`."""


class AgentClient:
    """Agent loop over an OpenAI-compatible Chat Completions endpoint."""

    def __init__(
        self,
        settings: LLMSettings,
        *,
        tools: ToolSet | None = None,
        system_prompt: str = "",
        working_directory: str | Path = ".",
        openai_client: Any | None = None,
    ) -> None:
        self.settings = settings
        self._tools = tools if tools is not None else ToolSet()
        self._system_prompt = system_prompt
        self._working_directory = Path(working_directory)
        self._hooks = HookRegistry()
        self._messages: list[dict[str, Any]] = []
        if openai_client is None:
            import openai

            openai_client = openai.AsyncOpenAI(
                base_url=settings.base_url,
                api_key=settings.api_key or NO_API_KEY,
                timeout=settings.timeout_minutes * 60,
                max_retries=settings.max_retries,
            )
        self._client = openai_client

    # ------------------------------------------------------------------
    @property
    def codecs(self) -> ToolCodecRegistry:
        """Codecs of the registered tools."""
        return self._tools.codecs

    @property
    def tools(self) -> ToolSet:
        """Tools offered to the model."""
        return self._tools

    @property
    def system_prompt(self) -> str:
        """System prompt sent with every request."""
        return self._system_prompt

    @property
    def hooks(self) -> HookRegistry:
        """Hook registry for tool execution events."""
        return self._hooks

    def add_hook(self, kind: HookKind | str, callback: HookCallback) -> HookRegistration:
        """Register *callback* for hook *kind*."""
        return self._hooks.add(kind, callback)

    # ------------------------------------------------------------------
    def format_tool_call_summary(self, tool_name: str, tool_input: Any) -> str:
        """Describe a tool call in one line."""
        tool = self._tools.get(tool_name)
        mapping = as_mapping(tool_input)
        if tool is not None:
            return tool.format_summary(mapping)
        if not mapping:
            return tool_name
        return f"{tool_name} {json.dumps(mapping, ensure_ascii=False, default=str)}"

    def tool_metadata(self, tool_name: str) -> Mapping[str, str]:
        """Return the metadata recorded for *tool_name*."""
        tool = self._tools.get(tool_name)
        if tool is None:
            return {}
        return dict(tool.metadata)

    # ------------------------------------------------------------------
    def export_session(self) -> bytes:
        """Serialize model and history into a session blob."""
        payload = {
            "version": SESSION_FORMAT_VERSION,
            "model": self.settings.model,
            "messages": self._messages,
        }
        return json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2).encode(
            "utf-8"
        )

    def import_session(self, data: bytes) -> None:
        """Restore history from a session blob."""
        try:
            payload = json.loads(data)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid session data: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise ValueError("Session data must be a JSON object")
        messages = payload.get("messages")
        if not isinstance(messages, list) or not all(
            isinstance(message, Mapping) for message in messages
        ):
            raise ValueError("Session data is missing the message list")
        self._messages = [dict(message) for message in messages]

    @property
    def history(self) -> list[StreamMessage]:
        """Snapshot of the stream history."""
        history: list[StreamMessage] = []
        for message in self._messages:
            role = message.get("role")
            if role == "user":
                history.append(UserMessage(content=self._user_text(message.get("content"))))
            elif role == "assistant":
                history.append(self._assistant_from_wire(message))
            elif role == "tool":
                history.append(
                    ToolResultMessage(
                        tool_use_id=str(message.get("tool_call_id") or ""),
                        content=str(message.get("content") or ""),
                        is_error=bool(message.get("is_error", False)),
                    )
                )
        return history

    # ------------------------------------------------------------------
    async def query(
        self, prompt: Prompt, *, cancellation: CancellationEvent | None = None
    ) -> AsyncIterator[StreamMessage]:
        """Run the agent loop for *prompt*, yielding each complete message."""
        self._close_dangling_tool_calls()
        self._messages.append(await self._user_wire_message(prompt))
        turns = 0
        max_turns = self.settings.max_turns
        while True:
            self._check_cancelled(cancellation)
            if max_turns is not None and turns >= max_turns:
                log_event("LLM_MAX_TURNS", {"max_turns": max_turns})
                raise MaxTurnsReachedError(max_turns)
            assistant, wire = await self._complete()
            turns += 1
            self._messages.append(wire)
            yield assistant
            if not assistant.tool_uses:
                return
            for block in assistant.tool_uses:
                self._check_cancelled(cancellation)
                result = await self._execute_tool(block, cancellation)
                self._messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": block.id,
                        "content": result.content,
                        "is_error": result.is_error,
                    }
                )
                yield ToolResultMessage(
                    tool_use_id=block.id, content=result.content, is_error=result.is_error
                )

    # ------------------------------------------------------------------
    @staticmethod
    def _check_cancelled(cancellation: CancellationEvent | None) -> None:
        if cancellation is not None and cancellation.cancelled:
            raise RequestCancelledError()

    def _close_dangling_tool_calls(self) -> None:
        """Answer tool calls left without a result by an interrupted turn."""
        answered = {
            message.get("tool_call_id")
            for message in self._messages
            if message.get("role") == "tool"
        }
        repaired: list[dict[str, Any]] = []
        for message in self._messages:
            repaired.append(message)
            if message.get("role") != "assistant":
                continue
            for call in message.get("tool_calls") or ():
                call_id = call.get("id")
                if call_id in answered:
                    continue
                repaired.append(
                    {
                        "role": "tool",
                        "tool_call_id": call_id,
                        "content": INTERRUPTED_TOOL_RESULT,
                        "is_error": True,
                    }
                )
                answered.add(call_id)
        self._messages = repaired

    async def _user_wire_message(self, prompt: Prompt) -> dict[str, Any]:
        if isinstance(prompt, str):
            return {"role": "user", "content": prompt}
        content: list[dict[str, Any]] = []
        for part in prompt:
            if isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
                continue
            upload = FileUploadContext(file_path=part.source_path or "")
            if part.source_path:
                await self._hooks.fire(HookKind.BEFORE_FILE_UPLOAD, upload)
            try:
                content.append(await asyncio.to_thread(self._encode_part, part))
            finally:
                if part.source_path:
                    await self._hooks.fire(HookKind.AFTER_FILE_UPLOAD, upload)
        return {"role": "user", "content": content}

    @staticmethod
    def _encode_part(part: ImagePart | DocumentPart | FilePart) -> dict[str, Any]:
        encoded = base64.b64encode(part.data).decode("ascii")
        data_url = f"data:{part.media_type};base64,{encoded}"
        if isinstance(part, ImagePart):
            return {"type": "image_url", "image_url": {"url": data_url}}
        if isinstance(part, DocumentPart):
            file_name = part.title or "document.pdf"
        else:
            file_name = part.file_name
        return {"type": "file", "file": {"filename": file_name, "file_data": data_url}}

    @staticmethod
    def _user_text(content: Any) -> str:
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "\n".join(
                str(part.get("text", ""))
                for part in content
                if isinstance(part, Mapping) and part.get("type") == "text"
            )
        return ""

    # ------------------------------------------------------------------
    def _request_args(self) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        for message in self._messages:
            messages.append({key: value for key, value in message.items() if key in _WIRE_KEYS})
        request_args: dict[str, Any] = {"model": self.settings.model, "messages": messages}
        if len(self._tools):
            request_args["tools"] = self._tools.openai_schemas()
        if self.settings.temperature is not None:
            request_args["temperature"] = self.settings.temperature
        return request_args

    async def _complete(self) -> tuple[AssistantMessage, dict[str, Any]]:
        import openai

        request_args = self._request_args()
        start = time.monotonic()
        log_event(
            "LLM_REQUEST",
            {
                "model": self.settings.model,
                "messages": len(request_args["messages"]),
                "tools": len(self._tools),
            },
        )
        log_debug_payload("LLM_REQUEST_DETAIL", request_args)
        try:
            completion = await self._client.chat.completions.create(**request_args)
        except openai.APIStatusError as exc:
            log_event("LLM_ERROR", {"status": exc.status_code, "error": str(exc)}, start_time=start)
            raise APIError(self._status_error_message(exc), status_code=exc.status_code) from exc
        except openai.OpenAIError as exc:
            log_event("LLM_ERROR", {"error": str(exc)}, start_time=start)
            raise APIError(str(exc) or type(exc).__name__) from exc
        if not completion.choices:
            raise APIError("Model returned no choices")
        message = completion.choices[0].message
        wire: dict[str, Any] = {"role": "assistant", "content": message.content or ""}
        reasoning = getattr(message, "reasoning_content", None) or getattr(
            message, "reasoning", None
        )
        if isinstance(reasoning, str) and reasoning.strip():
            wire["reasoning_content"] = reasoning
        tool_calls = list(message.tool_calls or ())
        if tool_calls:
            wire["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.function.name,
                        "arguments": call.function.arguments or "{}",
                    },
                }
                for call in tool_calls
            ]
        assistant = self._assistant_from_wire(wire)
        log_event(
            "LLM_RESPONSE",
            {
                "text_chars": len(wire["content"]),
                "tool_calls": [block.name for block in assistant.tool_uses],
            },
            start_time=start,
        )
        return assistant, wire

    @staticmethod
    def _status_error_message(exc: Any) -> str:
        body = getattr(exc, "body", None)
        if isinstance(body, Mapping):
            error = body.get("error")
            if isinstance(error, Mapping) and error.get("message"):
                return str(error["message"])
            if body.get("message"):
                return str(body["message"])
        return getattr(exc, "message", None) or str(exc)

    @staticmethod
    def _assistant_from_wire(message: Mapping[str, Any]) -> AssistantMessage:
        blocks: list[ContentBlock] = []
        reasoning = message.get("reasoning_content")
        if isinstance(reasoning, str) and reasoning:
            blocks.append(ThinkingBlock(thinking=reasoning))
        content = message.get("content")
        if isinstance(content, str) and content:
            blocks.append(TextBlock(text=content))
        for call in message.get("tool_calls") or ():
            function = call.get("function") or {}
            arguments = function.get("arguments") or "{}"
            try:
                parsed = json.loads(arguments) if isinstance(arguments, str) else arguments
            except ValueError:
                parsed = {}
            if not isinstance(parsed, Mapping):
                parsed = {}
            blocks.append(
                ToolUseBlock(
                    id=str(call.get("id") or ""),
                    name=str(function.get("name") or ""),
                    input=dict(parsed),
                )
            )
        return AssistantMessage(content=tuple(blocks))

    # ------------------------------------------------------------------
    async def _execute_tool(
        self, block: ToolUseBlock, cancellation: CancellationEvent | None
    ) -> ToolResult:
        decoded_input = self.codecs.decode_input(block.name, block.input)
        log_event("TOOL_CALL", {"tool_use_id": block.id, "tool_name": block.name})
        log_debug_payload(
            "TOOL_CALL_DETAIL",
            {"tool_use_id": block.id, "tool_name": block.name, "arguments": dict(block.input)},
        )
        start = time.monotonic()
        try:
            await self._hooks.fire(
                HookKind.BEFORE_TOOL_EXECUTION,
                BeforeToolExecutionContext(
                    tool_name=block.name,
                    tool_use_id=block.id,
                    input=dict(block.input),
                    decoded_input=decoded_input,
                ),
            )
        except ToolPermissionError as exc:
            result = ToolResult.error(f"Permission denied: {exc}")
        except Exception as exc:
            logger.exception("before_tool_execution hook failed for %s", block.name)
            result = ToolResult.error(f"Tool call blocked: {exc}")
        else:
            result = await self._run_tool(block, decoded_input, cancellation)
        log_event(
            "TOOL_RESULT",
            {"tool_use_id": block.id, "tool_name": block.name, "is_error": result.is_error},
            start_time=start,
        )
        try:
            await self._hooks.fire(
                HookKind.AFTER_TOOL_EXECUTION,
                AfterToolExecutionContext(
                    tool_name=block.name,
                    tool_use_id=block.id,
                    result=result,
                    decoded_output=result.output,
                ),
            )
        except Exception:
            logger.exception("after_tool_execution hook failed for %s", block.name)
        return result

    async def _run_tool(
        self,
        block: ToolUseBlock,
        decoded_input: Any | None,
        cancellation: CancellationEvent | None,
    ) -> ToolResult:
        tool = self._tools.get(block.name)
        if tool is None:
            return ToolResult.error(f"Unknown tool: {block.name}")
        if tool.input_model is not None and decoded_input is None:
            return ToolResult.error(f"Invalid input for {block.name}")
        tool_input = decoded_input if tool.input_model is not None else dict(block.input)
        context = ToolContext(
            tool_use_id=block.id,
            working_directory=self._working_directory,
            cancellation=cancellation,
        )
        try:
            return await tool.run(tool_input, context)
        except (asyncio.CancelledError, OperationCancelledError):
            raise
        except Exception as exc:
            logger.exception("tool %s raised", block.name)
            return ToolResult.error(f"{type(exc).__name__}: {exc}")
