"""Stub model clients and OpenAI responses shared by the tests."""

from __future__ import annotations

import inspect
import json
from collections.abc import Mapping
from types import SimpleNamespace
from typing import Any

from agentdesk.llm.hooks import HookKind, HookRegistry
from agentdesk.llm.types import (
    AfterToolExecutionContext,
    AssistantMessage,
    BeforeToolExecutionContext,
    StreamMessage,
    TextBlock,
    ToolResult,
    ToolUseBlock,
)
from agentdesk.tools.codecs import as_mapping
from agentdesk.tools.toolset import ToolSet


class StubClient:
    """Model client replaying a scripted stream.

    Script steps are stream messages (yielded), exceptions (raised) or
    callables receiving the client (awaited when they return a coroutine).
    """

    def __init__(
        self,
        script: list[Any] | None = None,
        *,
        tools: ToolSet | None = None,
        metadata: Mapping[str, Mapping[str, str]] | None = None,
        history: list[StreamMessage] | None = None,
    ) -> None:
        self.script = list(script or [])
        self.hooks = HookRegistry()
        self.tools = tools if tools is not None else ToolSet()
        self.metadata = dict(metadata or {})
        self.history = list(history or [])
        self.prompts: list[Any] = []
        self.session = b'{"messages": []}'
        self.imported: bytes | None = None

    @property
    def codecs(self):
        return self.tools.codecs

    def add_hook(self, kind, callback):
        return self.hooks.add(kind, callback)

    async def query(self, prompt, *, cancellation=None):
        self.prompts.append(prompt)
        for step in self.script:
            if isinstance(step, BaseException):
                raise step
            if callable(step):
                result = step(self)
                if inspect.isawaitable(result):
                    await result
                continue
            yield step

    def format_tool_call_summary(self, tool_name: str, tool_input: Any) -> str:
        mapping = as_mapping(tool_input)
        return f"{tool_name} {json.dumps(mapping, sort_keys=True)}" if mapping else tool_name

    def tool_metadata(self, tool_name: str) -> Mapping[str, str]:
        return dict(self.metadata.get(tool_name, {}))

    def export_session(self) -> bytes:
        return self.session

    def import_session(self, data: bytes) -> None:
        self.imported = data

    # helpers -----------------------------------------------------------
    async def fire_before(self, tool_use_id: str, name: str, arguments: Mapping[str, Any]) -> None:
        await self.hooks.fire(
            HookKind.BEFORE_TOOL_EXECUTION,
            BeforeToolExecutionContext(
                tool_name=name,
                tool_use_id=tool_use_id,
                input=dict(arguments),
                decoded_input=self.codecs.decode_input(name, arguments),
            ),
        )

    async def fire_after(
        self,
        tool_use_id: str,
        name: str,
        content: str,
        *,
        is_error: bool = False,
        output: Any | None = None,
    ) -> None:
        await self.hooks.fire(
            HookKind.AFTER_TOOL_EXECUTION,
            AfterToolExecutionContext(
                tool_name=name,
                tool_use_id=tool_use_id,
                result=ToolResult(content=content, is_error=is_error, output=output),
                decoded_output=output,
            ),
        )


def assistant_text(text: str) -> AssistantMessage:
    return AssistantMessage(content=(TextBlock(text),))


def assistant_tool_use(tool_use_id: str, name: str, **arguments: Any) -> AssistantMessage:
    return AssistantMessage(content=(ToolUseBlock(tool_use_id, name, arguments),))


# ----------------------------------------------------------------------
# OpenAI chat completions


def completion(content: str = "", tool_calls: list[tuple[str, str, Any]] | None = None, **extra: Any):
    """Return an object shaped like ``openai`` chat completion responses."""

    calls = [
        SimpleNamespace(
            id=call_id,
            type="function",
            function=SimpleNamespace(
                name=name,
                arguments=arguments if isinstance(arguments, str) else json.dumps(arguments),
            ),
        )
        for call_id, name, arguments in tool_calls or ()
    ]
    message = SimpleNamespace(content=content, tool_calls=calls or None, **extra)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeCompletions:
    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any):
        self.requests.append(kwargs)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class FakeOpenAI:
    def __init__(self, responses: list[Any]) -> None:
        self.chat = SimpleNamespace(completions=FakeCompletions(responses))

    @property
    def requests(self) -> list[dict[str, Any]]:
        return self.chat.completions.requests
