"""SubAgent fan-out tool.

A single invocation spawns several independent sub-agent tasks that run in
parallel.  Every tool call a sub-agent makes is reported immediately through
the progress callback; the final structured batch result lists the
authoritative tool calls of every task.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from ..llm.types import AssistantMessage, TextBlock, ToolResult, ToolResultMessage, ToolUseBlock
from ..telemetry import log_event
from ..util.cancellation import OperationCancelledError, raise_if_cancelled
from .base import Tool, ToolContext

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from ..llm.client import SupportsModelClient

logger = logging.getLogger(__name__)

__all__ = [
    "SUB_AGENT_TOOL_NAME",
    "SubAgentInput",
    "SubAgentOutput",
    "SubAgentProgress",
    "SubAgentTask",
    "SubAgentTaskResult",
    "SubAgentTool",
    "SubAgentToolCall",
    "sub_agent_task_ids",
]

SUB_AGENT_TOOL_NAME = "SubAgent"


class SubAgentTask(BaseModel):
    id: str | None = None
    description: str = ""
    prompt: str


class SubAgentInput(BaseModel):
    tasks: list[SubAgentTask] = Field(min_length=1)

    def task_ids(self, tool_use_id: str) -> list[str]:
        """Return conversation-unique ids for the declared tasks."""
        return [
            f"{tool_use_id}:{task.id or index + 1}"
            for index, task in enumerate(self.tasks)
        ]


class SubAgentToolCall(BaseModel):
    id: str
    name: str
    summary: str = ""
    is_error: bool = False


class SubAgentTaskResult(BaseModel):
    task_id: str
    output: str = ""
    is_error: bool = False
    tool_calls: list[SubAgentToolCall] = Field(default_factory=list)


class SubAgentOutput(BaseModel):
    results: list[SubAgentTaskResult] = Field(default_factory=list)

    def tool_calls(self) -> list[SubAgentToolCall]:
        """Return every sub-task tool call in task order."""
        calls: list[SubAgentToolCall] = []
        for result in self.results:
            calls.extend(result.tool_calls)
        return calls


def sub_agent_task_ids(tool_use_id: str, decoded_input: Any) -> list[str]:
    """Return task ids for a decoded SubAgent input, or ``[]`` if unknown."""
    if isinstance(decoded_input, SubAgentInput):
        return decoded_input.task_ids(tool_use_id)
    return []


@dataclass(frozen=True, slots=True)
class SubAgentProgress:
    task_id: str
    tool_name: str
    summary: str


ProgressCallback = Callable[[SubAgentProgress], None]


class SubAgentTool(Tool):
    name = SUB_AGENT_TOOL_NAME
    description = (
        "Run several independent sub-tasks in parallel. Each task gets its own "
        "agent with the regular tools and returns its final answer."
    )
    input_model = SubAgentInput
    output_model = SubAgentOutput

    def __init__(
        self,
        client_factory: Callable[[], "SupportsModelClient"],
        *,
        on_progress: ProgressCallback | None = None,
        max_concurrency: int = 4,
    ) -> None:
        self._client_factory = client_factory
        self._on_progress = on_progress
        self._max_concurrency = max(1, max_concurrency)

    def format_summary(self, tool_input: Mapping[str, Any] | None) -> str:
        """Describe a fan-out call."""
        tasks = (tool_input or {}).get("tasks")
        count = len(tasks) if isinstance(tasks, list) else 0
        noun = "task" if count == 1 else "tasks"
        return f"SubAgent ({count} {noun})"

    async def run(self, tool_input: SubAgentInput, context: ToolContext) -> ToolResult:
        """Run every task and collect the answers."""
        semaphore = asyncio.Semaphore(self._max_concurrency)
        task_ids = tool_input.task_ids(context.tool_use_id)

        async def _bounded(task_id: str, task: SubAgentTask) -> SubAgentTaskResult:
            async with semaphore:
                # queued tasks do not start once the turn is stopped
                raise_if_cancelled(context.cancellation)
                return await self._run_task(task_id, task, context)

        results = await asyncio.gather(
            *(_bounded(task_id, task) for task_id, task in zip(task_ids, tool_input.tasks))
        )
        output = SubAgentOutput(results=list(results))
        sections = [
            f"## {result.task_id}{' (failed)' if result.is_error else ''}\n{result.output}"
            for result in output.results
        ]
        return ToolResult(
            content="\n\n".join(sections),
            is_error=all(result.is_error for result in output.results),
            output=output,
        )

    async def _run_task(
        self, task_id: str, task: SubAgentTask, context: ToolContext
    ) -> SubAgentTaskResult:
        client = self._client_factory()
        calls: list[SubAgentToolCall] = []
        by_id: dict[str, int] = {}
        last_text = ""
        log_event("SUBAGENT_TASK_START", {"task_id": task_id, "description": task.description})
        try:
            async for message in client.query(task.prompt, cancellation=context.cancellation):
                if isinstance(message, AssistantMessage):
                    for block in message.content:
                        if isinstance(block, TextBlock) and block.text.strip():
                            last_text = block.text
                        elif isinstance(block, ToolUseBlock):
                            summary = client.format_tool_call_summary(block.name, block.input)
                            by_id[block.id] = len(calls)
                            calls.append(
                                SubAgentToolCall(id=block.id, name=block.name, summary=summary)
                            )
                            self._report(SubAgentProgress(task_id, block.name, summary))
                elif isinstance(message, ToolResultMessage) and message.is_error:
                    index = by_id.get(message.tool_use_id)
                    if index is not None:
                        calls[index].is_error = True
        except (asyncio.CancelledError, OperationCancelledError):
            raise
        except Exception as exc:
            log_event("SUBAGENT_TASK_ERROR", {"task_id": task_id, "error": str(exc)})
            return SubAgentTaskResult(
                task_id=task_id,
                output=str(exc) or type(exc).__name__,
                is_error=True,
                tool_calls=calls,
            )
        log_event("SUBAGENT_TASK_COMPLETE", {"task_id": task_id, "tool_calls": len(calls)})
        return SubAgentTaskResult(task_id=task_id, output=last_text, tool_calls=calls)

    def _report(self, progress: SubAgentProgress) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(progress)
        except Exception:  # pragma: no cover - listener bugs must not fail the task
            logger.exception("SubAgent progress callback failed")
