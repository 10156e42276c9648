"""Tool execution records and the registry tracking them.

A :class:`ToolExecution` is created by whichever of the stream consumer or
the before-execution hook sees a tool-use id first; the other one updates
it in place.  :class:`ExecutionRegistry` keeps executions in insertion order
and implements the fan-out protocol used by the SubAgent tool: provisional
child executions are appended as progress arrives and replaced wholesale by
the authoritative batch result when the tool completes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from typing import Any

from .events import ChangeKind

logger = logging.getLogger(__name__)

__all__ = ["ChangeCallback", "ExecutionRegistry", "ToolExecution"]

ChangeCallback = Callable[[ChangeKind, str], None]


class ToolExecution:
    """Observable state of one tool invocation."""

    __slots__ = (
        "id",
        "_name",
        "input_summary",
        "decoded_input",
        "decoded_output",
        "input_data",
        "output_data",
        "output_text",
        "is_error",
        "is_complete",
        "metadata",
        "children",
    )

    def __init__(
        self,
        id: str,
        name: str,
        input_summary: str = "",
        decoded_input: Any | None = None,
        decoded_output: Any | None = None,
        metadata: Mapping[str, str] | None = None,
        *,
        output_text: str = "",
        is_error: bool = False,
        is_complete: bool = False,
        input_data: bytes | None = None,
        output_data: bytes | None = None,
        children: "ExecutionRegistry | None" = None,
    ) -> None:
        self.id = id
        self._name = name
        self.input_summary = input_summary
        self.decoded_input = decoded_input
        self.decoded_output = decoded_output
        self.input_data = input_data
        self.output_data = output_data
        self.output_text = output_text
        self.is_error = is_error
        self.is_complete = is_complete
        self.metadata: dict[str, str] = dict(metadata or {})
        self.children = children

    @classmethod
    def create(
        cls,
        id: str,
        name: str,
        input_summary: str,
        decoded_input: Any | None = None,
        decoded_output: Any | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> "ToolExecution":
        """Return a new, not yet completed execution."""
        return cls(id, name, input_summary, decoded_input, decoded_output, metadata)

    @property
    def name(self) -> str:
        """Tool name; fixed at creation."""
        return self._name

    def __repr__(self) -> str:
        state = "complete" if self.is_complete else "pending"
        if self.is_error:
            state += ", error"
        return f"ToolExecution({self.id!r}, {self._name!r}, {state})"


class ExecutionRegistry:
    """Ordered tool executions plus sub-task to parent mappings."""

    def __init__(
        self,
        executions: Iterable[ToolExecution] = (),
        *,
        on_change: ChangeCallback | None = None,
    ) -> None:
        self._executions: list[ToolExecution] = []
        self._by_id: dict[str, ToolExecution] = {}
        self._task_parent: dict[str, str] = {}
        self._parent_tasks: dict[str, list[str]] = {}
        self._on_change = on_change
        self.version = 0
        for execution in executions:
            self._append(execution)

    # ------------------------------------------------------------------
    @property
    def executions(self) -> list[ToolExecution]:
        """Snapshot of executions in insertion order."""
        return list(self._executions)

    def __len__(self) -> int:
        return len(self._executions)

    def __iter__(self) -> Iterator[ToolExecution]:
        return iter(tuple(self._executions))

    def __contains__(self, execution_id: object) -> bool:
        return execution_id in self._by_id

    def get(self, execution_id: str) -> ToolExecution | None:
        """Return the execution with *execution_id*."""
        return self._by_id.get(execution_id)

    def _changed(self, kind: ChangeKind, subject_id: str) -> None:
        self.version += 1
        if self._on_change is not None:
            self._on_change(kind, subject_id)

    def _append(self, execution: ToolExecution) -> None:
        self._executions.append(execution)
        # Child lists may legitimately repeat ids across sub-tasks; lookups
        # resolve to the first one.
        self._by_id.setdefault(execution.id, execution)

    # ------------------------------------------------------------------
    def add(self, execution: ToolExecution) -> ToolExecution:
        """Append *execution* and report the change."""
        self._append(execution)
        self._changed(ChangeKind.EXECUTION_ADDED, execution.id)
        return execution

    def add_sub_execution(
        self,
        id: str,
        name: str,
        input_summary: str,
        *,
        is_complete: bool = False,
    ) -> ToolExecution:
        """Create and append a running execution reported by a sub-agent."""
        execution = ToolExecution.create(id, name, input_summary)
        execution.is_complete = is_complete
        return self.add(execution)

    def replace(self, executions: Iterable[ToolExecution]) -> None:
        """Replace the whole list, dropping every fan-out mapping."""
        self._executions = []
        self._by_id = {}
        self._task_parent.clear()
        self._parent_tasks.clear()
        for execution in executions:
            self._append(execution)
        self._changed(ChangeKind.CHILDREN_CHANGED, "")

    # ------------------------------------------------------------------
    def update_before_execution(
        self,
        id: str,
        name: str,
        input_summary: str,
        decoded_input: Any | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> ToolExecution:
        """Upsert the execution announced by a before-execution hook."""
        execution = self._by_id.get(id)
        if execution is None:
            return self.add(
                ToolExecution.create(id, name, input_summary, decoded_input, metadata=metadata)
            )
        if execution.name != name:
            logger.warning(
                "tool execution %s renamed from %s to %s; keeping original name",
                id,
                execution.name,
                name,
            )
        execution.input_summary = input_summary
        if decoded_input is not None:
            execution.decoded_input = decoded_input
        if metadata:
            execution.metadata.update(metadata)
        self._changed(ChangeKind.EXECUTION_UPDATED, id)
        return execution

    def observe_tool_use(
        self,
        id: str,
        name: str,
        decoded_input: Any | None = None,
        *,
        input_summary: str | None = None,
        input_data: bytes | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> ToolExecution:
        """Resolve or create the execution referenced by a streamed tool use.

        Fields already filled by the before-execution hook win over the
        streamed ones.
        """
        execution = self._by_id.get(id)
        if execution is None:
            execution = ToolExecution.create(
                id, name, input_summary or name, decoded_input, metadata=metadata
            )
            execution.input_data = input_data
            return self.add(execution)
        if execution.decoded_input is None and decoded_input is not None:
            execution.decoded_input = decoded_input
        if execution.input_data is None and input_data is not None:
            execution.input_data = input_data
        if not execution.input_summary and input_summary:
            execution.input_summary = input_summary
        if metadata:
            for key, value in metadata.items():
                execution.metadata.setdefault(key, value)
        self._changed(ChangeKind.EXECUTION_UPDATED, id)
        return execution

    def complete_execution(
        self,
        id: str,
        output_text: str,
        decoded_output: Any | None = None,
        is_error: bool = False,
        *,
        output_data: bytes | None = None,
    ) -> ToolExecution | None:
        """Record the outcome of *id*; unknown ids are logged and skipped."""
        execution = self._by_id.get(id)
        if execution is None:
            logger.debug("completion for unknown tool execution %s ignored", id)
            return None
        execution.output_text = output_text
        execution.decoded_output = decoded_output
        execution.output_data = output_data
        execution.is_error = is_error
        execution.is_complete = True
        self._changed(ChangeKind.EXECUTION_COMPLETED, id)
        return execution

    # ------------------------------------------------------------------
    # Fan-out protocol

    def register_fan_out(
        self, parent_id: str, task_ids: Sequence[str]
    ) -> "ExecutionRegistry | None":
        """Attach a fresh child registry to *parent_id* and map its tasks."""
        parent = self._by_id.get(parent_id)
        if parent is None:
            logger.warning("fan-out registered for unknown execution %s", parent_id)
            return None
        self.cleanup_fan_out(parent_id)
        parent.children = ExecutionRegistry(on_change=self._on_change)
        for task_id in task_ids:
            previous = self._task_parent.get(task_id)
            if previous is not None and previous != parent_id:
                self._parent_tasks[previous].remove(task_id)
            self._task_parent[task_id] = parent_id
        self._parent_tasks[parent_id] = list(dict.fromkeys(task_ids))
        self._changed(ChangeKind.CHILDREN_CHANGED, parent_id)
        return parent.children

    def parent_for_task(self, task_id: str) -> str | None:
        """Return the parent execution id of a sub-task."""
        return self._task_parent.get(task_id)

    def tasks_for_parent(self, parent_id: str) -> list[str]:
        """Return the sub-task ids registered for *parent_id*."""
        return list(self._parent_tasks.get(parent_id, ()))

    def add_child_execution(
        self, task_id: str, tool_name: str, input_summary: str
    ) -> ToolExecution | None:
        """Append a provisional child for a live sub-task progress report."""
        parent_id = self._task_parent.get(task_id)
        parent = self._by_id.get(parent_id) if parent_id is not None else None
        if parent is None:
            logger.debug("progress for unknown sub-task %s ignored", task_id)
            return None
        if parent.children is None:
            parent.children = ExecutionRegistry(on_change=self._on_change)
        child_id = f"{task_id}#{len(parent.children) + 1}"
        child = parent.children.add_sub_execution(child_id, tool_name, input_summary)
        self._changed(ChangeKind.CHILDREN_CHANGED, parent.id)
        return child

    def finalize_fan_out(
        self, parent_id: str, final_children: Iterable[ToolExecution]
    ) -> None:
        """Replace the provisional child list with the authoritative one."""
        parent = self._by_id.get(parent_id)
        if parent is None:
            logger.debug("finalisation for unknown execution %s ignored", parent_id)
            return
        if parent.children is None:
            parent.children = ExecutionRegistry(on_change=self._on_change)
        parent.children.replace(final_children)
        self._changed(ChangeKind.CHILDREN_CHANGED, parent_id)

    def cleanup_fan_out(self, parent_id: str) -> None:
        """Drop every sub-task mapping registered for *parent_id*."""
        for task_id in self._parent_tasks.pop(parent_id, ()):
            if self._task_parent.get(task_id) == parent_id:
                del self._task_parent[task_id]
