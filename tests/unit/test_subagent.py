import asyncio
from pathlib import Path

import pytest
from pydantic import ValidationError

from agentdesk.llm.types import ToolResultMessage
from agentdesk.tools.base import ToolContext
from agentdesk.tools.subagent import (
    SubAgentInput,
    SubAgentOutput,
    SubAgentProgress,
    SubAgentTool,
    sub_agent_task_ids,
)
from agentdesk.util.cancellation import CancellationEvent, OperationCancelledError
from tests.stubs import StubClient, assistant_text, assistant_tool_use

pytestmark = pytest.mark.unit


class RoutingClient(StubClient):
    """Pick the script by prompt so parallel tasks stay deterministic."""

    def __init__(self, scripts: dict) -> None:
        super().__init__()
        self.scripts = scripts

    async def query(self, prompt, *, cancellation=None):
        self.script = list(self.scripts[prompt])
        async for message in super().query(prompt, cancellation=cancellation):
            yield message


def _run(tool: SubAgentTool, payload: dict, tmp_path: Path):
    tool_input = SubAgentInput.model_validate(payload)
    return asyncio.run(tool.run(tool_input, ToolContext("call1", tmp_path)))


def test_tasks_run_and_report_progress(tmp_path: Path) -> None:
    scripts = {
        "look": [
            assistant_tool_use("t1", "Read", path="x"),
            ToolResultMessage("t1", "boom", True),
            assistant_text("found it"),
        ],
        "idle": [assistant_text("nothing")],
    }
    progress: list[SubAgentProgress] = []
    tool = SubAgentTool(lambda: RoutingClient(scripts), on_progress=progress.append)

    result = _run(
        tool,
        {"tasks": [{"id": "alpha", "prompt": "look"}, {"prompt": "idle"}]},
        tmp_path,
    )

    output = result.output
    assert isinstance(output, SubAgentOutput)
    first, second = output.results
    assert first.task_id == "call1:alpha"
    assert first.output == "found it"
    assert first.tool_calls[0].summary == 'Read {"path": "x"}'
    assert first.tool_calls[0].is_error is True
    assert second.task_id == "call1:2"
    assert second.output == "nothing"
    assert second.tool_calls == []
    assert progress == [SubAgentProgress("call1:alpha", "Read", 'Read {"path": "x"}')]
    assert result.is_error is False
    assert "## call1:alpha\nfound it" in result.content
    assert [call.id for call in output.tool_calls()] == ["t1"]


def test_failing_tasks_are_reported_not_raised(tmp_path: Path) -> None:
    scripts = {"a": [RuntimeError("model down")], "b": [assistant_text("fine")]}
    tool = SubAgentTool(lambda: RoutingClient(scripts))

    result = _run(tool, {"tasks": [{"prompt": "a"}, {"prompt": "b"}]}, tmp_path)

    failed, ok = result.output.results
    assert failed.is_error is True
    assert failed.output == "model down"
    assert ok.is_error is False
    assert result.is_error is False
    assert "## call1:1 (failed)" in result.content


def test_all_tasks_failing_marks_result_as_error(tmp_path: Path) -> None:
    tool = SubAgentTool(lambda: RoutingClient({"a": [RuntimeError("no")]}))

    result = _run(tool, {"tasks": [{"prompt": "a"}]}, tmp_path)

    assert result.is_error is True


@pytest.mark.parametrize("limit, expected_peak", [(1, 1), (4, 3)])
def test_concurrency_is_bounded(tmp_path: Path, limit: int, expected_peak: int) -> None:
    active = 0
    peak = 0

    async def busy(client) -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    scripts = {name: [busy, assistant_text("ok")] for name in ("a", "b", "c")}
    tool = SubAgentTool(lambda: RoutingClient(scripts), max_concurrency=limit)

    _run(tool, {"tasks": [{"prompt": "a"}, {"prompt": "b"}, {"prompt": "c"}]}, tmp_path)

    assert peak == expected_peak


def test_input_requires_tasks() -> None:
    with pytest.raises(ValidationError):
        SubAgentInput.model_validate({"tasks": []})


def test_summary_and_task_ids() -> None:
    tool = SubAgentTool(lambda: StubClient())

    assert tool.format_summary({"tasks": [{}, {}]}) == "SubAgent (2 tasks)"
    assert tool.format_summary({"tasks": [{}]}) == "SubAgent (1 task)"
    assert tool.format_summary(None) == "SubAgent (0 tasks)"
    decoded = SubAgentInput.model_validate({"tasks": [{"prompt": "p"}, {"id": "x", "prompt": "q"}]})
    assert sub_agent_task_ids("u1", decoded) == ["u1:1", "u1:x"]
    assert sub_agent_task_ids("u1", None) == []


def test_cancelled_turn_starts_no_tasks(tmp_path: Path) -> None:
    created: list[RoutingClient] = []

    def factory() -> RoutingClient:
        created.append(RoutingClient({"a": [assistant_text("ok")]}))
        return created[-1]

    cancellation = CancellationEvent()
    cancellation.set("stop")
    tool = SubAgentTool(factory)

    with pytest.raises(OperationCancelledError):
        asyncio.run(
            tool.run(
                SubAgentInput.model_validate({"tasks": [{"prompt": "a"}]}),
                ToolContext("call1", tmp_path, cancellation),
            )
        )

    assert created == []
