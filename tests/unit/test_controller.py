import asyncio
from pathlib import Path

import pytest

from agentdesk.agent.controller import SUB_AGENT_PROMPT, Controller, build_system_prompt
from agentdesk.agent.events import ChangeKind
from agentdesk.agent.persistence import ConversationMetadata
from agentdesk.settings import AgentSettings, AppSettings, StorageSettings
from agentdesk.tools.base import ToolContext
from agentdesk.tools.subagent import SubAgentInput
from agentdesk.util.time import utc_now
from tests.stubs import StubClient, assistant_text, assistant_tool_use

pytestmark = pytest.mark.unit


class Factory:
    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.script: list = [assistant_text("done")]

    def __call__(self, tools, system_prompt, working_directory):
        self.calls.append((tools, system_prompt, working_directory))
        return StubClient(self.script, tools=tools)


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return AppSettings(
        storage=StorageSettings(conversations_dir=tmp_path / "conv"),
        agent=AgentSettings(custom_instructions="Answer in French."),
    )


def test_new_conversation_gets_tools_prompt_and_directory(settings: AppSettings) -> None:
    factory = Factory()
    controller = Controller(settings, client_factory=factory)
    events = []
    controller.events.add_listener(events.append)

    conversation = controller.create_conversation()

    tools, prompt, working_directory = factory.calls[0]
    assert tools.names == ["Read", "Write", "List", "Fetch", "SubAgent"]
    assert "# Custom Instructions\n\nAnswer in French." in prompt
    assert str(working_directory) in prompt
    assert working_directory == controller.store.files_dir(conversation.id)
    assert working_directory.is_dir()
    assert [(e.kind, e.conversation_id) for e in events] == [
        (ChangeKind.CONVERSATION_CREATED, conversation.id)
    ]


def test_conversations_are_listed_newest_first(settings: AppSettings) -> None:
    controller = Controller(settings, client_factory=Factory())

    first = controller.create_conversation()
    second = controller.create_conversation()

    assert controller.conversations == [second, first]
    assert controller.get(first.id) is first
    assert controller.get("missing") is None


def test_sub_agents_use_their_own_prompt_and_report_progress(settings: AppSettings) -> None:
    factory = Factory()
    controller = Controller(settings, client_factory=factory)
    conversation = controller.create_conversation()
    tools, _, working_directory = factory.calls[0]
    factory.script = [assistant_tool_use("s1", "Read", path="x"), assistant_text("done")]
    conversation.tool_executions.observe_tool_use("u1", "SubAgent", None)
    conversation.tool_executions.register_fan_out("u1", ["u1:1"])

    result = asyncio.run(
        tools.get("SubAgent").run(
            SubAgentInput.model_validate({"tasks": [{"prompt": "dig"}]}),
            ToolContext("u1", working_directory),
        )
    )

    sub_tools, sub_prompt, _ = factory.calls[1]
    assert sub_prompt == SUB_AGENT_PROMPT
    assert "SubAgent" not in sub_tools
    assert result.output.results[0].output == "done"
    children = conversation.tool_executions.get("u1").children
    assert [child.name for child in children] == ["Read"]


def test_persisted_conversations_are_loaded_once(settings: AppSettings) -> None:
    controller = Controller(settings, client_factory=Factory())
    conversation = controller.create_conversation()
    asyncio.run(conversation.send_message("hello"))
    controller.store.update_index(ConversationMetadata("ghost", utc_now()))

    restored = Controller(settings, client_factory=Factory())
    loaded = restored.load_persisted_conversations()

    assert [c.id for c in loaded] == [conversation.id]
    assert [m.text_content for m in loaded[0].messages] == ["hello", "done"]
    assert restored.load_persisted_conversations() == []
    assert len(restored.conversations) == 1


def test_corrupt_messages_do_not_block_other_conversations(settings: AppSettings) -> None:
    controller = Controller(settings, client_factory=Factory())
    broken = controller.create_conversation()
    asyncio.run(broken.send_message("first"))
    good = controller.create_conversation()
    asyncio.run(good.send_message("second"))
    controller.store.messages_path(broken.id).write_text(
        '{"messages": ["oops"]}', encoding="utf-8"
    )

    restored = Controller(settings, client_factory=Factory())
    loaded = {c.id: c for c in restored.load_persisted_conversations()}

    assert set(loaded) == {broken.id, good.id}
    assert [m.text_content for m in loaded[good.id].messages] == ["second", "done"]


def test_delete_conversation(settings: AppSettings) -> None:
    controller = Controller(settings, client_factory=Factory())
    conversation = controller.create_conversation()
    asyncio.run(conversation.send_message("bye"))
    events = []
    controller.events.add_listener(events.append)

    assert controller.delete_conversation(conversation.id) is True

    assert controller.conversations == []
    assert not controller.store.conversation_dir(conversation.id).exists()
    assert conversation.id not in controller.store.load_index().ids()
    assert events[-1].kind is ChangeKind.CONVERSATION_DELETED
    assert controller.delete_conversation("missing") is False


def test_aclose_closes_conversations(settings: AppSettings) -> None:
    controller = Controller(settings, client_factory=Factory())
    conversation = controller.create_conversation()

    async def scenario() -> None:
        await controller.start()
        await controller.aclose()

    asyncio.run(scenario())

    assert controller.conversations == []
    assert conversation.client.hooks.count("before_tool_execution") == 0


def test_system_prompt_without_custom_instructions(tmp_path: Path) -> None:
    prompt = build_system_prompt(tmp_path, ["Read", "Write"])

    assert "Read, Write" in prompt
    assert "Custom Instructions" not in prompt
