"""Create, load and delete conversations and wire their tools."""

from __future__ import annotations

import logging
import platform
import tempfile
import uuid
import weakref
from collections.abc import Callable
from pathlib import Path

from ..llm.client import AgentClient, SupportsModelClient
from ..mcp.manager import MCPManager
from ..settings import AppSettings
from ..telemetry import log_event
from ..tools.fetch import FetchTool
from ..tools.files import ListTool, ReadTool, WriteTool
from ..tools.subagent import SUB_AGENT_TOOL_NAME, SubAgentProgress, SubAgentTool
from ..tools.toolset import ToolSet
from .conversation import Conversation
from .events import ChangeEvent, ChangeKind, ConversationEvents
from .persistence import ConversationStore

logger = logging.getLogger(__name__)

__all__ = ["ClientFactory", "Controller", "build_system_prompt"]

ClientFactory = Callable[[ToolSet, str, Path], SupportsModelClient]

SUB_AGENT_PROMPT = (
    "You are a sub-agent working on one task delegated by another agent. "
    "Use the available tools as needed and finish with a concise answer "
    "describing what you found or did."
)


def build_system_prompt(
    working_directory: Path,
    tool_names: list[str],
    custom_instructions: str = "",
) -> str:
    """Return the system prompt given to every new conversation."""
    tools = ", ".join(tool_names) if tool_names else "none"
    prompt = f"""You are running in a local environment with file system access.

# Available Directories

**Working Directory (scratch files):**
{working_directory}

**Temporary Directory:**
{tempfile.gettempdir()}

**OS Version**
{platform.platform()}

# File System Notes

- You have full read/write access to the working directory and temporary directory
- Relative paths are resolved against the working directory
- The working directory persists between sessions; temporary directory may be cleared

# Available Tools

{tools}. SubAgent runs several independent sub-tasks in parallel."""
    if custom_instructions.strip():
        prompt += f"\n\n# Custom Instructions\n\n{custom_instructions.strip()}"
    return prompt


class _ProgressRouter:
    """Forward SubAgent progress to a conversation it does not own."""

    def __init__(self) -> None:
        self._target: weakref.ReferenceType[Conversation] | None = None

    def bind(self, conversation: Conversation) -> None:
        """Route progress to *conversation* without keeping it alive."""
        self._target = weakref.ref(conversation)

    def __call__(self, progress: SubAgentProgress) -> None:
        conversation = self._target() if self._target is not None else None
        if conversation is None:
            logger.debug("SubAgent progress for a closed conversation dropped")
            return
        conversation.handle_sub_agent_tool_call(
            progress.task_id, progress.tool_name, progress.summary
        )


class Controller:
    """Own the conversations of one application instance, newest first."""

    def __init__(
        self,
        settings: AppSettings,
        *,
        client_factory: ClientFactory | None = None,
        mcp_manager: MCPManager | None = None,
        events: ConversationEvents | None = None,
    ) -> None:
        self.settings = settings
        self.store = ConversationStore(settings.storage.conversations_dir)
        self.events = events if events is not None else ConversationEvents()
        self.mcp = mcp_manager if mcp_manager is not None else MCPManager(settings.mcp_servers)
        self._client_factory = client_factory or self._default_client
        self._conversations: list[Conversation] = []

    @property
    def conversations(self) -> list[Conversation]:
        """Conversations in display order, newest first."""
        return list(self._conversations)

    def get(self, conversation_id: str) -> Conversation | None:
        """Return the open conversation with *conversation_id*."""
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    async def start(self) -> None:
        """Connect configured MCP servers."""
        await self.mcp.start()

    async def aclose(self) -> None:
        """Close every conversation and disconnect MCP servers."""
        for conversation in self._conversations:
            conversation.close()
        self._conversations = []
        await self.mcp.aclose()

    # ------------------------------------------------------------------
    def _default_client(
        self, tools: ToolSet, system_prompt: str, working_directory: Path
    ) -> SupportsModelClient:
        return AgentClient(
            self.settings.llm,
            tools=tools,
            system_prompt=system_prompt,
            working_directory=working_directory,
        )

    def _build_tools(self, working_directory: Path, router: _ProgressRouter) -> ToolSet:
        tools = ToolSet(
            [
                ReadTool(),
                WriteTool(),
                ListTool(),
                FetchTool(max_bytes=self.settings.agent.fetch_max_bytes),
            ]
        )
        for tool in self.mcp.tools:
            if tool.name in tools:
                logger.warning("MCP tool %s conflicts with a built-in tool; skipped", tool.name)
                continue
            tools.add(tool)
        sub_agent_tools = tools.without(SUB_AGENT_TOOL_NAME)

        def _sub_agent_client() -> SupportsModelClient:
            return self._client_factory(sub_agent_tools, SUB_AGENT_PROMPT, working_directory)

        tools.add(
            SubAgentTool(
                _sub_agent_client,
                on_progress=router,
                max_concurrency=self.settings.agent.sub_agent_concurrency,
            )
        )
        return tools

    def _make_conversation(self, conversation_id: str | None = None) -> Conversation:
        router = _ProgressRouter()
        # the working directory must exist before the client is built
        conversation_id = conversation_id or str(uuid.uuid4())
        working_directory = self.store.files_dir(conversation_id)
        working_directory.mkdir(parents=True, exist_ok=True)
        tools = self._build_tools(working_directory, router)
        system_prompt = build_system_prompt(
            working_directory, tools.names, self.settings.agent.custom_instructions
        )
        client = self._client_factory(tools, system_prompt, working_directory)
        conversation = Conversation(
            client,
            self.store,
            conversation_id=conversation_id,
            events=self.events,
        )
        router.bind(conversation)
        return conversation

    def create_conversation(self) -> Conversation:
        """Create an empty conversation and put it first."""
        conversation = self._make_conversation()
        self._conversations.insert(0, conversation)
        log_event("CONVERSATION_CREATED", {"conversation_id": conversation.id})
        self.events.emit(ChangeEvent(ChangeKind.CONVERSATION_CREATED, conversation.id))
        return conversation

    def load_persisted_conversations(self) -> list[Conversation]:
        """Load every indexed conversation that still has a session file."""
        loaded: list[Conversation] = []
        for entry in self.store.load_index().conversations:
            if self.get(entry.id) is not None:
                continue
            if not self.store.has_session(entry.id):
                logger.info("skipping conversation %s without session file", entry.id)
                continue
            conversation = self._make_conversation(entry.id)
            try:
                conversation.restore()
            except (OSError, ValueError) as exc:
                logger.warning("failed to load conversation %s: %s", entry.id, exc)
                conversation.close()
                continue
            loaded.append(conversation)
        self._conversations.extend(loaded)
        log_event("CONVERSATIONS_LOADED", {"count": len(loaded)})
        return loaded

    def delete_conversation(self, conversation_id: str) -> bool:
        """Remove a conversation from memory and disk."""
        conversation = self.get(conversation_id)
        if conversation is not None:
            self._conversations.remove(conversation)
            conversation.close()
        self.store.delete_conversation(conversation_id)
        log_event("CONVERSATION_DELETED", {"conversation_id": conversation_id})
        self.events.emit(ChangeEvent(ChangeKind.CONVERSATION_DELETED, conversation_id))
        return conversation is not None
