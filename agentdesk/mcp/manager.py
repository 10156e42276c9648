"""Expose tools of configured MCP servers as regular :class:`Tool` objects."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

import httpx

from ..llm.types import ToolResult
from ..settings import MCPServerSettings
from ..telemetry import log_event
from ..tools.base import Tool, ToolContext
from .client import MCPClient, MCPError, MCPToolInfo

logger = logging.getLogger(__name__)

__all__ = ["MCPManager", "MCPTool"]

TransportFactory = Callable[[MCPServerSettings], "httpx.AsyncBaseTransport | None"]


class MCPTool(Tool):
    """A tool served by an MCP server; payloads decode as plain JSON."""

    def __init__(self, client: MCPClient, info: MCPToolInfo) -> None:
        self._client = client
        self._info = info
        self.name = info.name
        self.description = info.description

    @property
    def server(self) -> str:
        """Name of the server exposing this tool."""
        return self._client.name

    @property
    def metadata(self) -> Mapping[str, str]:
        """Name the MCP server on every execution."""
        return {"server": self.server}

    def input_schema(self) -> dict[str, Any]:
        """Schema advertised by the server."""
        schema = dict(self._info.input_schema)
        schema.setdefault("type", "object")
        return schema

    async def run(self, tool_input: Mapping[str, Any], context: ToolContext) -> ToolResult:
        """Forward the call to the server."""
        try:
            result = await self._client.call_tool(self.name, tool_input)
        except MCPError as exc:
            return ToolResult.error(str(exc))
        return ToolResult(
            content=result.text,
            is_error=result.is_error,
            output=result.structured,
        )


class MCPManager:
    """Start configured servers and collect the tools they advertise.

    Servers that fail to start or list their tools are logged and skipped so
    that one broken server does not take the others down.
    """

    def __init__(
        self,
        servers: Iterable[MCPServerSettings] = (),
        *,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self._settings = list(servers)
        self._transport_factory = transport_factory
        self._clients: list[MCPClient] = []
        self._tools: list[MCPTool] = []
        self._started = False

    @property
    def tools(self) -> list[MCPTool]:
        """Tools collected from connected servers."""
        return list(self._tools)

    @property
    def servers(self) -> list[str]:
        """Names of connected servers."""
        return [client.name for client in self._clients]

    async def start(self) -> None:
        """Connect every enabled server and list its tools."""
        if self._started:
            return
        self._started = True
        results = await asyncio.gather(
            *(self._start_server(settings) for settings in self._settings)
        )
        seen: set[str] = set()
        for client, infos in results:
            if client is None:
                continue
            self._clients.append(client)
            for info in infos:
                if info.name in seen:
                    logger.warning(
                        "MCP tool %s from %s shadows an earlier tool; skipped",
                        info.name,
                        client.name,
                    )
                    continue
                seen.add(info.name)
                self._tools.append(MCPTool(client, info))
        log_event(
            "MCP_READY",
            {"servers": self.servers, "tools": [tool.name for tool in self._tools]},
        )

    async def _start_server(
        self, settings: MCPServerSettings
    ) -> tuple[MCPClient | None, list[MCPToolInfo]]:
        transport = self._transport_factory(settings) if self._transport_factory else None
        client = MCPClient(settings, transport=transport)
        try:
            await client.start()
            infos = await client.list_tools()
        except MCPError as exc:
            logger.warning("MCP server %s unavailable: %s", settings.name, exc)
            await client.aclose()
            return None, []
        return client, infos

    async def aclose(self) -> None:
        """Disconnect every server."""
        clients, self._clients = self._clients, []
        self._tools = []
        self._started = False
        for client in clients:
            try:
                await client.aclose()
            except httpx.HTTPError:
                logger.exception("failed to close MCP server %s", client.name)
