import asyncio
import json
from pathlib import Path

import httpx
import pytest

from agentdesk.mcp import MCPClient, MCPError, MCPManager
from agentdesk.settings import MCPServerSettings
from agentdesk.tools.base import ToolContext

pytestmark = pytest.mark.unit


class FakeServer:
    """Streamable-HTTP MCP server answering from memory."""

    def __init__(self, tools: list[str], *, sse: bool = False) -> None:
        self.tools = tools
        self.sse = sse
        self.seen: list[tuple[str, str | None]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.seen.append((body["method"], request.headers.get("Mcp-Session-Id")))
        if "id" not in body:
            return httpx.Response(202)
        method = body["method"]
        params = body.get("params") or {}
        if method == "initialize":
            return self._reply(body, {"serverInfo": {"name": "fake"}}, {"Mcp-Session-Id": "s-1"})
        if method == "tools/list":
            # one tool per page
            index = int(params.get("cursor") or 0)
            result = {
                "tools": [
                    {
                        "name": self.tools[index],
                        "description": f"{self.tools[index]} tool",
                        "inputSchema": {"properties": {"text": {"type": "string"}}},
                    }
                ]
            }
            if index + 1 < len(self.tools):
                result["nextCursor"] = str(index + 1)
            return self._reply(body, result)
        if method == "tools/call":
            arguments = params["arguments"]
            if params["name"] == "fail":
                return httpx.Response(
                    200,
                    json={"jsonrpc": "2.0", "id": body["id"],
                          "error": {"code": -32602, "message": "bad arguments"}},
                )
            return self._reply(
                body,
                {
                    "content": [{"type": "text", "text": arguments.get("text", "")}],
                    "structuredContent": {"echoed": arguments.get("text", "")},
                },
            )
        return httpx.Response(404)

    def _reply(self, body: dict, result: dict, headers: dict | None = None) -> httpx.Response:
        payload = {"jsonrpc": "2.0", "id": body["id"], "result": result}
        if self.sse:
            text = f"event: message\ndata: {json.dumps(payload)}\n\n"
            return httpx.Response(
                200,
                text=text,
                headers={"content-type": "text/event-stream", **(headers or {})},
            )
        return httpx.Response(200, json=payload, headers=headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def _settings(name: str = "demo") -> MCPServerSettings:
    return MCPServerSettings(name=name, url=f"http://{name}.test/mcp", headers={"X-Token": "t"})


@pytest.mark.parametrize("sse", [False, True])
def test_client_handshake_listing_and_calls(sse: bool) -> None:
    server = FakeServer(["echo", "fail"], sse=sse)
    client = MCPClient(_settings(), transport=server.transport)

    async def scenario():
        await client.start()
        try:
            tools = await client.list_tools()
            result = await client.call_tool("echo", {"text": "hi"})
            with pytest.raises(MCPError) as info:
                await client.call_tool("fail", {})
        finally:
            await client.aclose()
        return tools, result, info.value

    tools, result, error = asyncio.run(scenario())

    assert client.server_info == {"name": "fake"}
    assert [tool.name for tool in tools] == ["echo", "fail"]
    assert tools[0].input_schema == {"properties": {"text": {"type": "string"}}}
    assert result.text == "hi"
    assert result.structured == {"echoed": "hi"}
    assert result.is_error is False
    assert error.code == -32602
    assert error.server == "demo"
    assert server.seen[0] == ("initialize", None)
    assert server.seen[1] == ("notifications/initialized", "s-1")
    assert all(session == "s-1" for _, session in server.seen[1:])
    assert not client.connected


def test_http_errors_raise_mcp_error() -> None:
    client = MCPClient(
        _settings(), transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )

    with pytest.raises(MCPError) as info:
        asyncio.run(client.start())

    assert info.value.code == 500
    assert not client.connected


def test_calls_before_start_are_rejected() -> None:
    client = MCPClient(_settings())

    with pytest.raises(MCPError):
        asyncio.run(client.call_tool("echo", {}))


def test_manager_exposes_tools_and_skips_broken_servers(tmp_path: Path) -> None:
    servers = {
        "good": FakeServer(["echo", "fail"]),
        "dup": FakeServer(["echo"]),
    }

    def transport_factory(settings: MCPServerSettings) -> httpx.AsyncBaseTransport:
        server = servers.get(settings.name)
        if server is None:
            return httpx.MockTransport(lambda request: httpx.Response(503))
        return server.transport

    manager = MCPManager(
        [_settings("good"), _settings("broken"), _settings("dup")],
        transport_factory=transport_factory,
    )

    async def scenario():
        await manager.start()
        try:
            echo, fail = manager.tools
            context = ToolContext("c1", tmp_path)
            return (
                manager.servers,
                echo,
                await echo.run({"text": "hello"}, context),
                await fail.run({}, context),
            )
        finally:
            await manager.aclose()

    names, echo, ok, failed = asyncio.run(scenario())

    assert names == ["good", "dup"]
    assert echo.metadata == {"server": "good"}
    assert echo.input_schema()["type"] == "object"
    assert echo.openai_schema()["function"]["description"] == "echo tool"
    assert ok.content == "hello"
    assert ok.output == {"echoed": "hello"}
    assert failed.is_error is True
    assert "bad arguments" in failed.content
    assert manager.tools == []
