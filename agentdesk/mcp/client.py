"""JSON-RPC client for HTTP MCP servers."""

from __future__ import annotations

import itertools
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from .. import __version__
from ..settings import MCPServerSettings
from ..telemetry import log_debug_payload, log_event

logger = logging.getLogger(__name__)

__all__ = ["MCPCallResult", "MCPClient", "MCPError", "MCPToolInfo"]

PROTOCOL_VERSION = "2025-03-26"
SESSION_HEADER = "Mcp-Session-Id"


class MCPError(RuntimeError):
    """Raised when an MCP server cannot be reached or answers with an error."""

    def __init__(self, message: str, *, code: int | None = None, server: str | None = None):
        super().__init__(message)
        self.code = code
        self.server = server


@dataclass(frozen=True, slots=True)
class MCPToolInfo:
    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class MCPCallResult:
    """Outcome of ``tools/call``: concatenated text plus structured content."""

    text: str
    is_error: bool = False
    structured: Mapping[str, Any] | None = None


class MCPClient:
    """Minimal streamable-HTTP MCP client (``initialize``, ``tools/*``)."""

    def __init__(
        self,
        settings: MCPServerSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._session_id: str | None = None
        self._ids = itertools.count(1)
        self.server_info: dict[str, Any] = {}

    @property
    def name(self) -> str:
        """Configured server name."""
        return self.settings.name

    @property
    def connected(self) -> bool:
        """Whether the session is initialized."""
        return self._client is not None

    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Open the HTTP session and perform the ``initialize`` handshake."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.timeout_seconds),
            transport=self._transport,
        )
        try:
            result = await self._request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": "agentdesk", "version": __version__},
                },
            )
            self.server_info = dict(result.get("serverInfo") or {})
            await self._notify("notifications/initialized")
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        """Close the HTTP client."""
        client, self._client = self._client, None
        self._session_id = None
        if client is not None:
            await client.aclose()

    # ------------------------------------------------------------------
    async def list_tools(self) -> list[MCPToolInfo]:
        """Return tool descriptors advertised by the server."""
        tools: list[MCPToolInfo] = []
        cursor: str | None = None
        while True:
            params = {"cursor": cursor} if cursor else {}
            result = await self._request("tools/list", params)
            for entry in result.get("tools") or ():
                if not isinstance(entry, Mapping) or not entry.get("name"):
                    continue
                tools.append(
                    MCPToolInfo(
                        name=str(entry["name"]),
                        description=str(entry.get("description") or ""),
                        input_schema=dict(entry.get("inputSchema") or {}),
                    )
                )
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> MCPCallResult:
        """Invoke *name* on the server."""
        start = time.monotonic()
        log_event("TOOL_CALL", {"server": self.name, "tool": name})
        try:
            result = await self._request(
                "tools/call", {"name": name, "arguments": dict(arguments)}
            )
        except MCPError as exc:
            log_event("TOOL_RESULT", {"server": self.name, "tool": name, "error": str(exc)},
                      start_time=start)
            raise
        texts: list[str] = []
        for item in result.get("content") or ():
            if not isinstance(item, Mapping):
                continue
            if item.get("type") == "text":
                texts.append(str(item.get("text", "")))
            else:
                texts.append(json.dumps(dict(item), ensure_ascii=False, sort_keys=True))
        structured = result.get("structuredContent")
        call_result = MCPCallResult(
            text="\n".join(texts),
            is_error=bool(result.get("isError", False)),
            structured=dict(structured) if isinstance(structured, Mapping) else None,
        )
        log_event(
            "TOOL_RESULT",
            {"server": self.name, "tool": name, "is_error": call_result.is_error},
            start_time=start,
        )
        return call_result

    # ------------------------------------------------------------------
    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        headers.update(self.settings.headers)
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        return headers

    async def _post(self, body: Mapping[str, Any]) -> httpx.Response:
        if self._client is None:
            raise MCPError(f"MCP server {self.name} is not connected", server=self.name)
        log_debug_payload(
            "MCP_REQUEST",
            {"direction": "outbound", "server": self.name, "url": self.settings.url,
             "headers": self._headers(), "body": dict(body)},
        )
        try:
            response = await self._client.post(
                self.settings.url, json=dict(body), headers=self._headers()
            )
        except httpx.HTTPError as exc:
            raise MCPError(f"{self.name}: {exc}", server=self.name) from exc
        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self._session_id = session_id
        log_debug_payload(
            "MCP_RESPONSE",
            {"direction": "inbound", "server": self.name, "status": response.status_code,
             "body": response.text},
        )
        return response

    async def _notify(self, method: str) -> None:
        response = await self._post({"jsonrpc": "2.0", "method": method})
        if response.status_code >= 400:
            logger.warning("%s rejected %s with HTTP %s", self.name, method, response.status_code)

    async def _request(self, method: str, params: Mapping[str, Any]) -> dict[str, Any]:
        request_id = next(self._ids)
        response = await self._post(
            {"jsonrpc": "2.0", "id": request_id, "method": method, "params": dict(params)}
        )
        if response.status_code >= 400:
            raise MCPError(
                f"{self.name}: HTTP {response.status_code} for {method}",
                code=response.status_code,
                server=self.name,
            )
        payload = self._decode_body(response, request_id)
        error = payload.get("error")
        if isinstance(error, Mapping):
            raise MCPError(
                f"{self.name}: {error.get('message') or 'unknown error'}",
                code=error.get("code"),
                server=self.name,
            )
        result = payload.get("result")
        return dict(result) if isinstance(result, Mapping) else {}

    def _decode_body(self, response: httpx.Response, request_id: int) -> dict[str, Any]:
        """Return the JSON-RPC response for *request_id* from a JSON or SSE body."""
        content_type = response.headers.get("content-type", "")
        try:
            if "text/event-stream" not in content_type:
                payload = response.json()
                return payload if isinstance(payload, dict) else {}
            for line in response.text.splitlines():
                if not line.startswith("data:"):
                    continue
                payload = json.loads(line[5:].strip())
                if isinstance(payload, dict) and payload.get("id") == request_id:
                    return payload
        except ValueError as exc:
            raise MCPError(f"{self.name}: invalid response: {exc}", server=self.name) from exc
        raise MCPError(f"{self.name}: no response for request {request_id}", server=self.name)
