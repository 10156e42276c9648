"""HTTP fetch tool."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx
from pydantic import BaseModel

from ..llm.types import ToolResult
from ..telemetry import log_event
from .base import Tool, ToolContext

__all__ = ["FetchTool"]


class FetchInput(BaseModel):
    url: str


class FetchOutput(BaseModel):
    url: str
    status_code: int
    content_type: str = ""
    truncated: bool = False


class FetchTool(Tool):
    name = "Fetch"
    description = "Fetch a URL over HTTP(S) and return the response body as text."
    input_model = FetchInput
    output_model = FetchOutput

    _TIMEOUT = httpx.Timeout(20.0)

    def __init__(
        self,
        *,
        max_bytes: int = 512 * 1024,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._max_bytes = max_bytes
        self._transport = transport

    def format_summary(self, tool_input: Mapping[str, Any] | None) -> str:
        """Describe a fetch call."""
        url = (tool_input or {}).get("url")
        return f"Fetch {url}" if url else self.name

    async def run(self, tool_input: FetchInput, context: ToolContext) -> ToolResult:
        """Fetch the URL, reading at most ``max_bytes`` of the body."""
        if not tool_input.url.startswith(("http://", "https://")):
            return ToolResult.error(f"Unsupported URL: {tool_input.url}")
        chunks: list[bytes] = []
        size = 0
        truncated = False
        try:
            async with httpx.AsyncClient(
                timeout=self._TIMEOUT,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", tool_input.url) as response:
                    # stop reading once the cap is hit
                    async for chunk in response.aiter_bytes():
                        remaining = self._max_bytes - size
                        if len(chunk) > remaining:
                            chunks.append(chunk[:remaining])
                            truncated = True
                            break
                        chunks.append(chunk)
                        size += len(chunk)
        except httpx.HTTPError as exc:
            log_event("FETCH_ERROR", {"url": tool_input.url, "error": str(exc)})
            return ToolResult.error(f"Request failed: {exc}")
        body = b"".join(chunks)
        text = body.decode(response.encoding or "utf-8", errors="replace")
        output = FetchOutput(
            url=str(response.url),
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
            truncated=truncated,
        )
        if response.is_error:
            return ToolResult(
                content=f"HTTP {response.status_code}\n{text}",
                is_error=True,
                output=output,
            )
        return ToolResult(content=text, output=output)
