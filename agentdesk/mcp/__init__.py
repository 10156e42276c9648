"""HTTP MCP servers contributing tools at runtime."""

from .client import MCPCallResult, MCPClient, MCPError, MCPToolInfo
from .manager import MCPManager, MCPTool

__all__ = [
    "MCPCallResult",
    "MCPClient",
    "MCPError",
    "MCPManager",
    "MCPTool",
    "MCPToolInfo",
]
