"""Tool protocol, codec registry and the built-in tool set."""

from .base import Tool, ToolContext
from .codecs import ToolCodec, ToolCodecRegistry
from .toolset import ToolSet

__all__ = ["Tool", "ToolCodec", "ToolCodecRegistry", "ToolContext", "ToolSet"]
