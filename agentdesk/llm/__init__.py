"""Model client contract and the OpenAI-compatible agent client."""

from typing import TYPE_CHECKING, Any

__all__ = ["AgentClient", "SupportsModelClient"]

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from .client import AgentClient, SupportsModelClient


def __getattr__(name: str) -> Any:
    """Lazily expose the client module to avoid import cycles."""
    if name in __all__:
        from . import client

        return getattr(client, name)
    raise AttributeError(f"module 'agentdesk.llm' has no attribute {name!r}")
