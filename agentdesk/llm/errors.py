"""Error types raised by model clients."""

from __future__ import annotations

__all__ = [
    "APIError",
    "MaxTurnsReachedError",
    "ModelClientError",
    "RequestCancelledError",
    "ToolPermissionError",
]


class ModelClientError(Exception):
    """Base class for failures surfaced by a model client."""


class APIError(ModelClientError):
    """The model service rejected or failed a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class MaxTurnsReachedError(ModelClientError):
    """The agent loop hit the configured turn limit."""

    def __init__(self, max_turns: int) -> None:
        super().__init__(f"maximum turns reached ({max_turns})")
        self.max_turns = max_turns


class RequestCancelledError(ModelClientError):
    """The request was cancelled before the model finished."""

    def __init__(self) -> None:
        super().__init__("request cancelled")


class ToolPermissionError(Exception):
    """Raised by a before-execution hook to veto a tool call."""
