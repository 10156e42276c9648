"""Hook registration point exposed by model clients."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

HookCallback = Callable[[Any], Awaitable[None] | None]


class HookKind(str, Enum):
    """Extension points fired around tool calls and attachment uploads."""

    BEFORE_TOOL_EXECUTION = "before_tool_execution"
    AFTER_TOOL_EXECUTION = "after_tool_execution"
    BEFORE_FILE_UPLOAD = "before_file_upload"
    AFTER_FILE_UPLOAD = "after_file_upload"


class HookRegistration:
    """Handle returned by :meth:`HookRegistry.add`; dispose to unregister."""

    __slots__ = ("_registry", "kind", "callback", "_disposed")

    def __init__(
        self, registry: "HookRegistry", kind: HookKind, callback: HookCallback
    ) -> None:
        self._registry = registry
        self.kind = kind
        self.callback = callback
        self._disposed = False

    @property
    def disposed(self) -> bool:
        """Whether the callback was removed."""
        return self._disposed

    def dispose(self) -> None:
        """Remove the callback; repeated calls are no-ops."""
        if self._disposed:
            return
        self._disposed = True
        self._registry._remove(self)


class HookRegistry:
    """Ordered hook callbacks per :class:`HookKind`.

    Callbacks may be plain functions or coroutine functions. They run in
    registration order; exceptions propagate to the caller of :meth:`fire`
    so that a before-execution hook can veto a tool call.
    """

    def __init__(self) -> None:
        self._hooks: dict[HookKind, list[HookRegistration]] = {
            kind: [] for kind in HookKind
        }

    def add(self, kind: HookKind | str, callback: HookCallback) -> HookRegistration:
        """Register *callback* for *kind*."""
        hook_kind = HookKind(kind)
        registration = HookRegistration(self, hook_kind, callback)
        self._hooks[hook_kind].append(registration)
        return registration

    def _remove(self, registration: HookRegistration) -> None:
        entries = self._hooks[registration.kind]
        try:
            entries.remove(registration)
        except ValueError:
            logger.debug("hook registration already removed: %s", registration.kind)

    def count(self, kind: HookKind | str) -> int:
        """Number of callbacks registered for *kind*."""
        return len(self._hooks[HookKind(kind)])

    async def fire(self, kind: HookKind | str, context: Any) -> None:
        """Await every callback registered for *kind*."""
        for registration in tuple(self._hooks[HookKind(kind)]):
            result = registration.callback(context)
            if inspect.isawaitable(result):
                await result
