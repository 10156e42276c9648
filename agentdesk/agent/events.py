"""Change notifications for conversations and their tool executions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from threading import RLock

logger = logging.getLogger(__name__)

__all__ = ["ChangeEvent", "ChangeKind", "ChangeListener", "ConversationEvents"]


class ChangeKind(str, Enum):
    EXECUTION_ADDED = "execution_added"
    EXECUTION_UPDATED = "execution_updated"
    EXECUTION_COMPLETED = "execution_completed"
    CHILDREN_CHANGED = "children_changed"
    MESSAGE_ADDED = "message_added"
    MESSAGE_REMOVED = "message_removed"
    MESSAGES_RELOADED = "messages_reloaded"
    UPLOADS_CHANGED = "uploads_changed"
    STATE_CHANGED = "state_changed"
    SAVED = "saved"
    CONVERSATION_CREATED = "conversation_created"
    CONVERSATION_DELETED = "conversation_deleted"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """Something observable changed.

    ``subject_id`` names the execution, message or file path concerned when
    there is one.
    """

    kind: ChangeKind
    conversation_id: str | None = None
    subject_id: str | None = None


ChangeListener = Callable[[ChangeEvent], None]


class ConversationEvents:
    """Thread-safe publish/subscribe bus with a version counter.

    Every emitted event bumps :attr:`version`, so pollers can detect changes
    without subscribing.
    """

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []
        self._lock = RLock()
        self._version = 0

    @property
    def version(self) -> int:
        """Number of events emitted so far."""
        with self._lock:
            return self._version

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register *listener* and return a callable removing it."""

        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            self.remove_listener(listener)

        return _remove

    def remove_listener(self, listener: ChangeListener) -> None:
        """Unregister *listener* ignoring unknown references."""

        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def emit(self, event: ChangeEvent) -> None:
        """Send *event* to all registered listeners."""

        with self._lock:
            self._version += 1
            listeners = tuple(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Change listener raised an exception")
