"""Thread-safe cancellation primitives built on :class:`threading.Event`."""

from __future__ import annotations

import threading

__all__ = ["CancellationEvent", "OperationCancelledError", "raise_if_cancelled"]


class OperationCancelledError(RuntimeError):
    """Raised when an in-flight operation is aborted via cancellation."""

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "operation cancelled")
        self.reason = reason


class CancellationEvent:
    """Cancellation flag shared between a caller and a running turn.

    The flag is safe to set from any thread (for example a UI "stop" button
    handler) while the turn polls it from the event loop.
    """

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Return ``True`` when cancellation has been requested."""

        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Return the optional reason passed to :meth:`set`."""

        return self._reason

    def is_set(self) -> bool:
        """Return ``True`` once cancellation was requested."""
        return self._event.is_set()

    def set(self, reason: str | None = None) -> None:
        """Signal cancellation, remembering the first *reason* given."""

        if self._reason is None and reason:
            self._reason = reason
        self._event.set()

    def clear(self) -> None:
        """Reset the flag so the event can drive another turn."""

        self._reason = None
        self._event.clear()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`OperationCancelledError` if cancellation occurred."""

        if self._event.is_set():
            raise OperationCancelledError(self._reason)


def raise_if_cancelled(cancellation: CancellationEvent | None) -> None:
    """Convenience helper raising when *cancellation* has been signalled."""

    if cancellation is not None:
        cancellation.raise_if_cancelled()
