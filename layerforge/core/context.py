"""Build context: the ambient cancellation signal passed to store operations."""

from __future__ import annotations

import threading

from layerforge.core.errors import CancelledError


class BuildContext:
    """Cooperative cancellation token.

    Store and index operations call :meth:`check` before and during I/O;
    once :meth:`cancel` has been called they raise CancelledError instead
    of returning partial results.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    def cancel(self, reason: str = "") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, operation: str = "") -> None:
        """Raise CancelledError if this context has been cancelled."""
        if not self._event.is_set():
            return
        message = f"{operation} cancelled" if operation else "cancelled"
        if self._reason:
            message = f"{message}: {self._reason}"
        raise CancelledError(message)


def check(ctx: BuildContext | None, operation: str = "") -> None:
    """Check an optional context; ``None`` means never cancelled."""
    if ctx is not None:
        ctx.check(operation)
