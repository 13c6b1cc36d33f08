"""Cooperative cancellation tokens.

A token is a flag checked by wait loops between bounded intervals. Cancelling
a token abandons the wait; it never signals or kills the child process.
"""

from __future__ import annotations

import threading

__all__ = ["CancellationToken", "NO_CANCELLATION"]


class CancellationToken:
    """Thread-safe one-way cancellation flag.

    Example:
        token = CancellationToken()
        threading.Timer(1.0, token.cancel).start()
        result = controller.run_and_collect_errors("make", token)
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or until timeout elapses.

        Returns:
            Whether the token is cancelled
        """
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"


class _NoCancellation(CancellationToken):
    """Token that never reports cancellation."""

    @property
    def is_cancelled(self) -> bool:
        return False

    def cancel(self) -> None:
        # Shared instance; cancelling it would affect unrelated callers.
        pass

    def __repr__(self) -> str:
        return "NO_CANCELLATION"


NO_CANCELLATION: CancellationToken = _NoCancellation()
