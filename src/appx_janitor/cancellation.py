"""!
@brief Cooperative cancellation for long-running deletions.
@details A :class:`CancellationToken` is threaded through every external
command call. Cancellation is observed between steps, never in the middle of
an in-flight command, so a UI-level cancel request stops the workflow at the
next suspension point.
"""
from __future__ import annotations

import threading

__all__ = ["CancellationToken", "NEVER_CANCELLED"]


class CancellationToken:
    """!
    @brief Thread-safe cancellation flag.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def wait(self, seconds: float) -> bool:
        """!
        @brief Sleep up to ``seconds`` and return early when cancelled.
        @returns ``True`` when the token was cancelled during the wait.
        """

        if seconds <= 0:
            return self.cancelled
        return self._event.wait(seconds)


class _NeverCancelled(CancellationToken):
    def cancel(self, reason: str = "cancelled by caller") -> None:  # pragma: no cover - guard
        raise RuntimeError("The shared NEVER_CANCELLED token cannot be cancelled")


NEVER_CANCELLED: CancellationToken = _NeverCancelled()
"""!
@brief Shared token for callers that do not support cancellation.
"""
