"""Run-scoped cancellation signal."""

import threading

from deployctl.core.exceptions import DeploymentCancelledError


class CancellationToken:
    """Cooperative cancellation shared by everything in one deployment run.

    Long waits (health poll intervals, remote command timeouts) go through
    ``wait`` so that an operator interrupt is noticed at the next boundary
    instead of after the full interval.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    def cancel(self, reason: str = "cancelled by operator") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise DeploymentCancelledError(self._reason or "cancelled")
