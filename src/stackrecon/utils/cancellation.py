"""Cancellation signal shared between a caller and blocking waits."""

import threading
import time
from typing import Optional


class CancellationToken:
    """Cancellation signal with an optional absolute deadline.

    Waiting on the token blocks for at most the requested time and returns
    early once the token is cancelled or its deadline passes. Cancelling only
    stops local waiting; it never cancels work already submitted to AWS.
    """

    def __init__(self, timeout: Optional[float] = None):
        """Initialize cancellation token.

        Args:
            timeout: Seconds from now after which the token counts as cancelled
        """
        self._event = threading.Event()
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Signal cancellation and wake up any waiter."""
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.reason = self.reason or "deadline exceeded"
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None when there is no deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """Wait up to ``seconds``.

        Returns:
            True if the token was cancelled while (or before) waiting
        """
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._event.wait(seconds)
        return self.cancelled
