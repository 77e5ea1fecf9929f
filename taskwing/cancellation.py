"""Cooperative cancellation passed through agents, chains and tools."""

from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import OperationCancelled


class CancelToken:
    """Event-backed cancellation flag with an optional deadline.

    ``check()`` raises :class:`OperationCancelled` once the token is cancelled
    or the deadline has passed; ``wait()`` sleeps but wakes up early on cancel.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.reason = self.reason or "deadline exceeded"
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or ``None`` when unbounded."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")

    def wait(self, seconds: float) -> None:
        """Sleep up to *seconds*; raise if cancelled before or during the wait."""
        self.check()
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self._event.wait(remaining)
            self.reason = self.reason or "deadline exceeded"
            raise OperationCancelled(self.reason)
        if self._event.wait(seconds):
            raise OperationCancelled(self.reason or "cancelled")

    def timeout_for(self, default: float) -> float:
        """Timeout for a blocking call, bounded by the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return max(0.1, min(default, remaining))


def ensure_token(token: Optional[CancelToken]) -> CancelToken:
    return token if token is not None else CancelToken()
