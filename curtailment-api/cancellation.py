"""
Cooperative cancellation for long-running reconciliation work.

A CancelToken is threaded through fetch, ingest, cascade and repair calls.
Every sleep in the engine goes through CancelToken.sleep() so a cancel() or
an expired deadline interrupts it immediately.

A cancelled repair leaves the date's records deleted but not re-inserted;
the date must be repaired again before its aggregates are trusted.
"""

import threading
import time
from typing import Optional

from errors import RunCancelled


class CancelToken:
    def __init__(self, timeout: Optional[float] = None, clock=time.monotonic):
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + timeout if timeout is not None else None
        self.reason = ""

    def cancel(self, reason: str = "cancelled"):
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self.reason = self.reason or "deadline exceeded"
            return True
        return False

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def check(self):
        """Raise RunCancelled if the token has fired."""
        if self.cancelled:
            raise RunCancelled(self.reason or "cancelled")

    def sleep(self, seconds: float):
        """Sleep for *seconds*, waking early and raising if cancelled."""
        self.check()
        if seconds <= 0:
            return
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self._event.wait(remaining)
            self.reason = self.reason or "deadline exceeded"
            raise RunCancelled(self.reason)
        if self._event.wait(seconds):
            raise RunCancelled(self.reason or "cancelled")


def ensure_token(cancel: Optional[CancelToken]) -> CancelToken:
    """Return *cancel*, or a token that never fires."""
    return cancel if cancel is not None else CancelToken()
