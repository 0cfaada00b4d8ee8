"""
Sliding-window request limiter owned by the Elexon client.

Thread-safe: the day ingestor fetches several settlement periods at once and
every worker goes through acquire(). Request timestamps stay private.
"""

import logging
import threading
import time
from collections import deque
from typing import Optional

from cancellation import CancelToken

logger = logging.getLogger("curtailment.rate-limit")


class SlidingWindowLimiter:
    def __init__(self, max_requests: int, window_seconds: float,
                 clock=time.monotonic, sleep=None):
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._stamps = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float):
        while self._stamps and now - self._stamps[0] >= self.window_seconds:
            self._stamps.popleft()

    def in_window(self) -> int:
        """Number of requests issued within the current window."""
        with self._lock:
            self._evict(self._clock())
            return len(self._stamps)

    def acquire(self, cancel: Optional[CancelToken] = None):
        """Block until a request slot is free, then claim it."""
        while True:
            with self._lock:
                now = self._clock()
                self._evict(now)
                if len(self._stamps) < self.max_requests:
                    self._stamps.append(now)
                    return
                wait = self.window_seconds - (now - self._stamps[0])
            logger.info("Rate limit reached (%d/%.0fs), waiting %.2fs",
                        self.max_requests, self.window_seconds, wait)
            if self._sleep is not None:
                self._sleep(wait)
                if cancel is not None:
                    cancel.check()
            elif cancel is not None:
                cancel.sleep(wait)
            else:
                time.sleep(wait)
