"""
Minimum-interval rate limiter for the clinical API.

Public FHIR servers throttle aggressive clients, so consecutive requests are
spaced at least `min_interval` seconds apart. The interval applies to every
attempt, retries included.
"""

import threading
import time
from typing import Callable


class RateLimiter:
    """
    Thread-safe request spacer.

    Usage:
        limiter = RateLimiter(min_interval=3.0)
        limiter.acquire()
        client.get(url)
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            min_interval: Minimum seconds between two consecutive requests
            clock: Monotonic time source
            sleep: Blocking sleep function
        """
        if min_interval < 0:
            raise ValueError(f"min_interval must be >= 0, got {min_interval}")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request: float | None = None

    def acquire(self) -> float:
        """
        Block until a request may be sent, then claim the slot.

        Returns:
            Seconds spent waiting
        """
        with self._lock:
            waited = 0.0
            if self._last_request is not None:
                remaining = self.min_interval - (self._clock() - self._last_request)
                if remaining > 0:
                    self._sleep(remaining)
                    waited = remaining
            self._last_request = self._clock()
            return waited

    def reset(self) -> None:
        with self._lock:
            self._last_request = None
