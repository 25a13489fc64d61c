"""
Thread-Safe Rate Limiter for source requests

Sliding-window limiter shared by listing and detail requests of one adapter,
so a crawl never exceeds the configured requests per minute.

Usage:
    limiter = RateLimiter(max_calls_per_minute=20)

    # Before each request
    limiter.acquire()  # Blocks if the window is full
    rows = fetcher.fetch_rows(path)
"""

import time
import threading
from collections import deque
from typing import Callable, Optional

WINDOW_SECONDS = 60.0


class RateLimiter:
    """
    Thread-safe rate limiter using a sliding window.

    A limit of 0 or None disables limiting.
    """

    def __init__(
        self,
        max_calls_per_minute: Optional[int] = 60,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            max_calls_per_minute: Calls allowed per 60-second window
            clock: Monotonic clock (injectable for tests)
            sleep: Sleep function (injectable for tests)
        """
        self.max_calls = max_calls_per_minute or 0
        self.calls = deque()
        self.lock = threading.Lock()
        self._clock = clock
        self._sleep = sleep

        # Statistics
        self.total_calls = 0
        self.total_wait_time = 0.0

    def acquire(self) -> float:
        """
        Wait if necessary, then record a call.

        The lock is released while sleeping so other threads can inspect
        the limiter.

        Returns:
            Wait time in seconds (0.0 if no wait was needed)
        """
        waited = 0.0
        while True:
            with self.lock:
                now = self._clock()
                while self.calls and now - self.calls[0] >= WINDOW_SECONDS:
                    self.calls.popleft()

                if not self.max_calls or len(self.calls) < self.max_calls:
                    self.calls.append(now)
                    self.total_calls += 1
                    self.total_wait_time += waited
                    return waited

                wait_time = WINDOW_SECONDS - (now - self.calls[0])

            self._sleep(wait_time)
            waited += wait_time

    def get_stats(self) -> dict:
        """
        Get rate limiter statistics.

        Returns:
            Dictionary with total_calls, total_wait_time_sec, current_window_usage
        """
        with self.lock:
            now = self._clock()
            current_window = sum(1 for t in self.calls if now - t < WINDOW_SECONDS)
            return {
                'total_calls': self.total_calls,
                'total_wait_time_sec': round(self.total_wait_time, 2),
                'current_window_usage': current_window,
                'max_capacity': self.max_calls,
            }
