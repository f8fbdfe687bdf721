# jobdispatch/server/limiter.py
import threading
import time
from collections import deque


class RateLimiter:
    """Sliding-window limit of ``max_jobs`` job starts per ``duration`` seconds."""

    def __init__(self, max_jobs: int, duration: float):
        if max_jobs < 1 or duration <= 0:
            raise ValueError("max_jobs must be >= 1 and duration > 0")
        self.max_jobs = max_jobs
        self.duration = duration
        self._starts: deque = deque()
        self._lock = threading.Lock()

    def acquire(self, stop_event: threading.Event) -> bool:
        """Block until a slot in the window is free. False if stopped first."""
        while not stop_event.is_set():
            with self._lock:
                now = time.monotonic()
                while self._starts and self._starts[0] <= now - self.duration:
                    self._starts.popleft()
                if len(self._starts) < self.max_jobs:
                    self._starts.append(now)
                    return True
                wait = self._starts[0] + self.duration - now
            stop_event.wait(wait)
        return False

    def refund(self) -> None:
        """Give back the most recent acquisition, for a poll that found no job."""
        with self._lock:
            if self._starts:
                self._starts.pop()
