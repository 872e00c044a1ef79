"""
Lamport logical clock.
"""
import threading


class LogicalClock:
    """
    Monotonic counter implementing Lamport's happened-before rule.

    Each participant owns one instance for its whole lifetime. Both
    operations are serialised so connection handlers, replication tasks and
    the request loop can share a clock.
    """

    def __init__(self, start: int = 0):
        if start < 0:
            raise ValueError("clock start must be non-negative")
        self._time = start
        self._lock = threading.Lock()

    @property
    def time(self) -> int:
        with self._lock:
            return self._time

    def increment(self) -> int:
        """Local event: advance by one and return the new value."""
        with self._lock:
            self._time += 1
            return self._time

    def update(self, remote: int) -> int:
        """Receive event: time = max(local, remote) + 1."""
        with self._lock:
            self._time = max(self._time, int(remote)) + 1
            return self._time

    def __repr__(self):
        return f"LogicalClock(time={self.time})"
