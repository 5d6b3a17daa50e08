"""Token bucket rate limiter for outbound provider calls."""
import time
import threading


class RateLimiter:
    """Thread-safe token bucket.

    calls_per_minute sets the refill rate; burst caps how many calls may go
    out back to back (defaults to the per-minute rate).
    """

    def __init__(self, calls_per_minute, burst=None):
        if calls_per_minute <= 0:
            raise ValueError("calls_per_minute must be positive")
        self.rate = calls_per_minute / 60.0
        self.capacity = float(burst if burst is not None else calls_per_minute)
        self.tokens = self.capacity
        self.last_time = time.monotonic()
        self._lock = threading.Lock()

    def _refill(self):
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.last_time) * self.rate)
        self.last_time = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self.tokens >= 1:
                self.tokens -= 1
                return True
            return False

    def wait(self):
        """Block until a token is available."""
        with self._lock:
            self._refill()
            if self.tokens < 1:
                time.sleep((1 - self.tokens) / self.rate)
                self.tokens = 0
                self.last_time = time.monotonic()
            else:
                self.tokens -= 1
