from __future__ import annotations

import threading
import time
from collections.abc import Callable


class TokenBucketRateLimiter:
    """Thread-safe token bucket bounding how often a full reconciliation may start.

    Holds at most *burst* tokens and refills at *qps* tokens per second.
    """

    def __init__(
        self,
        qps: float,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)
        self._last_refill = now

    def try_accept(self) -> bool:
        """Take a token if one is available without waiting."""
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def wait_time(self) -> float:
        """Return seconds until the next token becomes available."""
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1.0:
                return 0.0
            return (1.0 - self._tokens) / self.qps

    def accept(self, stop_event: threading.Event | None = None) -> bool:
        """Block until a token is taken.

        Returns ``False`` without taking a token if *stop_event* fires first.
        """
        while True:
            if stop_event is not None and stop_event.is_set():
                return False
            if self.try_accept():
                return True
            delay = self.wait_time()
            if stop_event is not None:
                stop_event.wait(timeout=delay)
            else:
                time.sleep(delay)
