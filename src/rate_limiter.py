import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from config import Config
from errors import RateLimitExceeded


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int = 0


class SlidingWindowRateLimiter:
    """Per-caller sliding window limiter kept in process memory.

    Build one at startup and pass it to whatever sends outbound LLM calls.
    """

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests or Config.RATE_LIMIT_MAX_REQUESTS
        self.window_seconds = float(window_seconds or Config.RATE_LIMIT_WINDOW_SEC)
        self._clock = clock
        self._lock = threading.Lock()
        self._requests: Dict[str, Deque[float]] = {}

    def check(self, key: str) -> RateLimitResult:
        """Record a request for ``key`` if the window has room."""
        now = self._clock()
        with self._lock:
            times = self._requests.setdefault(key, deque())
            while times and now - times[0] >= self.window_seconds:
                times.popleft()
            if len(times) < self.max_requests:
                times.append(now)
                return RateLimitResult(True, self.max_requests - len(times))
            retry_after = math.ceil(times[0] + self.window_seconds - now)
            return RateLimitResult(False, 0, max(1, retry_after))

    def acquire(self, key: str) -> None:
        result = self.check(key)
        if not result.allowed:
            raise RateLimitExceeded(result.retry_after)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._requests.clear()
            else:
                self._requests.pop(key, None)
