"""In-memory fixed-window limiter for checks that reach the billing provider."""

import time
from typing import Callable, Dict, Optional, Tuple


class FixedWindowLimiter:
    """
    Allow at most `limit` hits per key in each `window_seconds` window.

    A limit of None (or <= 0) disables limiting. State is per process.
    """

    def __init__(self, limit: Optional[int], window_seconds: float = 60, time_fn: Optional[Callable[[], float]] = None):
        self.limit = limit if limit and limit > 0 else None
        self.window_seconds = window_seconds
        self.time_fn = time_fn or time.monotonic
        self.windows: Dict[str, Tuple[float, int]] = {}

    def allow(self, key: str) -> bool:
        if self.limit is None:
            return True
        now = self.time_fn()
        window_start, count = self.windows.get(key, (now, 0))
        if now - window_start >= self.window_seconds:
            window_start, count = now, 0
        if count >= self.limit:
            return False
        self.windows[key] = (window_start, count + 1)
        return True
