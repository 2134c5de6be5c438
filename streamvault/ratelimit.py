"""
Fixed-window request gate, keyed by caller identity.

Runs before any settlement work and shares no lock with it. Each key gets
a counter and a reset time; the first request after the reset time opens
a new window.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


MAX_TRACKED_KEYS = 1000


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0

    def to_error(self) -> Dict[str, object]:
        return {
            "error": "rate_limited",
            "message": f"Rate limit exceeded. Try again in {self.retry_after} seconds.",
            "retry_after": self.retry_after,
        }


class FixedWindowRateLimiter:
    """Per-key request counter over fixed windows."""

    def __init__(self, window_seconds: int = 60, max_requests: int = 60,
                 clock: Optional[Callable[[], float]] = None):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock or time.time
        self._windows: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            record = self._windows.get(key)
            if record is None or now > record["reset_at"]:
                record = {"count": 1, "reset_at": now + self.window_seconds}
                self._windows[key] = record
                self._prune(now)
                return RateLimitDecision(
                    allowed=True,
                    limit=self.max_requests,
                    remaining=self.max_requests - 1,
                    reset_at=record["reset_at"],
                )

            if record["count"] >= self.max_requests:
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_at=record["reset_at"],
                    retry_after=int(math.ceil(record["reset_at"] - now)),
                )

            record["count"] += 1
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - int(record["count"]),
                reset_at=record["reset_at"],
            )

    def _prune(self, now: float) -> None:
        if len(self._windows) <= MAX_TRACKED_KEYS:
            return
        stale = [k for k, rec in self._windows.items() if now > rec["reset_at"]]
        for k in stale:
            self._windows.pop(k, None)
