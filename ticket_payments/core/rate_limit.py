"""
In-process sliding window rate limiter.

State lives in memory for the life of the process and is lost on restart.
"""
import time
from collections import deque
from typing import Callable, Deque, Dict


class SlidingWindowRateLimiter:
    """
    Allow at most ``limit`` hits per identity within any ``window_seconds``.

    Args:
        limit: Maximum hits inside one window
        window_seconds: Window length
        clock: Monotonic time source
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}

    def hit(self, identity: str) -> bool:
        """Record a hit; return False if ``identity`` is over its limit."""
        now = self._clock()
        hits = self._hits.setdefault(identity, deque())
        self._trim(hits, now)

        if len(hits) >= self.limit:
            return False
        hits.append(now)
        return True

    def retry_after(self, identity: str) -> float:
        """Seconds until ``identity`` may hit again (0 if it may now)."""
        hits = self._hits.get(identity)
        if not hits or len(hits) < self.limit:
            return 0.0
        return max(hits[0] + self.window_seconds - self._clock(), 0.0)

    def evict_expired(self) -> int:
        """Drop identities with no hits inside the window. Returns how many were dropped."""
        now = self._clock()
        stale = []
        for identity, hits in self._hits.items():
            self._trim(hits, now)
            if not hits:
                stale.append(identity)
        for identity in stale:
            del self._hits[identity]
        return len(stale)

    def reset(self) -> None:
        self._hits.clear()

    def __len__(self) -> int:
        return len(self._hits)

    def _trim(self, hits: Deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
