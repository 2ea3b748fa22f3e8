"""
Per-source request budgets.

Each rate-limited source gets a sliding window of recent request times. A
request is admitted while fewer than `requests` calls fall inside the last
`period_seconds`; otherwise the gateway refuses it without touching the
upstream.
"""

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from .config.settings import EngineConfig, RateLimit

logger = logging.getLogger(__name__)


class SlidingWindowLimiter:
    """Admits at most max_requests per rolling period_s window."""

    def __init__(self, max_requests: int, period_s: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.period_s = period_s
        self._clock = clock
        self._lock = threading.Lock()
        self._stamps: Deque[float] = deque()

    def _expire(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.period_s:
            self._stamps.popleft()

    def try_acquire(self) -> bool:
        """Record a request if the window has room. Returns False when exhausted."""
        with self._lock:
            now = self._clock()
            self._expire(now)
            if len(self._stamps) >= self.max_requests:
                return False
            self._stamps.append(now)
            return True

    def remaining(self) -> int:
        with self._lock:
            self._expire(self._clock())
            return self.max_requests - len(self._stamps)

    def retry_after(self) -> float:
        """Seconds until the oldest request leaves the window (0 if there is room)."""
        with self._lock:
            now = self._clock()
            self._expire(now)
            if len(self._stamps) < self.max_requests:
                return 0.0
            return max(0.0, self.period_s - (now - self._stamps[0]))


class RateLimitRegistry:
    """Limiters for every source that has a configured budget."""

    def __init__(self, config: Optional[EngineConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or EngineConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._limiters: Dict[str, SlidingWindowLimiter] = {}

    def limit_for(self, source_id: str) -> Optional[RateLimit]:
        return self.config.source(source_id).rate_limit

    def _limiter(self, source_id: str) -> Optional[SlidingWindowLimiter]:
        limit = self.limit_for(source_id)
        if limit is None:
            return None
        with self._lock:
            limiter = self._limiters.get(source_id)
            if limiter is None:
                limiter = SlidingWindowLimiter(limit.requests, limit.period_seconds, clock=self._clock)
                self._limiters[source_id] = limiter
            return limiter

    def try_acquire(self, source_id: str) -> bool:
        """True if the source may be called now. Sources without a budget always pass."""
        limiter = self._limiter(source_id)
        if limiter is None:
            return True
        admitted = limiter.try_acquire()
        if not admitted:
            logger.warning(
                f"Rate limit reached for {source_id} "
                f"({limiter.max_requests} per {limiter.period_s:g}s), retry in {limiter.retry_after():.1f}s"
            )
        return admitted

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Remaining budget for every limited source seen so far."""
        with self._lock:
            limiters = dict(self._limiters)
        return {
            source_id: {
                "requests": limiter.max_requests,
                "period_seconds": limiter.period_s,
                "remaining": limiter.remaining(),
                "retry_after_seconds": round(limiter.retry_after(), 1),
            }
            for source_id, limiter in sorted(limiters.items())
        }
