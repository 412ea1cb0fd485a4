"""Fixed-window request limits per tool.

A route's rate limit tier caps how many requests may reach its primary
tool within one window. Routes without a tier, and ``unlimited`` routes,
are never limited.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from shared.models import RateLimitTier

TIER_LIMITS: dict[RateLimitTier, int] = {
    RateLimitTier.LOW: 10,
    RateLimitTier.MEDIUM: 50,
    RateLimitTier.HIGH: 200,
}


def limit_for_tier(tier: Optional[RateLimitTier]) -> Optional[int]:
    """Requests allowed per window for a tier; None means unlimited."""
    if tier is None:
        return None
    return TIER_LIMITS.get(RateLimitTier(tier))


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    limit: int
    remaining: int
    reset_in: float
    retry_after: Optional[int] = None


@dataclass
class _Window:
    started_at: float
    requests: int = 0


class RateLimiter:
    """
    Counts requests per key in fixed windows.

    Windows start with the first request for a key and reset lazily once
    ``window_seconds`` have passed. Thread-safe.
    """

    def __init__(self, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, key: str, limit: int) -> RateLimitStatus:
        """
        Count one request against ``key`` and report whether it is allowed.

        Refused requests still count, so hammering a limited key does not
        shorten the wait.
        """
        with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now - window.started_at >= self.window_seconds:
                window = _Window(started_at=now)
                self._windows[key] = window

            exceeded = window.requests >= limit
            remaining = max(0, limit - window.requests - 1)
            reset_in = window.started_at + self.window_seconds - now
            window.requests += 1

        if exceeded:
            return RateLimitStatus(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_in=reset_in,
                retry_after=max(1, math.ceil(reset_in)),
            )
        return RateLimitStatus(allowed=True, limit=limit, remaining=remaining, reset_in=reset_in)

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()


# Global limiter instance
_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        _limiter = RateLimiter()
    return _limiter


def set_rate_limiter(limiter: Optional[RateLimiter]) -> None:
    global _limiter
    _limiter = limiter
