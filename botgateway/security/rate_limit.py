from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Callable

Clock = Callable[[], float]

@dataclass
class TokenBucket:
    rate: float
    burst: int
    tokens: float
    last: float

    def allow(self, now: float, cost: float = 1.0) -> bool:
        elapsed = now - self.last
        self.last = now
        self.tokens = min(self.burst, self.tokens + elapsed * self.rate)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False

class RateLimiter:
    """Token bucket per principal; throttles management API clients."""

    def __init__(self, rate: float, burst: int, clock: Clock = time.monotonic):
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}

    def allow(self, principal: str, cost: float = 1.0) -> bool:
        now = self._clock()
        b = self._buckets.get(principal)
        if b is None:
            b = TokenBucket(rate=self.rate, burst=self.burst, tokens=float(self.burst), last=now)
            self._buckets[principal] = b
        return b.allow(now, cost=cost)

@dataclass
class WindowCounter:
    """Fixed window: at most ``limit`` hits per ``window_s``; resets on rollover only."""
    limit: int
    window_s: float = 1.0
    window_start: float = 0.0
    count: int = 0

    def try_acquire(self, now: float) -> bool:
        if now - self.window_start >= self.window_s:
            self.window_start = now
            self.count = 0
        if self.count >= self.limit:
            return False
        self.count += 1
        return True

    def retry_after(self, now: float) -> float:
        return max(0.0, self.window_start + self.window_s - now)
