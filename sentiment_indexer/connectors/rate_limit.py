"""
Token Bucket Rate Limiter

Per-source request budget: a continuously refilling token bucket plus an
independent rolling 24-hour quota.

Each call consumes one token. When the bucket is empty the caller either
waits for the next token (WAIT mode) or is rejected immediately (REJECT
mode). An exhausted daily quota always rejects, since waiting for a rolling
24-hour window is never useful to a job.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

DAILY_WINDOW_SECONDS = 86_400.0


class RateLimitMode(str, Enum):
    """Behavior when the bucket has no token."""
    WAIT = "wait"
    REJECT = "reject"


@dataclass
class RateLimitConfig:
    """Token bucket configuration for one source."""

    capacity: int = 5
    refill_per_second: float = 1.0
    daily_quota: Optional[int] = None
    mode: RateLimitMode = RateLimitMode.WAIT
    max_wait_seconds: float = 60.0


class TokenBucket:
    """
    Async token bucket with a rolling daily quota.

    Waiters in WAIT mode queue on the bucket lock, so tokens are handed out
    in arrival order.

    Usage:
        bucket = TokenBucket(RateLimitConfig(capacity=5, refill_per_second=1.0))
        if await bucket.acquire():
            ...  # perform the call
    """

    def __init__(
        self,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if config.capacity < 1:
            raise ValueError("capacity must be >= 1")
        if config.refill_per_second <= 0:
            raise ValueError("refill_per_second must be > 0")

        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._tokens = float(config.capacity)
        self._last_refill = clock()
        self._daily_calls: deque[float] = deque()
        self.last_wait_seconds = 0.0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.config.capacity), self._tokens + elapsed * self.config.refill_per_second)
        self._last_refill = now

    def _prune_daily(self, now: float) -> None:
        cutoff = now - DAILY_WINDOW_SECONDS
        while self._daily_calls and self._daily_calls[0] <= cutoff:
            self._daily_calls.popleft()

    def _quota_exhausted(self, now: float) -> bool:
        if self.config.daily_quota is None:
            return False
        self._prune_daily(now)
        return len(self._daily_calls) >= self.config.daily_quota

    async def acquire(self) -> bool:
        """
        Consume one token.

        Returns:
            True if the call may proceed, False if it is rate limited
        """
        async with self._lock:
            self.last_wait_seconds = 0.0
            now = self._clock()
            if self._quota_exhausted(now):
                logger.warning("Daily quota exhausted")
                return False

            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                self._daily_calls.append(now)
                return True

            if self.config.mode == RateLimitMode.REJECT:
                return False

            wait = (1.0 - self._tokens) / self.config.refill_per_second
            if wait > self.config.max_wait_seconds:
                logger.warning(f"Token wait {wait:.2f}s exceeds max {self.config.max_wait_seconds}s")
                return False

            # Lock is held while sleeping so later callers queue behind us
            await self._sleep(wait)
            self.last_wait_seconds = wait
            self._refill()
            self._tokens = max(0.0, self._tokens - 1.0)
            self._daily_calls.append(self._clock())
            return True

    @property
    def tokens_available(self) -> float:
        """Current token count (refill applied)."""
        self._refill()
        return self._tokens

    @property
    def daily_quota_remaining(self) -> Optional[int]:
        if self.config.daily_quota is None:
            return None
        self._prune_daily(self._clock())
        return max(0, self.config.daily_quota - len(self._daily_calls))
