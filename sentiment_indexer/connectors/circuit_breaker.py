"""
Circuit Breaker

Tracks the failure ratio of calls to one source over a rolling time window.
Once the ratio exceeds the threshold (and enough calls were observed) the
circuit opens and calls fail fast. After the cool-down a single probe call
is let through: success closes the circuit, failure re-opens it.

Not thread-safe; the owning source client serializes access.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from ..core.types import CircuitState

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerConfig:
    failure_ratio: float = 0.5
    window_seconds: float = 60.0
    min_calls: int = 5
    cooldown_seconds: float = 30.0


class CircuitBreaker:
    def __init__(
        self,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
        name: str = "",
    ):
        self.config = config
        self.name = name
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._outcomes: deque[tuple[float, bool]] = deque()
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_ratio(self) -> float:
        self._prune(self._clock())
        if not self._outcomes:
            return 0.0
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return failures / len(self._outcomes)

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.window_seconds
        while self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes.popleft()

    def _transition(self, state: CircuitState) -> None:
        if state != self._state:
            logger.info(f"[{self.name}] Circuit {self._state.value} -> {state.value}")
            self._state = state

    def allow_request(self) -> bool:
        """Return True if a call may be attempted now."""
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self._opened_at is not None and self._clock() - self._opened_at >= self.config.cooldown_seconds:
                self._transition(CircuitState.HALF_OPEN)
                self._probe_in_flight = True
                return True
            return False

        # HALF_OPEN: exactly one probe at a time
        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._outcomes.clear()
            self._probe_in_flight = False
            self._opened_at = None
            self._transition(CircuitState.CLOSED)
            return
        now = self._clock()
        self._outcomes.append((now, True))
        self._prune(now)

    def record_failure(self) -> None:
        now = self._clock()
        if self._state == CircuitState.HALF_OPEN:
            self._probe_in_flight = False
            self._opened_at = now
            self._transition(CircuitState.OPEN)
            return

        self._outcomes.append((now, False))
        self._prune(now)
        if len(self._outcomes) >= self.config.min_calls and self.failure_ratio > self.config.failure_ratio:
            self._opened_at = now
            self._transition(CircuitState.OPEN)

    def release_probe(self) -> None:
        """Give back a half-open probe slot whose outcome is not counted."""
        if self._state == CircuitState.HALF_OPEN:
            self._probe_in_flight = False
