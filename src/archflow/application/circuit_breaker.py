"""
Per-capability circuit breaker.

closed: calls flow; outcomes feed a rolling window.
open: calls are refused until the cooldown elapses.
half-open: exactly one trial call is admitted; its outcome closes or
re-opens the breaker.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from enum import Enum

from archflow.application.config import BreakerConfig

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Rolling error-rate breaker for one external capability."""

    def __init__(
        self,
        name: str,
        config: BreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._config = config or BreakerConfig()
        self._clock = clock
        self._window: deque[bool] = deque(maxlen=self._config.window_size)
        self._state = BreakerState.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    @property
    def error_rate(self) -> float:
        with self._lock:
            return self._error_rate()

    def _error_rate(self) -> float:
        if not self._window:
            return 0.0
        return self._window.count(False) / len(self._window)

    def allow_request(self) -> bool:
        """Whether a new call may be admitted now."""
        with self._lock:
            if self._state is BreakerState.CLOSED:
                return True
            if self._state is BreakerState.OPEN:
                if self._clock() - self._opened_at < self._config.cooldown_seconds:
                    return False
                self._state = BreakerState.HALF_OPEN
                logger.info("Circuit %s half-open, admitting one trial call", self.name)
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def release_trial(self) -> None:
        """Give the trial slot back when the trial call never ran."""
        with self._lock:
            self._trial_in_flight = False

    def record(self, success: bool, trial: bool = False) -> None:
        """Feed one call outcome.

        While half-open only the trial call decides the next state; late
        outcomes from calls admitted before the trip are ignored.
        """
        with self._lock:
            if self._state is BreakerState.HALF_OPEN:
                if not trial:
                    return
                self._trial_in_flight = False
                if success:
                    self._state = BreakerState.CLOSED
                    self._window.clear()
                    logger.info("Circuit %s closed after successful trial", self.name)
                else:
                    self._trip()
                return
            if self._state is BreakerState.OPEN:
                return  # Late outcome from a call admitted before the trip

            self._window.append(success)
            if (
                len(self._window) >= self._config.min_calls
                and self._error_rate() > self._config.error_threshold
            ):
                self._trip()

    def _trip(self) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        logger.warning(
            "Circuit %s opened (error rate %.0f%% over %d calls)",
            self.name,
            self._error_rate() * 100,
            len(self._window),
        )
