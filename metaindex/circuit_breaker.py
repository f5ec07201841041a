"""
Circuit breaker guarding discovery and fetch.

CLOSED   -> OPEN       after ``failure_threshold`` consecutive failures
OPEN     -> HALF_OPEN  once ``reset_timeout`` has elapsed (background timer,
                       and lazily whenever the state is read)
HALF_OPEN -> CLOSED    on the next success
HALF_OPEN -> OPEN      on the next failure
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerState:
    state: BreakerState = BreakerState.CLOSED
    consecutive_failures: int = 0
    last_failure_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            'state': self.state.value,
            'consecutive_failures': self.consecutive_failures,
            'last_failure_at': self.last_failure_at,
        }


class CircuitBreaker:
    """Thread-safe three-state breaker, one per pipeline instance."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        use_timer: bool = True,
    ):
        """
        Args:
            failure_threshold: Consecutive failures that open the circuit
            reset_timeout:     Seconds to stay OPEN before probing again
            clock:             Time source, injectable for tests
            use_timer:         Start a background timer on open; when False
                               the OPEN -> HALF_OPEN move happens only lazily
        """
        self.failure_threshold = max(1, failure_threshold)
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._use_timer = use_timer
        self._state = CircuitBreakerState()
        self._opened_at: Optional[float] = None
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.RLock()
        self._listeners: List[Callable[[BreakerState, BreakerState], None]] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> BreakerState:
        with self._lock:
            self._maybe_half_open()
            return self._state.state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._state.consecutive_failures

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            self._maybe_half_open()
            return CircuitBreakerState(
                state=self._state.state,
                consecutive_failures=self._state.consecutive_failures,
                last_failure_at=self._state.last_failure_at,
            )

    def add_listener(self, callback: Callable[[BreakerState, BreakerState], None]) -> None:
        """Register ``callback(old_state, new_state)`` for every transition."""
        self._listeners.append(callback)

    def allow_request(self) -> bool:
        """False while OPEN; network work must be short-circuited."""
        return self.state != BreakerState.OPEN

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_success(self) -> None:
        with self._lock:
            self._state.consecutive_failures = 0
            if self._state.state != BreakerState.CLOSED:
                self._transition(BreakerState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self._maybe_half_open()
            self._state.consecutive_failures += 1
            self._state.last_failure_at = self._clock()

            if self._state.state == BreakerState.HALF_OPEN:
                self._open()
            elif (self._state.state == BreakerState.CLOSED
                  and self._state.consecutive_failures >= self.failure_threshold):
                self._open()

    def force_half_open(self) -> None:
        """Manual recovery hook: allow one probe regardless of the timeout."""
        with self._lock:
            self._cancel_timer()
            if self._state.state != BreakerState.HALF_OPEN:
                self._transition(BreakerState.HALF_OPEN)

    def reset(self) -> None:
        with self._lock:
            self._cancel_timer()
            self._state.consecutive_failures = 0
            self._state.last_failure_at = None
            if self._state.state != BreakerState.CLOSED:
                self._transition(BreakerState.CLOSED)

    def close(self) -> None:
        """Stop the background timer, if any."""
        with self._lock:
            self._cancel_timer()

    # ------------------------------------------------------------------
    # Internals (call with lock held)
    # ------------------------------------------------------------------

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._transition(BreakerState.OPEN)
        logger.warning(
            f"[BREAKER] Circuit opened after {self._state.consecutive_failures} "
            f"consecutive failure(s); retrying in {self.reset_timeout}s"
        )
        self._cancel_timer()
        if self._use_timer and self.reset_timeout > 0:
            self._timer = threading.Timer(self.reset_timeout, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
            if self._state.state == BreakerState.OPEN:
                self._transition(BreakerState.HALF_OPEN)

    def _maybe_half_open(self) -> None:
        if (self._state.state == BreakerState.OPEN
                and self._opened_at is not None
                and self._clock() - self._opened_at >= self.reset_timeout):
            self._cancel_timer()
            self._transition(BreakerState.HALF_OPEN)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _transition(self, new_state: BreakerState) -> None:
        old_state = self._state.state
        self._state.state = new_state
        if new_state == BreakerState.HALF_OPEN:
            logger.info("[BREAKER] Circuit half-open, next request is a probe")
        elif new_state == BreakerState.CLOSED:
            logger.info("[BREAKER] Circuit closed")
        for callback in list(self._listeners):
            try:
                callback(old_state, new_state)
            except Exception as e:
                logger.error(f"[BREAKER] Listener failed: {e}")
