"""
Circuit Breaker — guards every outbound call to the daemon.

States:
  CLOSED → (failure_threshold consecutive failures) → OPEN
  OPEN → (open_cooldown elapsed) → HALF_OPEN
  HALF_OPEN → (trial succeeds) → CLOSED | (trial fails) → OPEN

Behavioral Contract:
- While OPEN and inside the cooldown, the wrapped operation is never invoked.
- In HALF_OPEN exactly one trial call is in flight; every other caller fails fast.
- All transitions happen in synchronous methods without an await between
  reading and writing state, which makes them atomic on the event loop.
"""

import logging
import time
from typing import Awaitable, Callable, List, Optional, TypeVar

from resilience_kernel.errors import CircuitOpenError
from resilience_kernel.models.breaker import CircuitBreakerState, CircuitState
from resilience_kernel.models.config import CircuitBreakerConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateListener = Callable[[CircuitState, CircuitState], None]


class CircuitBreaker:
    """Three-state breaker around an async operation."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        name: str = "daemon",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> CircuitState:
        return self._state

    def on_state_change(self, listener: StateListener) -> None:
        """Register a callback invoked as listener(old_state, new_state)."""
        self._listeners.append(listener)

    async def execute(self, op: Callable[[], Awaitable[T]]) -> T:
        """
        Run `op` if the breaker allows it.

        Raises CircuitOpenError without calling `op` while the circuit is
        open (or a half-open trial is already running); otherwise re-raises
        whatever `op` raises after recording the failure.
        """
        is_trial = self._acquire()
        try:
            result = await op()
        except Exception:
            self._record_failure(is_trial)
            raise
        except BaseException:
            # Cancellation says nothing about the daemon's health.
            if is_trial:
                self._trial_in_flight = False
            raise
        self._record_success(is_trial)
        return result

    def get_state(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            opened_at=self._opened_at,
            trial_in_flight=self._trial_in_flight,
            failure_threshold=self.config.failure_threshold,
            open_cooldown_seconds=self.config.open_cooldown_seconds,
        )

    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    def reset(self) -> None:
        """Operator override: force CLOSED with zeroed counters."""
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        self._trial_in_flight = False
        self._transition(CircuitState.CLOSED)
        logger.info("Circuit breaker %s manually reset", self.name)

    # --- State transitions (single mutation path) ---

    def _acquire(self) -> bool:
        """Decide whether this call may proceed; returns True for a trial call."""
        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - (self._opened_at or 0.0)
            remaining = self.config.open_cooldown_seconds - elapsed
            if remaining > 0:
                logger.debug(
                    "Circuit breaker %s is OPEN - rejecting call (%.1fs until trial)",
                    self.name, remaining,
                )
                raise CircuitOpenError(
                    f"Circuit breaker {self.name} is open", retry_after=remaining
                )
            self._transition(CircuitState.HALF_OPEN)

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(
                    f"Circuit breaker {self.name} is half-open with a trial in flight"
                )
            self._trial_in_flight = True
            return True

        return False

    def _record_success(self, is_trial: bool) -> None:
        if is_trial:
            if not self._trial_in_flight:
                return  # reset() while the trial was running
            self._trial_in_flight = False
            self._failure_count = 0
            self._success_count = 0
            self._opened_at = None
            self._transition(CircuitState.CLOSED)
            logger.info("Circuit breaker %s CLOSED - trial call succeeded", self.name)
            return

        if self._state != CircuitState.CLOSED:
            return
        self._success_count += 1
        self._failure_count = 0

    def _record_failure(self, is_trial: bool) -> None:
        if is_trial:
            if not self._trial_in_flight:
                return
            self._trial_in_flight = False
            self._failure_count = 0
            self._success_count = 0
            self._open()
            logger.warning("Circuit breaker %s re-OPENED - trial call failed", self.name)
            return

        if self._state != CircuitState.CLOSED:
            # A reset() or a concurrent trial already moved the breaker on.
            return

        self._failure_count += 1
        if self._failure_count >= self.config.failure_threshold:
            logger.error(
                "Circuit breaker %s OPEN - %d consecutive failures (threshold %d)",
                self.name, self._failure_count, self.config.failure_threshold,
            )
            self._open()

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state == new_state:
            return
        logger.info("Circuit breaker %s: %s -> %s", self.name, old_state.value, new_state.value)
        for listener in list(self._listeners):
            try:
                listener(old_state, new_state)
            except Exception:
                logger.exception("Circuit breaker state listener failed")

