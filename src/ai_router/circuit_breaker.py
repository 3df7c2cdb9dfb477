"""Per-provider circuit breaker.

The circuit breaker pattern prevents cascading failures by temporarily
stopping requests to a failing provider, allowing it time to recover.

State Machine:
    CLOSED -> (consecutive failures >= threshold) -> OPEN
    OPEN -> (reset timeout elapsed) -> HALF_OPEN
    HALF_OPEN -> (trial success) -> CLOSED
    HALF_OPEN -> (trial failure) -> OPEN

Only one trial call is let through while HALF_OPEN. ``allow()`` claims that
slot atomically, so two concurrent callers can never both hold the trial.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

StateListener = Callable[[str, "CircuitState", "CircuitState"], None]


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests allowed
    OPEN = "open"  # Failures exceeded threshold, requests blocked
    HALF_OPEN = "half_open"  # Testing recovery, a single trial allowed


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time copy of a breaker's state for readers."""

    provider_id: str
    state: CircuitState
    consecutive_failures: int
    last_failure_at: Optional[float]
    last_state_change_at: float
    trial_in_flight: bool


class CircuitBreaker:
    """Circuit breaker guarding calls to a single provider.

    Thread-safe: every public method takes the breaker's lock, so state
    transitions are single-writer.

    Example:
        cb = CircuitBreaker("gemini", failure_threshold=5, reset_timeout_ms=60000)

        if cb.allow():
            try:
                result = await adapter.call(...)
            except AdapterError:
                cb.record_failure()
            else:
                cb.record_success()
    """

    def __init__(
        self,
        provider_id: str,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60000,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateListener] = None,
    ):
        """Initialize the circuit breaker.

        Args:
            provider_id: Provider this breaker protects.
            failure_threshold: Consecutive failures before opening the circuit.
            reset_timeout_ms: Time to stay OPEN before allowing a trial call.
            clock: Monotonic time source in seconds.
            on_state_change: Called with (provider_id, old, new) after a transition.
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if reset_timeout_ms < 0:
            raise ValueError("reset_timeout_ms must not be negative")

        self.provider_id = provider_id
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: Optional[float] = None
        self._last_state_change_at: float = clock()
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        """Return the current circuit state (without applying timeouts)."""
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def _transition_to(self, new_state: CircuitState) -> Optional[CircuitState]:
        """Transition to a new state. Caller must hold the lock.

        Returns the previous state so the listener can be notified once the
        lock has been released.
        """
        old_state = self._state
        self._state = new_state
        self._last_state_change_at = self._clock()
        self._trial_in_flight = False

        if new_state == CircuitState.CLOSED:
            self._consecutive_failures = 0
            self._last_failure_at = None

        if old_state == new_state:
            return None
        return old_state

    def _notify(self, old_state: Optional[CircuitState], new_state: CircuitState) -> None:
        if old_state is None:
            return
        if new_state == CircuitState.OPEN:
            logger.warning(
                "Circuit breaker OPEN for %s (from %s, failures=%d)",
                self.provider_id,
                old_state.value,
                self.failure_threshold,
            )
        else:
            logger.info(
                "Circuit breaker %s for %s (from %s)",
                new_state.value.upper(),
                self.provider_id,
                old_state.value,
            )
        if self._on_state_change is not None:
            self._on_state_change(self.provider_id, old_state, new_state)

    def _open_expired(self) -> bool:
        elapsed_ms = (self._clock() - self._last_state_change_at) * 1000.0
        return elapsed_ms >= self.reset_timeout_ms

    def allow(self) -> bool:
        """Check whether a call may proceed.

        In HALF_OPEN this claims the single trial slot; the caller that gets
        True must follow up with record_success(), record_failure() or
        release_trial().

        Returns:
            True if the request should proceed, False otherwise.
        """
        old_state = None
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if not self._open_expired():
                    return False
                old_state = self._transition_to(CircuitState.HALF_OPEN)
            # HALF_OPEN: exactly one trial at a time
            if self._trial_in_flight:
                allowed = False
            else:
                self._trial_in_flight = True
                allowed = True
        self._notify(old_state, CircuitState.HALF_OPEN)
        return allowed

    def record_success(self) -> None:
        """Record a success and close the circuit if this was the trial."""
        old_state = None
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                old_state = self._transition_to(CircuitState.CLOSED)
            else:
                self._consecutive_failures = 0
        self._notify(old_state, CircuitState.CLOSED)

    def record_failure(self) -> None:
        """Record a failure and potentially trip the circuit."""
        old_state = None
        with self._lock:
            self._consecutive_failures += 1
            self._last_failure_at = self._clock()

            if self._state == CircuitState.CLOSED:
                if self._consecutive_failures >= self.failure_threshold:
                    old_state = self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.HALF_OPEN:
                # Any failure in HALF_OPEN reopens the circuit
                old_state = self._transition_to(CircuitState.OPEN)
        self._notify(old_state, CircuitState.OPEN)

    def release_trial(self) -> None:
        """Give back a HALF_OPEN trial slot whose call never resolved.

        Used when the trial call is cancelled; the next caller may then claim
        the slot instead of the breaker staying HALF_OPEN forever.
        """
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    def reset(self) -> None:
        """Force the breaker back to CLOSED with cleared counters."""
        with self._lock:
            old_state = self._transition_to(CircuitState.CLOSED)
        self._notify(old_state, CircuitState.CLOSED)

    def snapshot(self) -> CircuitSnapshot:
        """Return an immutable copy of the breaker's state."""
        with self._lock:
            return CircuitSnapshot(
                provider_id=self.provider_id,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                last_failure_at=self._last_failure_at,
                last_state_change_at=self._last_state_change_at,
                trial_in_flight=self._trial_in_flight,
            )

    def get_stats(self) -> Dict[str, Any]:
        """Return current circuit breaker statistics.

        Returns:
            Dict with state, counts, and timing information.
        """
        snap = self.snapshot()
        return {
            "state": snap.state.value,
            "consecutive_failures": snap.consecutive_failures,
            "last_failure_at": snap.last_failure_at,
            "last_state_change_at": snap.last_state_change_at,
            "trial_in_flight": snap.trial_in_flight,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_ms": self.reset_timeout_ms,
            "provider_id": self.provider_id,
        }
