"""Count-based circuit breaker.

CLOSED: calls pass; outcomes are recorded in a rolling window of the last
``window_size`` calls. Once at least ``minimum_calls`` are recorded and the
failure rate reaches ``failure_rate_threshold`` percent, the breaker opens.

OPEN: every call is refused with ``CircuitOpen`` for ``cooldown_seconds``.

HALF_OPEN: exactly one trial call is admitted. Success closes the breaker
(with a fresh window), failure reopens it for another cooldown.

Every state change starts a new epoch. ``before_call`` returns the epoch a
call was admitted in; outcomes reported with an older epoch are ignored, so
a slow call admitted while CLOSED cannot decide the fate of a half-open trial.
"""
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from .errors import CircuitOpen
from .logging_setup import logger


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Thread-safe circuit breaker for one endpoint class."""

    def __init__(
        self,
        name: str,
        *,
        failure_rate_threshold: float = 50.0,
        minimum_calls: int = 5,
        window_size: int = 10,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if minimum_calls > window_size:
            raise ValueError("minimum_calls cannot exceed window_size")
        self.name = name
        self.failure_rate_threshold = failure_rate_threshold
        self.minimum_calls = minimum_calls
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._window: Deque[bool] = deque(maxlen=window_size)  # True = failure
        self._state = CircuitState.CLOSED
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._epoch = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self.cooldown_seconds
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            self._epoch += 1
            logger.info(f"Circuit half-open | breaker={self.name}")
        return self._state

    def failure_rate(self) -> float:
        """Failure rate of the rolling window in percent (0 when empty)."""
        with self._lock:
            return self._failure_rate()

    def _failure_rate(self) -> float:
        if not self._window:
            return 0.0
        return 100.0 * sum(self._window) / len(self._window)

    def before_call(self) -> int:
        """Admit or refuse a call.

        Returns:
            The epoch the call was admitted in; pass it back with the outcome

        Raises:
            CircuitOpen: If the breaker is open, or half-open with its trial call in flight
        """
        with self._lock:
            state = self._current_state()
            if state is CircuitState.CLOSED:
                return self._epoch
            if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return self._epoch
        raise CircuitOpen(f"Circuit '{self.name}' is {state.value}", endpoint=self.name)

    def release(self, epoch: Optional[int] = None) -> None:
        """Give back an admitted half-open trial that never reached the dependency."""
        with self._lock:
            if self._is_stale(epoch):
                return
            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    def _is_stale(self, epoch: Optional[int]) -> bool:
        if epoch is None or epoch == self._epoch:
            return False
        logger.debug(f"Ignoring outcome from epoch {epoch} | breaker={self.name} epoch={self._epoch}")
        return True

    def record_success(self, epoch: Optional[int] = None) -> None:
        with self._lock:
            if self._is_stale(epoch):
                return
            if self._state is CircuitState.HALF_OPEN:
                self._close()
                return
            self._window.append(False)

    def record_failure(self, epoch: Optional[int] = None) -> None:
        with self._lock:
            if self._is_stale(epoch):
                return
            if self._state is CircuitState.HALF_OPEN:
                self._open()
                return
            self._window.append(True)
            if (
                self._state is CircuitState.CLOSED
                and len(self._window) >= self.minimum_calls
                and self._failure_rate() >= self.failure_rate_threshold
            ):
                self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._epoch += 1
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning(
            f"Circuit opened | breaker={self.name} failure_rate={self._failure_rate():.1f}% "
            f"cooldown={self.cooldown_seconds}s"
        )

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._epoch += 1
        self._opened_at = None
        self._trial_in_flight = False
        self._window.clear()
        logger.info(f"Circuit closed | breaker={self.name}")

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self._current_state().value,
                "failure_rate": self._failure_rate(),
                "buffered_calls": len(self._window),
                "failed_calls": sum(self._window),
            }
