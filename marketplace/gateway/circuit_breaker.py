import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from marketplace.metrics import CIRCUIT_STATE

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


@dataclass
class CircuitBreaker:
    """Fail fast when the gateway is consistently unreachable.

    Only transport failures (timeouts, connection errors) count; a provider
    that answers with a rejection is healthy from the breaker's point of view.
    """

    failure_threshold: int
    recovery_timeout: float

    _failures: int = field(default=0, init=False, repr=False)
    _last_failure_time: float | None = field(default=None, init=False, repr=False)
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False, repr=False)
    _trial_started: float | None = field(default=None, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._last_failure_time is not None
            and time.monotonic() - self._last_failure_time >= self.recovery_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            CIRCUIT_STATE.set(_STATE_GAUGE_VALUES[CircuitState.HALF_OPEN])
            logger.info("Circuit breaker transitioned to HALF_OPEN")
        return self._state

    def allow_request(self) -> bool:
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.OPEN:
            return False
        # Half-open admits a single trial call. A trial that never reports back
        # stops blocking others after recovery_timeout.
        now = time.monotonic()
        if self._trial_started is not None and now - self._trial_started < self.recovery_timeout:
            return False
        self._trial_started = now
        return True

    def record_success(self) -> None:
        self._failures = 0
        self._trial_started = None
        if self._state != CircuitState.CLOSED:
            logger.info("Circuit breaker CLOSED after successful gateway call")
        self._state = CircuitState.CLOSED
        CIRCUIT_STATE.set(_STATE_GAUGE_VALUES[CircuitState.CLOSED])

    def record_failure(self) -> None:
        self._failures += 1
        self._trial_started = None
        self._last_failure_time = time.monotonic()
        # A failed trial call while half-open re-opens immediately.
        if self._state == CircuitState.HALF_OPEN or (
            self._failures >= self.failure_threshold and self._state != CircuitState.OPEN
        ):
            self._state = CircuitState.OPEN
            CIRCUIT_STATE.set(_STATE_GAUGE_VALUES[CircuitState.OPEN])
            logger.warning(
                "Circuit breaker OPENED after %d consecutive failures",
                self._failures,
            )
