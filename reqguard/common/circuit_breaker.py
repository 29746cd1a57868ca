import asyncio
import time
from typing import Callable, Optional


class CircuitOpenError(RuntimeError):
    pass


class CircuitBreaker:
    """
    Simple async in-memory circuit breaker guarding one backend connection.

    - CLOSED: normal operation; consecutive failures increment fail_count.
    - OPEN: before_call() raises CircuitOpenError until recovery_timeout passes.
    - HALF_OPEN: a single trial call is let through; success closes, failure re-opens.

    It only tracks connection health. It never holds governance state.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.recovery_timeout = float(recovery_timeout)
        self._clock = clock

        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._fail_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> str:
        return self._state

    def _maybe_transition(self):
        if self._state == "OPEN" and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.recovery_timeout:
                self._state = "HALF_OPEN"
                self._trial_in_flight = False

    async def before_call(self):
        async with self._lock:
            self._maybe_transition()
            if self._state == "OPEN":
                raise CircuitOpenError(f"circuit {self.name} is open")
            if self._state == "HALF_OPEN":
                if self._trial_in_flight:
                    raise CircuitOpenError(f"circuit {self.name} is half-open and a trial call is running")
                self._trial_in_flight = True

    def abandon_trial(self):
        # the trial call was cancelled before it produced a verdict
        self._trial_in_flight = False

    async def after_call(self, success: bool):
        async with self._lock:
            if success:
                self._fail_count = 0
                self._state = "CLOSED"
                self._opened_at = None
                self._trial_in_flight = False
                return

            self._fail_count += 1
            # a failing half-open trial call re-opens immediately
            if self._fail_count >= self.failure_threshold or self._state == "HALF_OPEN":
                self._state = "OPEN"
                self._opened_at = self._clock()
                self._fail_count = 0
                self._trial_in_flight = False
