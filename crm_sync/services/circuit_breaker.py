"""Error-rate circuit breaker for outbound provider calls.

The breaker keeps the outcome of every call made in a rolling window. Once
enough calls have been seen and the failure share reaches the threshold the
circuit opens and further calls fail with ``CircuitOpenError`` without doing
any I/O. After ``reset_timeout`` a single trial call is let through
(HALF_OPEN); its outcome closes the circuit or opens it again.

State changes never straddle an ``await``, so the event loop serializes them
and no lock is needed.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Tuple, Type, TypeVar

from crm_sync.errors import CircuitOpenError, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Protects one provider; shared by every tenant calling that provider.

    Args:
        name: Identifier used in logs and errors.
        call_timeout: Seconds a wrapped call may run before it counts as failed.
        error_threshold_percent: Failure share (0-100) that opens the circuit.
        rolling_window: Seconds of call history considered.
        volume_threshold: Minimum calls in the window before the rate is judged.
        reset_timeout: Seconds spent OPEN before a trial is allowed.
        excluded: Exception types that pass through without counting as failures.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        name: str,
        call_timeout: float = 15.0,
        error_threshold_percent: float = 50.0,
        rolling_window: float = 10.0,
        volume_threshold: int = 5,
        reset_timeout: float = 30.0,
        excluded: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.call_timeout = call_timeout
        self.error_threshold_percent = error_threshold_percent
        self.rolling_window = rolling_window
        self.volume_threshold = max(1, volume_threshold)
        self.reset_timeout = reset_timeout
        self.excluded = excluded
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._outcomes: Deque[Tuple[float, bool]] = deque()

    # -- State ----------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once the reset timeout passed."""
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.warning(f"Circuit breaker HALF_OPEN for {self.name} (allowing one trial)")
        return self._state

    def _retry_after(self) -> float:
        return max(0.0, self.reset_timeout - (self._clock() - self._opened_at))

    def _prune(self, now: float) -> None:
        horizon = now - self.rolling_window
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    def error_rate(self) -> float:
        """Failure percentage over the rolling window."""
        self._prune(self._clock())
        if not self._outcomes:
            return 0.0
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return 100.0 * failures / len(self._outcomes)

    # -- Outcomes -------------------------------------------------------------

    def _before_call(self) -> bool:
        """Raise if calls are rejected; return True when this call is the trial."""
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitOpenError(self.name, retry_after=self._retry_after())
        if state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, retry_after=0.0)
            self._trial_in_flight = True
            return True
        return False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self._outcomes.clear()

    def record_success(self, trial: bool = False) -> None:
        if trial:
            logger.warning(f"Circuit breaker CLOSED for {self.name} (trial succeeded)")
            self._state = CircuitState.CLOSED
            self._trial_in_flight = False
            self._outcomes.clear()
            return
        now = self._clock()
        self._outcomes.append((now, True))
        self._prune(now)

    def record_failure(self, trial: bool = False) -> None:
        if trial:
            logger.warning(f"Circuit breaker re-OPENED for {self.name} (trial failed)")
            self._open()
            return
        now = self._clock()
        self._outcomes.append((now, False))
        self._prune(now)
        if self._state != CircuitState.CLOSED or len(self._outcomes) < self.volume_threshold:
            return
        rate = self.error_rate()
        if rate >= self.error_threshold_percent:
            logger.warning(
                f"Circuit breaker OPEN for {self.name}: {rate:.0f}% of "
                f"{len(self._outcomes)} calls failed in the last {self.rolling_window:.0f}s"
            )
            self._open()

    # -- Call wrapper ---------------------------------------------------------

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` through the breaker.

        Raises:
            CircuitOpenError: The circuit is open (or a trial is already running).
            ProviderError: The call exceeded ``call_timeout``.
            Exception: Whatever ``func`` raised, after recording the failure.
        """
        trial = self._before_call()
        try:
            result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            self.record_failure(trial)
            raise ProviderError(self.name, f"call timed out after {self.call_timeout:.1f}s") from exc
        except self.excluded:
            if trial:
                self._trial_in_flight = False
            raise
        except Exception:
            self.record_failure(trial)
            raise
        except BaseException:
            # Cancelled mid-call: no verdict, let the next caller try
            if trial:
                self._trial_in_flight = False
            raise
        self.record_success(trial)
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._outcomes.clear()
        logger.info(f"Circuit breaker RESET for {self.name}")

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot for status endpoints."""
        return {
            "name": self.name,
            "state": self.state.value,
            "error_rate": round(self.error_rate(), 1),
            "calls_in_window": len(self._outcomes),
            "error_threshold_percent": self.error_threshold_percent,
            "reset_timeout": self.reset_timeout,
        }
