"""Circuit breaker guarding every external call made by the pipeline.

The breaker knows nothing about SMS or payments: callers hand it a zero-argument
callable returning an awaitable and decide what the degraded path is when it
raises `CircuitBreakerOpenError` or `CircuitBreakerTimeoutError`.

State lives in process memory, one `CircuitBreaker` per dependency name, handed
out by a `CircuitBreakerRegistry` that services receive at construction time.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from momorecon.common.logging import logger
from momorecon.common.metrics import circuit_breaker_calls_total, circuit_breaker_state


CLASSIFIER_BREAKER = "sms-classifier"
NOTIFIER_BREAKER = "supporter-notifier"


class BreakerStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATUS_GAUGE = {BreakerStatus.CLOSED: 0, BreakerStatus.HALF_OPEN: 1, BreakerStatus.OPEN: 2}


class CircuitBreakerOpenError(Exception):
    """Raised without calling the action while the breaker rejects traffic."""

    def __init__(self, name: str, retry_at: float) -> None:
        super().__init__(f"{name} circuit breaker is open")
        self.name = name
        self.retry_at = retry_at


class CircuitBreakerTimeoutError(Exception):
    """Raised when the guarded action does not finish within `timeout_ms`."""

    def __init__(self, name: str, timeout_ms: int) -> None:
        super().__init__(f"{name} timed out after {timeout_ms}ms")
        self.name = name
        self.timeout_ms = timeout_ms


@dataclass
class CircuitBreakerState:
    status: BreakerStatus = BreakerStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: float | None = None


@dataclass(frozen=True)
class BreakerOptions:
    timeout_ms: int
    failure_threshold: int
    reset_ms: int


def _discard_result(task: asyncio.Future) -> None:
    # Timed-out actions keep running; retrieve their outcome so asyncio does
    # not report an unretrieved exception.
    if not task.cancelled():
        task.exception()


class CircuitBreaker:
    """Closed / open / half-open breaker with a per-call timeout.

    - closed: calls pass through; consecutive failures are counted and the
      breaker opens once `failure_threshold` is reached.
    - open: calls fail immediately with `CircuitBreakerOpenError`.
    - half_open: entered once `reset_ms` has elapsed since opening; exactly one
      trial call runs at a time. Success closes the breaker, failure reopens it.
    """

    def __init__(
        self,
        name: str,
        timeout_ms: int,
        failure_threshold: int,
        reset_ms: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.timeout_ms = max(1, int(timeout_ms))
        self.failure_threshold = max(1, int(failure_threshold))
        self.reset_ms = max(1, int(reset_ms))
        self._clock = clock
        self._state = CircuitBreakerState()
        self._trial_in_flight = False
        circuit_breaker_state.labels(name=name).set(0)

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    @property
    def status(self) -> BreakerStatus:
        return self._state.status

    def _retry_at(self) -> float:
        opened_at = self._state.opened_at if self._state.opened_at is not None else self._clock()
        return opened_at + self.reset_ms / 1000.0

    def _set_status(self, status: BreakerStatus) -> None:
        if self._state.status != status:
            logger.info("circuit_breaker_transition name=%s from=%s to=%s", self.name, self._state.status.value, status.value)
        self._state.status = status
        circuit_breaker_state.labels(name=self.name).set(_STATUS_GAUGE[status])

    def _reject(self) -> CircuitBreakerOpenError:
        circuit_breaker_calls_total.labels(name=self.name, outcome="rejected").inc()
        return CircuitBreakerOpenError(self.name, self._retry_at())

    def _admit(self) -> bool:
        """Return True when the admitted call is the half-open trial."""

        if self._state.status == BreakerStatus.OPEN:
            if self._clock() < self._retry_at():
                raise self._reject()
            self._set_status(BreakerStatus.HALF_OPEN)
        if self._state.status == BreakerStatus.HALF_OPEN:
            if self._trial_in_flight:
                raise self._reject()
            self._trial_in_flight = True
            return True
        return False

    def _trip(self, error: BaseException) -> None:
        self._state.opened_at = self._clock()
        self._set_status(BreakerStatus.OPEN)
        logger.warning(
            "circuit_breaker_opened name=%s failures=%s error=%s",
            self.name,
            self._state.consecutive_failures,
            error,
        )

    def _record_success(self, is_trial: bool) -> None:
        circuit_breaker_calls_total.labels(name=self.name, outcome="success").inc()
        # Late successes from calls admitted before the breaker opened do not close it.
        if is_trial or self._state.status == BreakerStatus.CLOSED:
            self._state.consecutive_failures = 0
            self._state.opened_at = None
            self._set_status(BreakerStatus.CLOSED)

    def _record_failure(self, is_trial: bool, error: BaseException, outcome: str) -> None:
        circuit_breaker_calls_total.labels(name=self.name, outcome=outcome).inc()
        if is_trial:
            self._state.consecutive_failures += 1
            self._trip(error)
            return
        if self._state.status != BreakerStatus.CLOSED:
            return
        self._state.consecutive_failures += 1
        if self._state.consecutive_failures >= self.failure_threshold:
            self._trip(error)

    async def execute(self, action: Callable[[], Awaitable[Any]]) -> Any:
        """Run `action()` under the breaker and return its result."""

        is_trial = self._admit()
        try:
            try:
                task = asyncio.ensure_future(action())
            except Exception as exc:
                self._record_failure(is_trial, exc, "failure")
                raise
            done, _ = await asyncio.wait({task}, timeout=self.timeout_ms / 1000.0)
            if not done:
                task.add_done_callback(_discard_result)
                timeout_error = CircuitBreakerTimeoutError(self.name, self.timeout_ms)
                self._record_failure(is_trial, timeout_error, "timeout")
                raise timeout_error
            error = task.exception()
            if error is not None:
                self._record_failure(is_trial, error, "failure")
                raise error
            self._record_success(is_trial)
            return task.result()
        finally:
            if is_trial:
                self._trial_in_flight = False

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "status": self._state.status.value,
            "consecutive_failures": self._state.consecutive_failures,
            "opened_at": self._state.opened_at,
        }


class CircuitBreakerRegistry:
    """Hands out one breaker per dependency name."""

    def __init__(
        self,
        options: dict[str, BreakerOptions] | None = None,
        default: BreakerOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._options = dict(options or {})
        self._default = default or BreakerOptions(timeout_ms=3000, failure_threshold=3, reset_ms=30_000)
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings) -> "CircuitBreakerRegistry":
        return cls(
            options={
                CLASSIFIER_BREAKER: BreakerOptions(
                    timeout_ms=settings.classifier_timeout_ms,
                    failure_threshold=settings.classifier_failure_threshold,
                    reset_ms=settings.classifier_reset_ms,
                ),
                NOTIFIER_BREAKER: BreakerOptions(
                    timeout_ms=settings.notifier_timeout_ms,
                    failure_threshold=settings.notifier_failure_threshold,
                    reset_ms=settings.notifier_reset_ms,
                ),
            }
        )

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            opts = self._options.get(name, self._default)
            breaker = CircuitBreaker(
                name,
                timeout_ms=opts.timeout_ms,
                failure_threshold=opts.failure_threshold,
                reset_ms=opts.reset_ms,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    def snapshot(self) -> list[dict]:
        return [breaker.snapshot() for breaker in self._breakers.values()]
