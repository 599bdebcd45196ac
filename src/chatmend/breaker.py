"""
Thread-safe circuit breaker shared by every caller of one provider endpoint.

States: ``closed`` passes calls through; ``open`` rejects them without a
network attempt; ``half_open`` lets exactly one trial call through, whose
outcome closes or re-opens the circuit.

Construct one breaker per endpoint and hand it to each call site; there is no
module-level instance.
"""

import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def _as_datetime(ts: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(ts, timezone.utc) if ts is not None else None


class CircuitBreaker:
    """Fails fast after ``threshold`` consecutive failures.

    Parameters
    ----------
    threshold : int, default=5
        Consecutive failures that open the circuit.
    timeout : float, default=60.0
        Seconds the circuit stays open before allowing a half-open trial call.
    window : float, default=60.0
        Rolling window for the failure streak: a failure arriving more than
        ``window`` seconds after the previous one starts a new streak.
    name : str, default="provider"
        Label used in logs and errors.
    clock : callable, optional
        Returns the current time in epoch seconds. Defaults to ``time.time``.
    """

    def __init__(
        self,
        threshold: int = 5,
        timeout: float = 60.0,
        window: float = 60.0,
        name: str = "provider",
        clock: Optional[Callable[[], float]] = None,
    ):
        self.threshold = max(1, threshold)
        self.timeout = timeout
        self.window = window
        self.name = name
        self.clock = clock or time.time

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

        self._total_successes = 0
        self._total_failures = 0
        self._last_success_at: Optional[float] = None
        self._last_failure_at: Optional[float] = None
        # Only real calls move the streak clock; health checks never do.
        self._streak_failure_at: Optional[float] = None
        self._latencies: Deque[float] = deque(maxlen=50)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def _transition(self, expected: CircuitState, target: CircuitState) -> bool:
        # Caller holds the lock. A redundant transition is a no-op.
        if self._state != expected:
            return False
        self._state = target
        if target == CircuitState.OPEN:
            self._opened_at = self.clock()
            self._trial_in_flight = False
            logger.warning(
                "Circuit '%s' opened after %d consecutive failures",
                self.name,
                self._consecutive_failures,
            )
        elif target == CircuitState.CLOSED:
            self._opened_at = None
            self._trial_in_flight = False
            logger.info("Circuit '%s' closed", self.name)
        else:
            logger.info("Circuit '%s' half-open, allowing one trial call", self.name)
        return True

    def retry_after(self) -> float:
        with self._lock:
            if self._state != CircuitState.OPEN or self._opened_at is None:
                return 0.0
            return max(0.0, self._opened_at + self.timeout - self.clock())

    def allow_request(self) -> bool:
        """Claims permission for one call. Must be followed by a record_* call."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if self.clock() - self._opened_at < self.timeout:
                    return False
                self._transition(CircuitState.OPEN, CircuitState.HALF_OPEN)
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self, latency: Optional[float] = None) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._total_successes += 1
            self._last_success_at = self.clock()
            if latency is not None:
                self._latencies.append(latency)
            self._transition(CircuitState.HALF_OPEN, CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            now = self.clock()
            if (
                self._streak_failure_at is not None
                and now - self._streak_failure_at > self.window
            ):
                self._consecutive_failures = 0
            self._consecutive_failures += 1
            self._total_failures += 1
            self._streak_failure_at = now
            self._last_failure_at = now
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.HALF_OPEN, CircuitState.OPEN)
            elif self._consecutive_failures >= self.threshold:
                self._transition(CircuitState.CLOSED, CircuitState.OPEN)

    def release(self) -> None:
        """Gives back a claimed half-open trial slot without an outcome."""
        with self._lock:
            self._trial_in_flight = False

    def record_health_check(self, success: bool, latency: Optional[float] = None) -> None:
        """Records a health-check outcome.

        Health checks update the reporting counters only; they never touch the
        failure streak or the circuit state.
        """
        with self._lock:
            if success:
                self._total_successes += 1
                self._last_success_at = self.clock()
                if latency is not None:
                    self._latencies.append(latency)
            else:
                self._total_failures += 1
                self._last_failure_at = self.clock()

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Runs ``func`` under breaker protection; any exception counts as a failure."""
        if not self.allow_request():
            raise CircuitOpenError(self.name, self.retry_after())
        started = time.monotonic()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success(time.monotonic() - started)
        return result

    def status(self) -> Dict[str, Any]:
        with self._lock:
            total = self._total_successes + self._total_failures
            return {
                "name": self.name,
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "last_success_at": _as_datetime(self._last_success_at),
                "last_failure_at": _as_datetime(self._last_failure_at),
                "total_successes": self._total_successes,
                "total_failures": self._total_failures,
                "success_percentage": (
                    round(self._total_successes / total * 100, 2) if total else 100.0
                ),
                "average_latency_s": (
                    sum(self._latencies) / len(self._latencies)
                    if self._latencies
                    else 0.0
                ),
            }
