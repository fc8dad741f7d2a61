"""
Circuit breaker for protected resources.

After ``threshold`` consecutive failures the breaker opens and rejects calls
for ``timeout`` seconds. The first call after the cooldown is let through in
HALF_OPEN; its result decides whether the breaker closes or opens again.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

from workflow_engine.domain import CircuitOpenError, CircuitState

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time snapshot of a breaker."""
    name: str
    state: CircuitState
    failure_count: int
    last_failure_time: Optional[float]
    threshold: int
    timeout: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "threshold": self.threshold,
            "timeout": self.timeout,
        }


class CircuitBreaker:
    """
    Thread-safe circuit breaker guarding a single resource.

    The lock only protects the breaker's own fields; it is never held while
    the protected action runs.
    """

    def __init__(
        self,
        name: str,
        threshold: int = 5,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.name = name
        self.threshold = threshold
        self.timeout = timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def execute(self, action: Callable[[], T]) -> T:
        """
        Run ``action`` through the breaker.

        Raises CircuitOpenError without calling the action while the breaker
        is open and the cooldown has not elapsed. Any exception raised by the
        action is counted and re-raised unchanged.
        """
        self._before_call()
        try:
            result = action()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def get_state(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                last_failure_time=self._last_failure_time,
                threshold=self.threshold,
                timeout=self.timeout,
            )

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit breaker '{self.name}' reset to CLOSED")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None

    def _before_call(self) -> None:
        with self._lock:
            if self._state != CircuitState.OPEN:
                return

            elapsed = self._clock() - (self._last_failure_time or 0.0)
            if elapsed <= self.timeout:
                raise CircuitOpenError(self.name, retry_after=self.timeout - elapsed)

            self._state = CircuitState.HALF_OPEN
            logger.info(
                f"Circuit breaker '{self.name}' HALF_OPEN after {elapsed:.1f}s cooldown"
            )

    def _on_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit breaker '{self.name}' CLOSED after successful call")
            self._failure_count = 0
            self._state = CircuitState.CLOSED

    def _on_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._failure_count >= self.threshold and self._state != CircuitState.OPEN:
                self._state = CircuitState.OPEN
                logger.error(
                    f"Circuit breaker '{self.name}' OPENED after "
                    f"{self._failure_count} consecutive failures, "
                    f"cooldown {self.timeout}s"
                )
