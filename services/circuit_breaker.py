"""
Circuit Breaker Pattern for External Signal Calls
Stops hammering an unavailable provider; callers degrade instead of waiting
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict

from utils.exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Blocking calls due to failures
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """
    In-process circuit breaker

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests blocked until recovery_timeout passes
    - HALF_OPEN: One trial request; success closes, failure re-opens
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        recovery_timeout: float = 30.0,
        expected_exception: type = UpstreamUnavailable,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self._clock = clock
        self._lock = threading.Lock()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self.stats = {"total_calls": 0, "successful_calls": 0, "failed_calls": 0, "blocked_calls": 0}

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection"""
        with self._lock:
            self.stats["total_calls"] += 1
            if self.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self.state = CircuitState.HALF_OPEN
                    logger.info(f"Circuit {self.name} entering HALF_OPEN state")
                else:
                    self.stats["blocked_calls"] += 1
                    raise UpstreamUnavailable(f"Circuit breaker {self.name} is OPEN")

        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self._clock() - self.last_failure_time >= self.recovery_timeout

    def _on_success(self) -> None:
        with self._lock:
            self.stats["successful_calls"] += 1
            if self.state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit {self.name} recovered - now CLOSED")
            self.state = CircuitState.CLOSED
            self.failure_count = 0

    def _on_failure(self) -> None:
        with self._lock:
            self.stats["failed_calls"] += 1
            self.failure_count += 1
            self.last_failure_time = self._clock()
            if self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
                logger.warning(f"Circuit {self.name} failed in HALF_OPEN - returning to OPEN")
            elif self.failure_count >= self.failure_threshold and self.state == CircuitState.CLOSED:
                self.state = CircuitState.OPEN
                logger.warning(f"Circuit {self.name} OPENED after {self.failure_count} failures")

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "stats": dict(self.stats),
        }
