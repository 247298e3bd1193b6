"""
Circuit breaker shared by the database and Redis services.

Purpose
-------
Fail fast while a backing store is unavailable instead of letting every
login or cache read wait out its own timeout.

Circuit States
--------------
**CLOSED**: requests pass through; consecutive failures are counted and the
circuit opens once they reach the threshold.

**OPEN**: requests are rejected until the recovery timeout has elapsed since
the last failure, then the circuit moves to HALF_OPEN.

**HALF_OPEN**: a limited number of trial requests pass. One success closes
the circuit, one failure re-opens it.

Configuration
-------------
- Config.CIRCUIT_BREAKER_FAILURE_THRESHOLD (default: 5)
- Config.CIRCUIT_BREAKER_RECOVERY_TIMEOUT (seconds, default: 30)

Usage
-----
>>> breaker = CircuitBreaker("redis")
>>> if not await breaker.allow_request():
...     raise breaker.open_error()
>>> try:
...     result = await operation()
...     await breaker.record_success()
... except RedisError:
...     await breaker.record_failure()
...     raise
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from clerk.core.config.config import Config
from clerk.core.exceptions import CircuitBreakerError
from clerk.core.logging.logger import get_logger

logger = get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerMetrics:
    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    consecutive_failures: int
    total_requests: int
    rejected_requests: int


class CircuitBreaker:
    """Async circuit breaker guarded by an asyncio.Lock."""

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[float] = None,
        half_open_max_requests: int = 1,
    ) -> None:
        self.name = name
        self._failure_threshold = failure_threshold or Config.CIRCUIT_BREAKER_FAILURE_THRESHOLD
        self._recovery_timeout = (
            recovery_timeout
            if recovery_timeout is not None
            else float(Config.CIRCUIT_BREAKER_RECOVERY_TIMEOUT)
        )
        self._half_open_max_requests = half_open_max_requests

        self._state = CircuitState.CLOSED
        self._lock = asyncio.Lock()

        self._consecutive_failures = 0
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None

        self._total_requests = 0
        self._rejected_requests = 0
        self._half_open_in_flight = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    def retry_after(self) -> float:
        """Seconds until an OPEN circuit will admit a trial request."""
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return 0.0
        elapsed = time.monotonic() - self._last_failure_time
        return max(0.0, self._recovery_timeout - elapsed)

    def open_error(self) -> CircuitBreakerError:
        return CircuitBreakerError(self.name, self._consecutive_failures, self.retry_after())

    async def allow_request(self) -> bool:
        async with self._lock:
            self._total_requests += 1

            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self.retry_after() > 0:
                    self._rejected_requests += 1
                    return False
                self._transition(CircuitState.HALF_OPEN)

            if self._half_open_in_flight < self._half_open_max_requests:
                self._half_open_in_flight += 1
                return True

            self._rejected_requests += 1
            return False

    async def record_success(self) -> None:
        async with self._lock:
            self._success_count += 1
            self._consecutive_failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)

    async def record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            self._consecutive_failures += 1
            self._last_failure_time = time.monotonic()

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self._failure_threshold
            ):
                self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._half_open_in_flight = 0
        if new_state == CircuitState.CLOSED:
            self._consecutive_failures = 0

        log = logger.error if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker '{self.name}' {old_state.value} -> {new_state.value}",
            extra={
                "breaker": self.name,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "consecutive_failures": self._consecutive_failures,
                "recovery_timeout_seconds": self._recovery_timeout,
            },
        )

    def get_metrics(self) -> CircuitBreakerMetrics:
        return CircuitBreakerMetrics(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            consecutive_failures=self._consecutive_failures,
            total_requests=self._total_requests,
            rejected_requests=self._rejected_requests,
        )

    async def reset(self) -> None:
        """Force CLOSED; administrative and test use."""
        async with self._lock:
            self._transition(CircuitState.CLOSED)
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
