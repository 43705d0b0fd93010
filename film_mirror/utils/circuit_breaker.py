"""
Circuit breaker guarding calls to remote services (offstream.dk API, Vimeo player).
"""

import asyncio
import logging
import time
from enum import Enum

log = logging.getLogger(__name__)


class CircuitState(Enum):
    """States of the circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Raised when a call is refused because the circuit is open."""


class CircuitBreaker:
    """
    Stops hammering a remote service after repeated failures.

    Only exceptions listed in ``counted`` trip the breaker; anything else (such as
    a 404 for one missing video) passes through without affecting the state.

    States:
    - CLOSED: calls pass through
    - OPEN: calls are refused until ``recovery_timeout`` elapses
    - HALF_OPEN: calls pass; ``success_threshold`` successes close the circuit,
      a single failure reopens it
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        success_threshold: int = 1,
        counted: tuple[type[BaseException], ...] = (Exception,),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.counted = counted

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def _maybe_half_open(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        elapsed = time.monotonic() - self._opened_at
        if elapsed >= self.recovery_timeout:
            log.info(
                f"[yellow]{self.name}: testing recovery after {elapsed:.0f}s[/yellow]"
            )
            self._state = CircuitState.HALF_OPEN
            self._successes = 0

    async def record_success(self) -> None:
        async with self._lock:
            self._failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.success_threshold:
                    log.info(f"[green]✓ {self.name}: circuit closed.[/green]")
                    self._state = CircuitState.CLOSED

    async def record_failure(self) -> None:
        async with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED
                and self._failures >= self.failure_threshold
            ):
                log.error(
                    f"[red]✗ {self.name}: circuit opened after {self._failures} "
                    f"failure(s); refusing calls for {self.recovery_timeout:.0f}s.[/red]"
                )
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()
                self._failures = 0

    async def __aenter__(self):
        async with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                raise CircuitBreakerError(
                    f"{self.name} is unavailable; retrying after "
                    f"{self.recovery_timeout:.0f} seconds."
                )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            await self.record_success()
        elif issubclass(exc_type, self.counted):
            await self.record_failure()
        return False
