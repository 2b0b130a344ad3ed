"""
Retry policy and circuit breaker used around every upstream call.

They compose: the retry policy invokes an operation that itself goes through an
endpoint's circuit breaker, so an open circuit fails the attempt immediately
(`CircuitOpenError`) instead of hitting the network, and the next attempt can
pick another endpoint.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from ..domain.errors import CircuitOpenError, NoHealthyEndpointError
from ..domain.value_types import CircuitState

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class RetryState:
    attempt: int = 0
    next_delay: float = 0.0
    last_error: BaseException | None = None


class RetryPolicy:
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        *,
        jitter: float = 0.0,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        give_up_on: tuple[type[BaseException], ...] = (NoHealthyEndpointError,),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay < 0 or max_delay < base_delay:
            raise ValueError("need 0 <= base_delay <= max_delay")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.retry_on = retry_on
        self.give_up_on = give_up_on
        self._sleep = sleep
        self._rng = rng or random.Random()

    def compute_delay(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (0-based): base * 2**attempt, capped."""
        delay = self.base_delay * (2 ** attempt)
        if self.jitter:
            delay += self._rng.uniform(0, self.jitter)
        return min(delay, self.max_delay)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str = "operation",
        on_retry: Callable[[RetryState], None] | None = None,
    ) -> T:
        state = RetryState()
        while True:
            try:
                return await operation()
            except self.give_up_on:
                raise
            except self.retry_on as e:
                state.last_error = e
                state.attempt += 1
                if state.attempt >= self.max_attempts:
                    log.warning("%s failed after %d attempt(s): %s", label, state.attempt, e)
                    raise
                state.next_delay = self.compute_delay(state.attempt - 1)
                log.debug("%s attempt %d/%d failed (%s); retrying in %.2fs",
                          label, state.attempt, self.max_attempts, e, state.next_delay)
                if on_retry is not None:
                    on_retry(state)
                await self._sleep(state.next_delay)


class CircuitBreaker:
    """
    CLOSED -> OPEN after `threshold` consecutive failures.
    OPEN -> HALF_OPEN once `cooldown` seconds have passed (evaluated lazily).
    HALF_OPEN admits a single probe: success closes, failure re-opens.
    """

    def __init__(
        self,
        name: str,
        threshold: int = 5,
        cooldown: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.name = name
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self._state = CircuitState.CLOSED
        self.failures = 0
        self.open_until = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._clock() >= self.open_until:
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
            log.info("circuit %s half-open after cool-down", self.name)
        return self._state

    def allows_request(self) -> bool:
        st = self.state
        if st is CircuitState.CLOSED:
            return True
        return st is CircuitState.HALF_OPEN and not self._probe_in_flight

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        st = self.state
        if st is CircuitState.OPEN:
            raise CircuitOpenError(self.name, max(0.0, self.open_until - self._clock()))
        probing = st is CircuitState.HALF_OPEN
        if probing:
            if self._probe_in_flight:
                raise CircuitOpenError(self.name)
            self._probe_in_flight = True
        try:
            result = await operation()
        except Exception:
            self.on_failure()
            raise
        finally:
            if probing:
                self._probe_in_flight = False
        self.on_success()
        return result

    def on_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            log.info("circuit %s closed", self.name)
        self.failures = 0
        self._state = CircuitState.CLOSED
        self.open_until = 0.0

    def on_failure(self) -> None:
        self.failures += 1
        if self._state is CircuitState.HALF_OPEN or self.failures >= self.threshold:
            self._trip()

    def _trip(self) -> None:
        if self._state is not CircuitState.OPEN:
            log.warning("circuit %s opened after %d failure(s)", self.name, self.failures)
        self._state = CircuitState.OPEN
        self.open_until = self._clock() + self.cooldown

    def get_state(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self.failures,
            "open_until": self.open_until,
        }

    def reset(self) -> None:
        self.failures = 0
        self._state = CircuitState.CLOSED
        self.open_until = 0.0
        self._probe_in_flight = False
