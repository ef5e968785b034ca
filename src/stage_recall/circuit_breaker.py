"""Circuit breakers for fast external calls.

A breaker wraps one external dependency (e.g. the reference-detection
classifier). While closed, calls go through under a timeout. After
``failure_threshold`` consecutive failures or timeouts it opens for
``cooldown_seconds``; during that window callers get their fallback
immediately. When the cooldown expires a single trial call is let through
(half-open): success closes the breaker, failure reopens it.

Breakers live in a :class:`CircuitBreakerRegistry` owned by the caller and
injected where needed, so tests and separate deployments never share state.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from .config import CircuitBreakerConfig
from .models import BreakerState, CircuitBreakerState

T = TypeVar("T")

Clock = Callable[[], float]


class CircuitBreaker:
    """Breaker for a single named dependency."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = asyncio.Lock()

        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._open_until: float | None = None
        self._trial_in_flight = False

        self._calls = 0
        self._successes = 0
        self._failures = 0
        self._timeouts = 0
        self._skipped = 0

    @property
    def state(self) -> BreakerState:
        if (
            self._state == BreakerState.OPEN
            and self._open_until is not None
            and self._clock() >= self._open_until
        ):
            return BreakerState.HALF_OPEN
        return self._state

    async def call(
        self,
        func: Callable[[], Awaitable[T]],
        fallback: Callable[[], T],
        timeout: float | None = None,
    ) -> T:
        """Run ``func`` through the breaker.

        Args:
            func: Zero-argument coroutine factory for the external call
            fallback: Factory for the safe value returned on skip or failure
            timeout: Per-call timeout, defaults to ``config.timeout_seconds``

        Returns:
            The call's result, or ``fallback()`` when skipped or failed
        """
        if not await self._admit():
            return fallback()

        timeout = timeout if timeout is not None else self.config.timeout_seconds
        try:
            result = await asyncio.wait_for(func(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.name}] call timed out after {timeout}s")
            await self._record_failure(timed_out=True)
            return fallback()
        except asyncio.CancelledError:
            self._release_trial()
            raise
        except Exception as e:
            logger.warning(f"[{self.name}] call failed: {e}")
            await self._record_failure(timed_out=False)
            return fallback()

        await self._record_success()
        return result

    async def _admit(self) -> bool:
        async with self._lock:
            self._calls += 1
            if self._state == BreakerState.OPEN:
                if self._open_until is not None and self._clock() < self._open_until:
                    self._skipped += 1
                    logger.debug(f"[{self.name}] breaker open, using fallback")
                    return False
                self._state = BreakerState.HALF_OPEN
                self._trial_in_flight = False
                logger.info(f"[{self.name}] cooldown elapsed, breaker half-open")

            if self._state == BreakerState.HALF_OPEN:
                if self._trial_in_flight:
                    self._skipped += 1
                    return False
                self._trial_in_flight = True
            return True

    def _release_trial(self) -> None:
        if self._trial_in_flight:
            logger.debug(f"[{self.name}] trial call cancelled, next call retries")
        self._trial_in_flight = False

    async def _record_success(self) -> None:
        async with self._lock:
            self._successes += 1
            self._consecutive_failures = 0
            if self._state != BreakerState.CLOSED:
                logger.info(f"[{self.name}] trial call succeeded, breaker closed")
            self._state = BreakerState.CLOSED
            self._open_until = None
            self._trial_in_flight = False

    async def _record_failure(self, timed_out: bool) -> None:
        async with self._lock:
            if timed_out:
                self._timeouts += 1
            else:
                self._failures += 1
            self._consecutive_failures += 1
            self._trial_in_flight = False

            if (
                self._state == BreakerState.HALF_OPEN
                or self._consecutive_failures >= self.config.failure_threshold
            ):
                self._state = BreakerState.OPEN
                self._open_until = self._clock() + self.config.cooldown_seconds
                logger.warning(
                    f"[{self.name}] breaker opened after "
                    f"{self._consecutive_failures} consecutive failures "
                    f"(cooldown {self.config.cooldown_seconds}s)"
                )

    async def reset(self) -> None:
        async with self._lock:
            self._state = BreakerState.CLOSED
            self._consecutive_failures = 0
            self._open_until = None
            self._trial_in_flight = False

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            name=self.name,
            state=self.state,
            consecutive_failures=self._consecutive_failures,
            open_until=self._open_until,
            calls=self._calls,
            successes=self._successes,
            failures=self._failures,
            timeouts=self._timeouts,
            skipped=self._skipped,
        )


class CircuitBreakerRegistry:
    """Named breakers sharing one configuration and clock."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self.config, self._clock)
            self._breakers[name] = breaker
        return breaker

    async def call(
        self,
        name: str,
        func: Callable[[], Awaitable[T]],
        fallback: Callable[[], T],
        timeout: float | None = None,
    ) -> T:
        return await self.get(name).call(func, fallback, timeout=timeout)

    async def reset(self) -> None:
        for breaker in self._breakers.values():
            await breaker.reset()

    def snapshot(self) -> dict[str, CircuitBreakerState]:
        return {name: b.snapshot() for name, b in self._breakers.items()}
