"""Tests for CircuitBreaker and CircuitBreakerRegistry."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FakeClock
from stage_recall.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from stage_recall.config import CircuitBreakerConfig
from stage_recall.models import BreakerState


def _fallback():
    return "fallback"


@pytest.fixture
def breaker(fake_clock):
    return CircuitBreaker("detector", CircuitBreakerConfig(), clock=fake_clock)


async def _fail_times(breaker: CircuitBreaker, times: int) -> None:
    failing = AsyncMock(side_effect=RuntimeError("boom"))
    for _ in range(times):
        assert await breaker.call(failing, _fallback) == "fallback"


# ---------------------------------------------------------------------------
# Closed state
# ---------------------------------------------------------------------------


class TestClosed:
    @pytest.mark.asyncio
    async def test_success_passes_through(self, breaker):
        func = AsyncMock(return_value="ok")
        assert await breaker.call(func, _fallback) == "ok"
        assert breaker.state == BreakerState.CLOSED
        assert breaker.snapshot().successes == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, breaker):
        async def slow():
            await asyncio.sleep(1.0)
            return "late"

        assert await breaker.call(slow, _fallback, timeout=0.01) == "fallback"
        snap = breaker.snapshot()
        assert snap.timeouts == 1
        assert snap.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, breaker):
        await _fail_times(breaker, 2)
        await breaker.call(AsyncMock(return_value="ok"), _fallback)
        await _fail_times(breaker, 2)

        assert breaker.state == BreakerState.CLOSED
        assert breaker.snapshot().consecutive_failures == 2


# ---------------------------------------------------------------------------
# Open and half-open
# ---------------------------------------------------------------------------


class TestOpen:
    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_skips(self, breaker):
        await _fail_times(breaker, 3)
        assert breaker.state == BreakerState.OPEN

        func = AsyncMock(return_value="ok")
        assert await breaker.call(func, _fallback) == "fallback"
        func.assert_not_awaited()

        snap = breaker.snapshot()
        assert snap.skipped == 1
        assert snap.calls == 4
        assert snap.failures == 3

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(self, breaker, fake_clock):
        await _fail_times(breaker, 3)
        fake_clock.advance(31)
        assert breaker.state == BreakerState.HALF_OPEN

        assert await breaker.call(AsyncMock(return_value="ok"), _fallback) == "ok"
        assert breaker.state == BreakerState.CLOSED
        assert breaker.snapshot().consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_half_open_trial_failure_reopens(self, breaker, fake_clock):
        await _fail_times(breaker, 3)
        fake_clock.advance(31)

        await _fail_times(breaker, 1)
        assert breaker.state == BreakerState.OPEN
        assert breaker.snapshot().open_until == pytest.approx(fake_clock.now + 30)

    @pytest.mark.asyncio
    async def test_opens_after_consecutive_timeouts(self, breaker):
        async def slow():
            await asyncio.sleep(1.0)
            return "late"

        for _ in range(3):
            assert await breaker.call(slow, _fallback, timeout=0.01) == "fallback"
        assert breaker.state == BreakerState.OPEN

        func = AsyncMock(return_value="ok")
        assert await breaker.call(func, _fallback) == "fallback"
        func.assert_not_awaited()

        snap = breaker.snapshot()
        assert snap.timeouts == 3
        assert snap.skipped == 1

    @pytest.mark.asyncio
    async def test_cancelled_trial_does_not_wedge_breaker(self, breaker, fake_clock):
        await _fail_times(breaker, 3)
        fake_clock.advance(31)

        started = asyncio.Event()

        async def hanging():
            started.set()
            await asyncio.sleep(3600)

        trial = asyncio.create_task(breaker.call(hanging, _fallback, timeout=3600))
        await started.wait()
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        fake_clock.advance(3600)
        assert await breaker.call(AsyncMock(return_value="ok"), _fallback) == "ok"
        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_closes(self, breaker):
        await _fail_times(breaker, 3)
        await breaker.reset()
        assert breaker.state == BreakerState.CLOSED


class TestRegistry:
    def test_get_returns_same_breaker(self):
        registry = CircuitBreakerRegistry()
        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")

    @pytest.mark.asyncio
    async def test_registries_do_not_share_state(self):
        first = CircuitBreakerRegistry(clock=FakeClock())
        second = CircuitBreakerRegistry(clock=FakeClock())
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        for _ in range(3):
            await first.call("detector", failing, _fallback)

        assert first.get("detector").state == BreakerState.OPEN
        assert second.get("detector").state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_snapshot_keyed_by_name(self):
        registry = CircuitBreakerRegistry()
        await registry.call("detector", AsyncMock(return_value=1), _fallback)
        snapshot = registry.snapshot()

        assert set(snapshot) == {"detector"}
        assert snapshot["detector"].calls == 1
