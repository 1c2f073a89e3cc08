"""Tests for resilience patterns."""

from __future__ import annotations

import asyncio

import pytest

from coinquote.services.data_providers.resilience import (
    BreakerState,
    CooldownBreaker,
    RequestCoalescer,
    RequestRateCounter,
)


class TestCooldownBreaker:
    """Tests for the two-state cooldown breaker."""

    def test_initial_state_healthy(self, clock):
        breaker = CooldownBreaker(cooldown_seconds=120, name="test", clock=clock)
        assert breaker.state == BreakerState.HEALTHY
        assert breaker.is_healthy
        assert breaker.cooldown_until is None

    def test_trip_enters_cooldown(self, clock):
        breaker = CooldownBreaker(cooldown_seconds=120, name="test", clock=clock)

        breaker.trip("http_429")

        assert breaker.in_cooldown
        assert breaker.cooldown_until.timestamp() == clock.time() + 120

    def test_cooldown_expires(self, clock):
        breaker = CooldownBreaker(cooldown_seconds=120, name="test", clock=clock)
        breaker.trip("http_429")

        clock.advance(119)
        assert breaker.in_cooldown
        clock.advance(1)
        assert breaker.is_healthy

    def test_trip_during_cooldown_extends(self, clock):
        breaker = CooldownBreaker(cooldown_seconds=120, name="test", clock=clock)
        breaker.trip("http_429")
        clock.advance(100)

        breaker.trip("self_throttle")
        clock.advance(100)

        assert breaker.in_cooldown
        stats = breaker.get_stats()
        assert stats["trip_count"] == 2
        assert stats["last_reason"] == "self_throttle"
        assert stats["state"] == "cooldown"

    def test_reset(self, clock):
        breaker = CooldownBreaker(cooldown_seconds=120, name="test", clock=clock)
        breaker.trip("http_429")

        breaker.reset()

        assert breaker.is_healthy
        assert breaker.get_stats()["cooldown_until"] is None


class TestRequestRateCounter:
    def test_counts_inside_window(self, clock):
        counter = RequestRateCounter(window_seconds=60, clock=clock)
        counter.record()
        clock.advance(30)
        counter.record(2)

        assert counter.count() == 3

    def test_old_requests_roll_off(self, clock):
        counter = RequestRateCounter(window_seconds=60, clock=clock)
        counter.record()
        clock.advance(30)
        counter.record()
        clock.advance(30)

        assert counter.count() == 1
        clock.advance(30)
        assert counter.count() == 0


class TestRequestCoalescer:
    """Tests for request coalescing."""

    @pytest.mark.asyncio
    async def test_coalesces_concurrent_requests(self):
        coalescer = RequestCoalescer()
        call_count = 0

        async def slow_func():
            nonlocal call_count
            call_count += 1
            await asyncio.sleep(0.05)
            return "result"

        results = await asyncio.gather(
            coalescer.execute("key1", slow_func),
            coalescer.execute("key1", slow_func),
            coalescer.execute("key1", slow_func),
        )

        assert results == ["result", "result", "result"]
        assert call_count == 1
        assert coalescer.get_pending_count() == 0

    @pytest.mark.asyncio
    async def test_different_keys_not_coalesced(self):
        coalescer = RequestCoalescer()
        call_count = 0

        async def func():
            nonlocal call_count
            call_count += 1
            await asyncio.sleep(0.01)
            return call_count

        await asyncio.gather(
            coalescer.execute("key1", func),
            coalescer.execute("key2", func),
        )

        assert call_count == 2

    @pytest.mark.asyncio
    async def test_error_reaches_every_waiter(self):
        coalescer = RequestCoalescer()

        async def failing():
            await asyncio.sleep(0.01)
            raise ValueError("upstream broke")

        results = await asyncio.gather(
            coalescer.execute("key", failing),
            coalescer.execute("key", failing),
            return_exceptions=True,
        )

        assert all(isinstance(r, ValueError) for r in results)
        assert coalescer.get_pending_count() == 0

    @pytest.mark.asyncio
    async def test_sequential_calls_run_again(self):
        coalescer = RequestCoalescer()
        calls = []

        async def func():
            calls.append(1)
            return len(calls)

        assert await coalescer.execute("key", func) == 1
        assert await coalescer.execute("key", func) == 2
