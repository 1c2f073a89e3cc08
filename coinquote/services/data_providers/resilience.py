"""
Resilience patterns for upstream API calls.

This module provides:
1. Cooldown Breaker - Route away from the primary feed after a rate-limit signal
2. Request Rate Counter - Rolling per-minute count used to self-throttle
3. Request Coalescing - Deduplicate concurrent requests for the same key

Usage:
    from coinquote.services.data_providers.resilience import (
        CooldownBreaker,
        RequestCoalescer,
        RequestRateCounter,
    )

    breaker = CooldownBreaker(cooldown_seconds=120, name="coingecko")
    if breaker.is_healthy:
        try:
            prices = await fetch_prices()
        except UpstreamRateLimitError:
            breaker.trip("http_429")

    counter = RequestRateCounter()
    counter.record()
    if counter.count() >= 240:
        breaker.trip("self_throttle")

    coalescer = RequestCoalescer()
    result = await coalescer.execute("learn:pengu", lambda: learn("pengu"))
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from coinquote.core.clock import Clock, system_clock
from coinquote.core.logging import get_logger

logger = get_logger("resilience")


# =============================================================================
# Cooldown Breaker
# =============================================================================


class BreakerState(Enum):
    """Cooldown breaker states."""

    HEALTHY = "healthy"  # Primary serves all traffic
    COOLDOWN = "cooldown"  # Eligible ids route to fallback


@dataclass
class CooldownBreaker:
    """
    Two-state breaker driven by rate-limit signals.

    States:
    - HEALTHY: primary feed serves everything
    - COOLDOWN: entered on a 429 / throttling marker or a self-throttle trip;
      leaves automatically once the cooldown deadline passes

    Tripping while already in cooldown extends the deadline.

    Args:
        cooldown_seconds: Fixed duration of the cooldown state
        name: Identifier for logging
        clock: Time source (injectable for tests)
    """

    cooldown_seconds: float = 120.0
    name: str = "breaker"
    clock: Clock = field(default=system_clock)

    # Internal state
    _cooldown_until: float | None = field(default=None, init=False)
    _last_reason: str | None = field(default=None, init=False)
    _trip_count: int = field(default=0, init=False)

    @property
    def state(self) -> BreakerState:
        """Current state (may transition from COOLDOWN back to HEALTHY)."""
        if self._cooldown_until is None:
            return BreakerState.HEALTHY
        if self.clock.time() >= self._cooldown_until:
            logger.info(f"[{self.name}] Cooldown expired, primary feed healthy again")
            self._cooldown_until = None
            return BreakerState.HEALTHY
        return BreakerState.COOLDOWN

    @property
    def is_healthy(self) -> bool:
        return self.state == BreakerState.HEALTHY

    @property
    def in_cooldown(self) -> bool:
        return self.state == BreakerState.COOLDOWN

    @property
    def cooldown_until(self) -> datetime | None:
        """Cooldown deadline, or None when healthy."""
        if self.in_cooldown and self._cooldown_until is not None:
            return datetime.fromtimestamp(self._cooldown_until, UTC)
        return None

    def trip(self, reason: str) -> None:
        """Enter (or extend) the cooldown state."""
        was_healthy = self.is_healthy
        self._cooldown_until = self.clock.time() + self.cooldown_seconds
        self._last_reason = reason
        self._trip_count += 1
        if was_healthy:
            logger.warning(
                f"[{self.name}] Cooldown for {self.cooldown_seconds:.0f}s ({reason})"
            )

    def reset(self) -> None:
        """Force back to healthy."""
        self._cooldown_until = None

    def get_stats(self) -> dict[str, Any]:
        """Get breaker statistics."""
        until = self.cooldown_until
        return {
            "name": self.name,
            "state": self.state.value,
            "cooldown_until": until.isoformat() if until else None,
            "last_reason": self._last_reason,
            "trip_count": self._trip_count,
        }


# =============================================================================
# Rolling request rate
# =============================================================================


class RequestRateCounter:
    """
    Rolling count of upstream requests over a fixed window.

    Keyed on clock seconds; old timestamps are pruned lazily on read and write.
    """

    def __init__(self, window_seconds: float = 60.0, clock: Clock = system_clock):
        self._window = window_seconds
        self._clock = clock
        self._stamps: deque[float] = deque()

    def _prune(self, now: float) -> None:
        cutoff = now - self._window
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()

    def record(self, n: int = 1) -> None:
        now = self._clock.time()
        self._prune(now)
        self._stamps.extend([now] * n)

    def count(self) -> int:
        self._prune(self._clock.time())
        return len(self._stamps)


# =============================================================================
# Request Coalescing
# =============================================================================


class RequestCoalescer:
    """
    Coalesces concurrent requests for the same resource.

    When multiple callers request the same key simultaneously, only one
    actual request is made and all callers receive the same result. A failure
    is delivered to every waiter.

    Usage:
        coalescer = RequestCoalescer()
        id_ = await coalescer.execute(f"learn:{ticker}", lambda: learn(ticker))
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[Any]] = {}

    async def execute(self, key: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """
        Execute function with request coalescing.

        Args:
            key: Unique identifier for the request
            func: Async callable to execute

        Returns:
            Result from func (either executed or coalesced)
        """
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._pending[key] = future
        try:
            result = await func()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
                # Mark retrieved so a waiter-less failure is not reported as unhandled
                future.exception()
            raise
        else:
            if not future.done():
                future.set_result(result)
            return result
        finally:
            self._pending.pop(key, None)

    def get_pending_count(self) -> int:
        """Return number of pending coalesced requests."""
        return len(self._pending)
