# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
provkit.core.time
=================

Clock abstractions:
- Clock Protocol for dependency-injection and testing.
- SystemClock: production default implementation.
- ManualClock: deterministic time control for tests.
"""

import asyncio
import time
from typing import Protocol

from .types import Millis, MonotonicMs, TimestampMs


class Clock(Protocol):
    """Minimal clock protocol used across the project."""

    def now_ms(self) -> TimestampMs: ...
    def mono_ms(self) -> MonotonicMs: ...
    async def sleep_ms(self, ms: Millis) -> None: ...


class SystemClock:
    """Default production/test clock backed by system time."""

    def now_ms(self) -> TimestampMs:
        """Epoch milliseconds from system clock (persistable)."""
        return time.time_ns() // 1_000_000

    def mono_ms(self) -> MonotonicMs:
        """Process-local monotonic milliseconds (not related to wall clock)."""
        return time.monotonic_ns() // 1_000_000

    async def sleep_ms(self, ms: Millis) -> None:
        """Async sleep for the given number of milliseconds."""
        await asyncio.sleep(max(0.0, ms / 1000.0))


class ManualClock(SystemClock):
    """
    Controllable clock for tests.

    - Wall time (`now_ms`) starts at `start_ms` and advances only via `advance()` or `sleep_ms`.
    - Monotonic time (`mono_ms`) mirrors wall time for simplicity.
    """

    def __init__(self, start_ms: Millis = 0) -> None:
        self._wall: Millis = start_ms
        self._mono: Millis = start_ms

    def now_ms(self) -> TimestampMs:
        return self._wall

    def mono_ms(self) -> MonotonicMs:
        return self._mono

    def advance(self, ms: Millis) -> None:
        inc = max(0, int(ms))
        self._wall += inc
        self._mono += inc

    async def sleep_ms(self, ms: Millis) -> None:
        # Fast-forward immediately, but still yield to the loop.
        self.advance(ms)
        await asyncio.sleep(0)
