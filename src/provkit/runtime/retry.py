# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Bounded exponential backoff with jitter.

The retry wrapper is the only place in provkit that repeats a failed call.
Components raise; the coordinator decides which error kinds are worth retrying
by building a policy with the matching `retry_on` set.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ..api.errors import Cancelled, LockContention, RetriesExhausted, TransientExternalFailure
from ..core.log import get_logger
from ..core.time import Clock, SystemClock
from ..core.utils import backoff_ms

__all__ = ["RetryPolicy", "with_retry", "wait_or_cancel"]

T = TypeVar("T")

DEFAULT_RETRY_ON: tuple[type[BaseException], ...] = (TransientExternalFailure, LockContention)


async def wait_or_cancel(delay_ms: int, cancel: asyncio.Event | None, *, clock: Clock | None = None) -> None:
    """Sleep for `delay_ms`; raise Cancelled as soon as `cancel` is set."""
    clk = clock or SystemClock()
    if cancel is None:
        await clk.sleep_ms(delay_ms)
        return
    if cancel.is_set():
        raise Cancelled("cancelled")
    sleeper = asyncio.ensure_future(clk.sleep_ms(delay_ms))
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for t in (sleeper, waiter):
            if not t.done():
                t.cancel()
    if cancel.is_set():
        raise Cancelled("cancelled")


class RetryPolicy:
    """
    Usage:
        policy = RetryPolicy(max_attempts=5, base_delay_ms=1000, ceiling_ms=60_000)
        result = await policy.call(lambda: ensurer.ensure(kind, name), name="ensure.bucket")

    Delay before attempt n+1 is base_delay_ms * 2**(n-1) * f with f in [0.5, 1.5).
    A retry whose delay would cross `ceiling_ms` (measured from the first attempt)
    is not taken; RetriesExhausted is raised instead.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        base_delay_ms: int = 1000,
        ceiling_ms: int = 600_000,
        retry_on: tuple[type[BaseException], ...] = DEFAULT_RETRY_ON,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        on_retry: Callable[[str, int, BaseException, int], None] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_ms = max(0, int(base_delay_ms))
        self.ceiling_ms = max(0, int(ceiling_ms))
        self.retry_on = retry_on
        self.clock: Clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.on_retry = on_retry
        self.log = get_logger("runtime.retry")

    def delay_for(self, attempt: int) -> int:
        return backoff_ms(self.base_delay_ms, attempt, rng=self.rng)

    async def call(
        self,
        op: Callable[[], Awaitable[T]],
        *,
        name: str = "op",
        cancel: asyncio.Event | None = None,
    ) -> T:
        started = self.clock.mono_ms()
        attempt = 0
        while True:
            attempt += 1
            if cancel is not None and cancel.is_set():
                raise Cancelled(f"{name}: cancelled before attempt {attempt}")
            try:
                return await op()
            except self.retry_on as e:
                if attempt >= self.max_attempts:
                    raise RetriesExhausted(name, attempts=attempt, last_error=e) from e
                delay = self.delay_for(attempt)
                elapsed = self.clock.mono_ms() - started
                if elapsed + delay > self.ceiling_ms:
                    self.log.warning(
                        "retry.ceiling",
                        event="retry.ceiling",
                        op=name,
                        attempt=attempt,
                        elapsed_ms=elapsed,
                        next_delay_ms=delay,
                        ceiling_ms=self.ceiling_ms,
                    )
                    raise RetriesExhausted(name, attempts=attempt, last_error=e) from e
                self.log.info(
                    "retry.scheduled",
                    event="retry.scheduled",
                    op=name,
                    attempt=attempt,
                    delay_ms=delay,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if self.on_retry is not None:
                    self.on_retry(name, attempt, e, delay)
                await wait_or_cancel(delay, cancel, clock=self.clock)


async def with_retry(
    op: Callable[[], Awaitable[T]],
    max_attempts: int,
    base_delay_ms: int,
    *,
    ceiling_ms: int = 600_000,
    retry_on: tuple[type[BaseException], ...] = DEFAULT_RETRY_ON,
    cancel: asyncio.Event | None = None,
    name: str = "op",
) -> T:
    """Functional shortcut for a one-off RetryPolicy."""
    policy = RetryPolicy(
        max_attempts=max_attempts, base_delay_ms=base_delay_ms, ceiling_ms=ceiling_ms, retry_on=retry_on
    )
    return await policy.call(op, name=name, cancel=cancel)
