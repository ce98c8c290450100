# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Lease-based distributed mutex.

Responsibilities:
  - acquire: poll the backend's create-if-vacant write until granted or timed out.
  - release: compare-and-delete by token.
  - renew / LeaseKeeper: heartbeat the lease while a long critical section runs.

All lock state lives in the backend. A holder that dies without releasing is
superseded once its lease lapses; nothing here can make that happen sooner.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum

from ..api.errors import Cancelled, TransientExternalFailure
from ..core.log import get_logger, swallow
from ..core.time import Clock, SystemClock
from ..core.utils import jitter_ms
from ..storage.locks import LockBackend
from .retry import wait_or_cancel

__all__ = ["DistributedMutex", "LeaseKeeper", "LockHandle", "ReleaseResult", "TimedOut"]


@dataclass
class LockHandle:
    """An exclusively held lock. `expires_at_ms` moves forward on each renewal."""

    key: str
    holder: str
    token: str
    expires_at_ms: int
    acquired_at_ms: int = 0


@dataclass(frozen=True)
class TimedOut:
    """acquire() gave up; the lock was still held (by `holder`, if known)."""

    key: str
    waited_ms: int
    holder: str | None = None


class ReleaseResult(str, Enum):
    ack = "ack"
    already_expired = "already_expired"


class DistributedMutex:
    def __init__(
        self,
        backend: LockBackend,
        *,
        clock: Clock | None = None,
        poll_ms: int = 1000,
    ) -> None:
        self.backend = backend
        self.clock: Clock = clock or SystemClock()
        self.poll_ms = max(1, int(poll_ms))
        self.log = get_logger("runtime.mutex")

    async def acquire(
        self,
        key: str,
        lease_ms: int,
        timeout_ms: int,
        *,
        holder: str,
        cancel: asyncio.Event | None = None,
    ) -> LockHandle | TimedOut:
        """
        Block until the lock is granted or `timeout_ms` elapses.

        Returns TimedOut (never raises) on timeout. Raises Cancelled when `cancel`
        is set while waiting, and TransientExternalFailure when the backend is
        unreachable.
        """
        if lease_ms <= 0:
            raise ValueError("lease_ms must be positive")
        token = uuid.uuid4().hex
        started = self.clock.mono_ms()
        deadline = started + max(0, timeout_ms)
        last_holder: str | None = None
        polls = 0

        while True:
            if cancel is not None and cancel.is_set():
                raise Cancelled(f"cancelled while waiting for lock {key!r}")
            polls += 1
            rec = await self.backend.acquire(key, owner=holder, token=token, ttl_ms=lease_ms)
            now = self.clock.mono_ms()
            if rec is not None:
                self.log.info(
                    "mutex.acquired",
                    event="mutex.acquired",
                    key=key,
                    waited_ms=now - started,
                    polls=polls,
                    expires_at_ms=rec.expires_at_ms,
                )
                return LockHandle(
                    key=key,
                    holder=holder,
                    token=token,
                    expires_at_ms=rec.expires_at_ms,
                    acquired_at_ms=self.clock.now_ms(),
                )

            if polls == 1 or polls % 10 == 0:
                with swallow(logger=self.log, code="mutex.peek", msg="lock peek failed"):
                    cur = await self.backend.get(key)
                    if cur is not None:
                        if cur.owner != last_holder:
                            self.log.info("mutex.contended", event="mutex.contended", key=key, held_by=cur.owner)
                        last_holder = cur.owner

            remaining = deadline - now
            if remaining <= 0:
                self.log.warning(
                    "mutex.timed_out", event="mutex.timed_out", key=key, waited_ms=now - started, held_by=last_holder
                )
                return TimedOut(key=key, waited_ms=now - started, holder=last_holder)
            await wait_or_cancel(min(jitter_ms(self.poll_ms, pct=0.25, floor_ms=1), remaining), cancel, clock=self.clock)

    async def renew(self, handle: LockHandle, lease_ms: int) -> bool:
        """Extend the lease; False when it has lapsed or been taken over."""
        rec = await self.backend.renew(handle.key, token=handle.token, ttl_ms=lease_ms)
        if rec is None:
            return False
        handle.expires_at_ms = rec.expires_at_ms
        return True

    async def release(self, handle: LockHandle) -> ReleaseResult:
        ok = await self.backend.release(handle.key, token=handle.token)
        result = ReleaseResult.ack if ok else ReleaseResult.already_expired
        level = logging.INFO if ok else logging.WARNING
        self.log.log(level, "mutex.released", event="mutex.released", key=handle.key, result=result.value)
        return result


class LeaseKeeper:
    """
    Background heartbeat for a held lock.

        keeper = LeaseKeeper(mutex, handle, lease_ms=60_000, interval_ms=20_000)
        keeper.start()
        ...   # critical section; watch keeper.lost
        await keeper.stop()

    `lost` is set once the backend refuses a renewal (lease lapsed or taken over),
    or when transient errors keep renewals failing past the lease deadline.
    """

    def __init__(
        self,
        mutex: DistributedMutex,
        handle: LockHandle,
        *,
        lease_ms: int,
        interval_ms: int,
    ) -> None:
        self.mutex = mutex
        self.handle = handle
        self.lease_ms = lease_ms
        self.interval_ms = max(1, int(interval_ms))
        self.lost = asyncio.Event()
        self.renewals = 0
        self._task: asyncio.Task | None = None
        self.log = get_logger("runtime.lease")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name=f"lease:{self.handle.key}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        clock = self.mutex.clock
        while True:
            await clock.sleep_ms(self.interval_ms)
            try:
                ok = await self.mutex.renew(self.handle, self.lease_ms)
            except TransientExternalFailure as e:
                if clock.now_ms() >= self.handle.expires_at_ms:
                    self._declare_lost(f"renewals failing past lease deadline: {e}")
                    return
                self.log.warning("lease.renew.transient", event="lease.renew.transient", key=self.handle.key, error=str(e))
                continue
            except Exception as e:
                self._declare_lost(f"renewal error: {e!r}")
                return
            if not ok:
                self._declare_lost("lease lapsed or was taken over")
                return
            self.renewals += 1
            self.log.debug(
                "lease.renewed",
                event="lease.renewed",
                key=self.handle.key,
                expires_at_ms=self.handle.expires_at_ms,
                renewals=self.renewals,
            )

    def _declare_lost(self, why: str) -> None:
        self.log.error("lease.lost", event="lease.lost", key=self.handle.key, reason=why)
        self.lost.set()
