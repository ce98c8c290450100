# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import asyncio
from collections import defaultdict

from ..core.log import get_logger
from ..core.time import Clock, SystemClock
from .locks import LockRecord


class InMemoryLockBackend:
    """
    Single-process lock backend.

    Useful for tests and for serialising runs that share one host. Lease expiry
    is evaluated lazily against the injected clock on every call.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self.clock: Clock = clock or SystemClock()
        self._rows: dict[str, LockRecord] = {}
        self._counters: defaultdict[str, int] = defaultdict(int)
        self._mu = asyncio.Lock()
        self.log = get_logger("storage.memory")

    async def acquire(self, key: str, *, owner: str, token: str, ttl_ms: int) -> LockRecord | None:
        async with self._mu:
            now = self.clock.now_ms()
            cur = self._rows.get(key)
            if cur is not None and not cur.expired(now):
                return None
            if cur is not None:
                self.log.debug("lock.takeover_expired", event="lock.takeover_expired", key=key, prev_owner=cur.owner)
            rec = LockRecord(key=key, owner=owner, token=token, expires_at_ms=now + ttl_ms)
            self._rows[key] = rec
            return rec

    async def renew(self, key: str, *, token: str, ttl_ms: int) -> LockRecord | None:
        async with self._mu:
            now = self.clock.now_ms()
            cur = self._rows.get(key)
            if cur is None or cur.token != token or cur.expired(now):
                return None
            rec = LockRecord(key=key, owner=cur.owner, token=token, expires_at_ms=now + ttl_ms)
            self._rows[key] = rec
            return rec

    async def release(self, key: str, *, token: str) -> bool:
        async with self._mu:
            cur = self._rows.get(key)
            if cur is None or cur.token != token:
                return False
            del self._rows[key]
            # An expired lease that nobody took over is still reported as lapsed.
            return not cur.expired(self.clock.now_ms())

    async def get(self, key: str) -> LockRecord | None:
        return self._rows.get(key)

    async def incr(self, key: str) -> int:
        async with self._mu:
            self._counters[key] += 1
            return self._counters[key]
