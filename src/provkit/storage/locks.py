# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Lock backend interface (store-agnostic).

The distributed mutex never keeps "who holds the lock" in process memory; every
decision is a conditional write against a shared, consistent store:

- acquire  = create-if-absent-or-expired
- renew    = compare-token-and-extend (only while the lease is still valid)
- release  = compare-token-and-delete
- incr     = atomic counter (attempt ordinals)

Implementations may use DynamoDB, Redis, Postgres, etc.
"""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

__all__ = [
    "LockRecord",
    "LockBackend",
]


@dataclass(frozen=True)
class LockRecord:
    """
    Snapshot of a lock row as stored in the backend.

    Attributes:
        key: Lock name (global namespace within the store).
        owner: Holder identity (CI host/job plus run id).
        token: Opaque per-acquire token; must be presented to renew/release.
        expires_at_ms: Epoch milliseconds when the lease lapses.
    """

    key: str
    owner: str
    token: str
    expires_at_ms: int

    def expired(self, now_ms: int) -> bool:
        return self.expires_at_ms <= now_ms


@runtime_checkable
class LockBackend(Protocol):
    """
    Minimal async conditional-write store for leased locks.

    Notes:
        - A record whose lease has lapsed counts as absent for `acquire`.
        - `renew` and `release` match on token only; owner is informational.
        - Transient store errors surface as `TransientExternalFailure`.
    """

    async def acquire(self, key: str, *, owner: str, token: str, ttl_ms: int) -> LockRecord | None:
        """Grant the lock if vacant or expired; return the new record, or None if held by someone else."""
        ...

    async def renew(self, key: str, *, token: str, ttl_ms: int) -> LockRecord | None:
        """Extend a still-valid lease owned by `token`; None if the lease is gone or owned by another token."""
        ...

    async def release(self, key: str, *, token: str) -> bool:
        """Delete the lock if owned by `token`. Return False if it was already gone or taken over."""
        ...

    async def get(self, key: str) -> LockRecord | None:
        """Current record, if any (may be expired)."""
        ...

    async def incr(self, key: str) -> int:
        """Atomically increment the counter at `key` and return the new value."""
        ...
