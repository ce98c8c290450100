import asyncio

import pytest

from provkit.core.time import ManualClock
from provkit.storage import InMemoryLockBackend, LockBackend

pytestmark = [pytest.mark.unit]


@pytest.fixture
def clock():
    return ManualClock(start_ms=1_000_000)


@pytest.fixture
def backend(clock):
    return InMemoryLockBackend(clock=clock)


def test_satisfies_protocol(backend):
    assert isinstance(backend, LockBackend)


@pytest.mark.asyncio
async def test_acquire_is_exclusive_until_release(backend):
    a = await backend.acquire("k", owner="a", token="ta", ttl_ms=1000)
    assert a is not None and a.owner == "a"
    assert await backend.acquire("k", owner="b", token="tb", ttl_ms=1000) is None
    assert await backend.release("k", token="ta") is True
    b = await backend.acquire("k", owner="b", token="tb", ttl_ms=1000)
    assert b is not None and b.owner == "b"


@pytest.mark.asyncio
async def test_no_takeover_before_expiry_then_takeover_after(backend, clock):
    await backend.acquire("k", owner="a", token="ta", ttl_ms=1000)
    clock.advance(999)
    assert await backend.acquire("k", owner="b", token="tb", ttl_ms=1000) is None
    clock.advance(1)
    rec = await backend.acquire("k", owner="b", token="tb", ttl_ms=1000)
    assert rec is not None and rec.token == "tb"
    # the superseded holder can neither renew nor release
    assert await backend.renew("k", token="ta", ttl_ms=1000) is None
    assert await backend.release("k", token="ta") is False
    assert (await backend.get("k")).owner == "b"


@pytest.mark.asyncio
async def test_renew_extends_only_live_lease(backend, clock):
    await backend.acquire("k", owner="a", token="ta", ttl_ms=1000)
    clock.advance(600)
    rec = await backend.renew("k", token="ta", ttl_ms=1000)
    assert rec is not None and rec.expires_at_ms == clock.now_ms() + 1000
    clock.advance(1000)
    assert await backend.renew("k", token="ta", ttl_ms=1000) is None


@pytest.mark.asyncio
async def test_release_after_lapse_reports_expired(backend, clock):
    await backend.acquire("k", owner="a", token="ta", ttl_ms=100)
    clock.advance(500)
    assert await backend.release("k", token="ta") is False
    assert await backend.get("k") is None


@pytest.mark.asyncio
async def test_keys_are_independent(backend):
    assert await backend.acquire("k1", owner="a", token="t1", ttl_ms=1000)
    assert await backend.acquire("k2", owner="b", token="t2", ttl_ms=1000)


@pytest.mark.asyncio
async def test_concurrent_acquire_grants_exactly_one(backend):
    results = await asyncio.gather(
        *(backend.acquire("k", owner=f"o{i}", token=f"t{i}", ttl_ms=1000) for i in range(20))
    )
    assert sum(r is not None for r in results) == 1


@pytest.mark.asyncio
async def test_incr_counts_per_key(backend):
    assert [await backend.incr("c") for _ in range(3)] == [1, 2, 3]
    assert await backend.incr("other") == 1
