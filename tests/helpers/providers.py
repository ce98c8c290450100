from __future__ import annotations

import asyncio
from collections import Counter

from provkit.api.errors import ResourceAlreadyExists
from provkit.provisioning.base import ResourceKind, ResourceProvider


class FakeProvider(ResourceProvider):
    """
    In-memory provider with per-operation call counters.

    `errors` maps an operation name (exists/create/select/delete) to exceptions
    raised once each, in order, before the operation succeeds.
    """

    def __init__(
        self,
        kind: ResourceKind,
        *,
        existing=(),
        errors: dict[str, list[BaseException]] | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self.kind = kind
        self.names: set[str] = set(existing)
        self.selected: str | None = None
        self.errors = {op: list(errs) for op, errs in (errors or {}).items()}
        self.delay_s = delay_s
        self.calls: Counter[str] = Counter()

    async def _step(self, op: str) -> None:
        self.calls[op] += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        queue = self.errors.get(op)
        if queue:
            raise queue.pop(0)

    async def exists(self, name: str) -> bool:
        await self._step("exists")
        return name in self.names

    async def create(self, name: str) -> None:
        await self._step("create")
        if name in self.names:
            raise ResourceAlreadyExists(f"{self.kind.value} {name} already exists")
        self.names.add(name)

    async def select(self, name: str) -> None:
        await self._step("select")
        self.selected = name

    async def delete(self, name: str) -> bool:
        await self._step("delete")
        if name not in self.names:
            return False
        self.names.discard(name)
        return True


def fake_providers(**kw) -> dict[ResourceKind, FakeProvider]:
    return {
        ResourceKind.workspace: FakeProvider(ResourceKind.workspace, **kw),
        ResourceKind.bucket: FakeProvider(ResourceKind.bucket, **kw),
    }
