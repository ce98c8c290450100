# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from ..api.errors import PermanentError, ResourceAlreadyExists
from ..core.log import get_logger
from ..provisioning.base import ResourceKind, ResourceProvider

__all__ = ["EnsureOutcome", "EnsureStatus", "ResourceEnsurer"]


class EnsureStatus(str, Enum):
    existed = "existed"
    created = "created"
    failed = "failed"


@dataclass(frozen=True)
class EnsureOutcome:
    kind: ResourceKind
    name: str
    status: EnsureStatus
    reason: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not EnsureStatus.failed


class ResourceEnsurer:
    """
    Create-or-select for managed resources.

    Repeated calls with the same name are side-effect free after the first
    successful creation. TransientExternalFailure propagates so the caller's
    retry policy can back off; permanent errors become a `failed` outcome.
    """

    def __init__(self, providers: Mapping[ResourceKind, ResourceProvider]) -> None:
        self.providers = dict(providers)
        self.log = get_logger("runtime.ensurer")

    def _provider(self, kind: ResourceKind) -> ResourceProvider:
        try:
            return self.providers[kind]
        except KeyError:
            raise LookupError(f"no provider registered for {kind.value}") from None

    async def ensure(self, kind: ResourceKind, name: str) -> EnsureOutcome:
        provider = self._provider(kind)
        try:
            if await provider.exists(name):
                status = EnsureStatus.existed
            else:
                try:
                    await provider.create(name)
                    status = EnsureStatus.created
                except ResourceAlreadyExists:
                    # Lost a create race against another run; theirs is ours.
                    status = EnsureStatus.existed
            await provider.select(name)
        except PermanentError as e:
            self.log.error(
                "ensure.failed", event="ensure.failed", kind=kind.value, resource=name, reason=e.reason, error=str(e)
            )
            return EnsureOutcome(kind=kind, name=name, status=EnsureStatus.failed, reason=e.reason, error=str(e))

        self.log.info("ensure.done", event="ensure.done", kind=kind.value, resource=name, status=status.value)
        return EnsureOutcome(kind=kind, name=name, status=status)

    async def remove(self, kind: ResourceKind, name: str) -> bool:
        """Delete a managed resource; a missing resource is not an error."""
        removed = await self._provider(kind).delete(name)
        self.log.log(
            logging.INFO if removed else logging.DEBUG,
            "ensure.removed",
            event="ensure.removed",
            kind=kind.value,
            resource=name,
            removed=removed,
        )
        return removed
