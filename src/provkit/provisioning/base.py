# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

from enum import Enum


class ResourceKind(str, Enum):
    workspace = "workspace"
    bucket = "bucket"


class ResourceProvider:
    """
    Adapter over one kind of external resource.

    `create` raises ResourceAlreadyExists when the external system reports the
    name as taken by us, TransientExternalFailure on throttling/timeouts and a
    PermanentError subclass for anything retrying cannot fix.
    """

    kind: ResourceKind

    async def exists(self, name: str) -> bool:
        raise NotImplementedError

    async def create(self, name: str) -> None:
        raise NotImplementedError

    async def select(self, name: str) -> None:
        """Make `name` the active resource for the following action (no-op by default)."""
        return None

    async def delete(self, name: str) -> bool:
        """Remove the resource; False if it was already absent."""
        raise NotImplementedError
