# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

from .errors import (
    Cancelled,
    LeaseLost,
    LockBackendError,
    LockContention,
    MalformedInput,
    PermanentError,
    PermissionDenied,
    ProvisioningError,
    ProvkitError,
    ResourceAlreadyExists,
    RetriesExhausted,
    RetryableError,
    TransientExternalFailure,
)

__all__ = [
    "Cancelled",
    "LeaseLost",
    "LockBackendError",
    "LockContention",
    "MalformedInput",
    "PermanentError",
    "PermissionDenied",
    "ProvisioningError",
    "ProvkitError",
    "ResourceAlreadyExists",
    "RetriesExhausted",
    "RetryableError",
    "TransientExternalFailure",
]
