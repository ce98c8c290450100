# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Lock backend interface and implementations used by the distributed mutex.
"""

from .dynamodb import DynamoLockBackend
from .locks import LockBackend, LockRecord
from .memory import InMemoryLockBackend

__all__ = [
    "DynamoLockBackend",
    "InMemoryLockBackend",
    "LockBackend",
    "LockRecord",
]
