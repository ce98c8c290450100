# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
provkit.core.types
==================

Shared type aliases and small constants used across the codebase.
Keep this module **tiny** and dependency-free.
"""

from typing import Final

# ---- Time & IDs --------------------------------------------------------------

Millis = int
TimestampMs = int  # wall-clock epoch timestamp (ms)
MonotonicMs = int  # process-local monotonic time (ms)

# ---- Constants ---------------------------------------------------------------

# Default digest size used by stable_hash (BLAKE2b).
DEFAULT_BLAKE2_DIGEST_SIZE: Final[int] = 20

# NanoID defaults (URL-safe alphabet).
DEFAULT_NANOID_ALPHABET: Final[str] = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz-"
DEFAULT_NANOID_SIZE: Final[int] = 21

# S3 bucket naming limits.
BUCKET_NAME_MIN: Final[int] = 3
BUCKET_NAME_MAX: Final[int] = 63


__all__ = [
    "Millis",
    "TimestampMs",
    "MonotonicMs",
    "DEFAULT_BLAKE2_DIGEST_SIZE",
    "DEFAULT_NANOID_ALPHABET",
    "DEFAULT_NANOID_SIZE",
    "BUCKET_NAME_MIN",
    "BUCKET_NAME_MAX",
]
