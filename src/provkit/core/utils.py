# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
provkit.core.utils
==================

Low-level helpers with **no external dependencies**:
- Stable hashing for JSON-like payloads.
- Jitter utilities for backoff/randomization.
- NanoID generator (URL-safe, crypto-strong).
"""

import json
import random
from hashlib import blake2b
from secrets import choice, randbelow
from typing import Any

from .types import DEFAULT_BLAKE2_DIGEST_SIZE, DEFAULT_NANOID_ALPHABET, DEFAULT_NANOID_SIZE


def stable_hash(payload: Any, *, digest_size: int = DEFAULT_BLAKE2_DIGEST_SIZE) -> str:
    """
    Compute a stable hash of an arbitrary JSON-like payload.
    - Uses UTF-8 JSON with sorted keys and no whitespace for deterministic encoding.
    - BLAKE2b with configurable digest size (default 20 bytes -> 40 hex chars).

    NOTE: This is **not** a cryptographic signature; use it for naming suffixes, cache keys, etc.
    """
    data = json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
    return blake2b(data, digest_size=digest_size).hexdigest()


def jitter_ms(base_ms: int, *, pct: float = 0.20, floor_ms: int = 0) -> int:
    """
    Apply symmetric jitter around base value:
        result = base_ms + delta, where delta ∈ [-base_ms*pct, +base_ms*pct]

    Examples:
        jitter_ms(1000) -> value in [800..1200] by default
        jitter_ms(1000, pct=0.5) -> [500..1500]
    """
    if base_ms <= 0 or pct <= 0:
        return max(floor_ms, base_ms)
    span = int(base_ms * pct)
    delta = randbelow(2 * span + 1) - span
    return max(floor_ms, base_ms + delta)


def backoff_ms(base_ms: int, attempt: int, *, rng: random.Random | None = None) -> int:
    """
    Exponential backoff with multiplicative jitter for the given 1-based attempt:

        base_ms * 2**(attempt - 1) * f,  f ∈ [0.5, 1.5)
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    r = rng or random
    factor = 0.5 + r.random()
    return max(0, int(base_ms * (2 ** (attempt - 1)) * factor))


def nanoid(size: int = DEFAULT_NANOID_SIZE, alphabet: str = DEFAULT_NANOID_ALPHABET) -> str:
    """Generate a URL-safe NanoID (cryptographically strong)."""
    if size <= 0:
        raise ValueError("size must be positive")
    if not alphabet:
        raise ValueError("alphabet must be a non-empty string")
    return "".join(choice(alphabet) for _ in range(size))
