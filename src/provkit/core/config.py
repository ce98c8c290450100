# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
provkit.core.config
===================

Strongly-typed coordinator configuration.
- Optional JSON file loading, then PROVKIT_* env overrides, then explicit overrides.
- Derives millisecond fields from seconds to avoid repeated conversions.

If a config file path is not provided or not found, sane defaults are used.
"""

import json
import os
import socket
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from ..api.errors import MalformedInput

_ENV_PREFIX = "PROVKIT_"


def _try_load_json(path: Path | None) -> dict[str, Any]:
    if not path or not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise MalformedInput(f"config file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedInput(f"config file {path} must contain a JSON object")
    return data


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def _default_holder_id() -> str:
    # CI runners usually expose a job identity; fall back to the host name.
    for var in ("CI_JOB_ID", "BUILD_TAG", "GITHUB_RUN_ID"):
        v = os.getenv(var)
        if v:
            return f"{socket.gethostname()}:{v}"
    return f"{socket.gethostname()}:{os.getpid()}"


# ---------------------------------------------------------------------------


@dataclass
class CoordinatorConfig:
    """Run coordinator configuration with derived millisecond fields."""

    # ---- Identity
    holder_id: str = ""

    # ---- Lease / lock (seconds)
    lease_ttl_sec: float = 60.0
    renew_interval_sec: float = 0.0  # 0 -> lease_ttl_sec / 3
    lock_timeout_sec: float = 300.0
    lock_poll_sec: float = 1.0
    release_timeout_sec: float = 10.0

    # ---- Retry policy
    retry_on_contention: bool = False
    retry_max_attempts: int = 5
    retry_base_delay_sec: float = 1.0
    retry_ceiling_sec: float = 600.0

    # ---- Naming
    lock_key_fmt: str = "provkit/lock/{fingerprint}"
    workspace_name_fmt: str = "{fingerprint}"
    bucket_name_fmt: str = "{fingerprint}"

    # ---- Derived (ms)
    lease_ttl_ms: int = 0
    renew_interval_ms: int = 0
    lock_timeout_ms: int = 0
    lock_poll_ms: int = 0
    release_timeout_ms: int = 0
    retry_base_delay_ms: int = 0
    retry_ceiling_ms: int = 0

    # ---- Methods ------------------------------------------------------------

    def __post_init__(self) -> None:
        if not self.holder_id:
            self.holder_id = _default_holder_id()
        if self.lease_ttl_sec <= 0:
            raise ValueError("lease_ttl_sec must be positive")
        if self.renew_interval_sec < 0:
            raise ValueError("renew_interval_sec must be non-negative")
        if self.renew_interval_sec and self.renew_interval_sec >= self.lease_ttl_sec:
            raise ValueError("renew_interval_sec must be shorter than lease_ttl_sec")
        if self.lock_timeout_sec < 0:
            raise ValueError("lock_timeout_sec must be non-negative")
        if self.lock_poll_sec <= 0:
            raise ValueError("lock_poll_sec must be positive")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        for name in ("lock_key_fmt", "workspace_name_fmt", "bucket_name_fmt"):
            if "{fingerprint}" not in getattr(self, name):
                raise ValueError(f"{name} must contain the '{{fingerprint}}' placeholder")
        self._derive_ms()

    def _derive_ms(self) -> None:
        """Populate millisecond fields derived from second-based values."""
        self.lease_ttl_ms = int(self.lease_ttl_sec * 1000)
        renew = self.renew_interval_sec or self.lease_ttl_sec / 3.0
        self.renew_interval_ms = max(1, int(renew * 1000))
        self.lock_timeout_ms = int(self.lock_timeout_sec * 1000)
        self.lock_poll_ms = max(1, int(self.lock_poll_sec * 1000))
        self.release_timeout_ms = int(self.release_timeout_sec * 1000)
        self.retry_base_delay_ms = int(self.retry_base_delay_sec * 1000)
        self.retry_ceiling_ms = int(self.retry_ceiling_sec * 1000)

    # Naming helpers
    def lock_key(self, fingerprint: str) -> str:
        return self.lock_key_fmt.format(fingerprint=fingerprint)

    # Loader
    @classmethod
    def load(cls, path: Path | str | None = None, *, overrides: dict[str, Any] | None = None) -> CoordinatorConfig:
        """
        Load config from JSON file (if provided), then apply env and overrides.

        Every non-derived field can be set from the environment as PROVKIT_<FIELD>,
        e.g. PROVKIT_LEASE_TTL_SEC=120 or PROVKIT_RETRY_ON_CONTENTION=1.
        """
        data: dict[str, Any] = {}
        data.update(_try_load_json(Path(path) if path else None))

        for f in fields(cls):
            if f.name.endswith("_ms"):
                continue
            raw = os.getenv(_ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            default = f.default
            try:
                data[f.name] = _coerce(raw, default)
            except ValueError as e:
                raise MalformedInput(f"{_ENV_PREFIX}{f.name.upper()}={raw!r}: {e}") from e

        if overrides:
            data.update(overrides)

        unknown = sorted(k for k in data if k not in {f.name for f in fields(cls)})
        if unknown:
            raise MalformedInput(f"unknown config keys: {unknown}")
        return cls(**data)
