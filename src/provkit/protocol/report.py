# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Run report handed back to the CI scheduler.

Design principles:
- Pydantic v2 models with `extra="forbid"` to fail fast on unknown fields.
- All timestamps are **epoch milliseconds** (UTC).
- `v` denotes the report schema version.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ResourceReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: str
    name: str
    status: str
    reason: str | None = None
    error: str | None = None


class TransitionReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    state: str
    ts_ms: int


class RunReport(BaseModel):
    """
    Outcome of one run attempt.

    Fields:
        outcome: succeeded | aborted | failed.
        reason: machine-readable cause for non-success (lock_contention, cancelled, ...).
        last_error: last concrete external error text, when there was one.
        lock_release: released | lease_expiry | not_held.
    """

    model_config = ConfigDict(extra="forbid")

    v: int = Field(default=1)
    operation: str = "run"
    run_id: str
    holder: str
    fingerprint: str | None = None
    ordinal: int = 0
    state: str
    outcome: str
    reason: str | None = None
    last_error: str | None = None
    lock_release: str
    started_at_ms: int
    finished_at_ms: int | None = None
    resources: list[ResourceReport] = Field(default_factory=list)
    history: list[TransitionReport] = Field(default_factory=list)
    action_result: Any = None
