# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Low-cardinality Prometheus metrics for the run coordinator.

Labels stay conservative (outcome, reason, kind, result, op); fingerprints and
run ids go to logs, never to labels.
"""

import threading
from dataclasses import dataclass
from typing import Any

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

_default: CoordinatorMetrics | None = None
_default_lock = threading.Lock()


@dataclass
class CoordinatorMetrics:
    runs_total: Any
    lock_wait_ms: Any
    lock_releases_total: Any
    ensure_total: Any
    retries_total: Any
    run_duration_ms: Any

    @classmethod
    def create(cls, registry: CollectorRegistry | None = None) -> CoordinatorMetrics:
        """
        Build the metric set. Without an explicit registry a process-wide
        instance registered in the global REGISTRY is returned.
        """
        global _default
        if registry is None:
            with _default_lock:
                if _default is None:
                    _default = cls._build(REGISTRY)
                return _default
        return cls._build(registry)

    @classmethod
    def _build(cls, reg: CollectorRegistry) -> CoordinatorMetrics:
        return cls(
            runs_total=Counter(
                "provkit_runs_total", "Run attempts by terminal outcome", ["outcome", "reason"], registry=reg
            ),
            lock_wait_ms=Histogram(
                "provkit_lock_wait_ms",
                "Time spent waiting for the run lock (ms)",
                buckets=(10, 100, 500, 1000, 5000, 15_000, 60_000, 300_000),
                registry=reg,
            ),
            lock_releases_total=Counter(
                "provkit_lock_releases_total", "Lock releases by result", ["result"], registry=reg
            ),
            ensure_total=Counter(
                "provkit_ensure_total", "Resource ensure outcomes", ["kind", "status"], registry=reg
            ),
            retries_total=Counter("provkit_retries_total", "Retried operations", ["op"], registry=reg),
            run_duration_ms=Histogram(
                "provkit_run_duration_ms",
                "Run attempt wall time (ms)",
                buckets=(100, 1000, 10_000, 60_000, 300_000, 1_800_000, 3_600_000),
                registry=reg,
            ),
        )
