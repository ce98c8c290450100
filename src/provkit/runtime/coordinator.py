# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
provkit.runtime.coordinator
===========================

Run coordinator: drives one CI run attempt through

    Pending -> FingerprintDerived -> LockAcquiring -> LockHeld
            -> ResourcesEnsured -> ActionRunning -> Completed

with `Aborted` (cancellation) and `Failed` (classified error) reachable from
every non-terminal state. Whatever happens after the lock is granted, the lock
is released before the attempt is reported; if the release itself fails, the
report says the lock was left to lease-expire.

The coordinator owns no durable state. The lock backend is the only shared
record between concurrent runs.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from ..api.errors import (
    Cancelled,
    LeaseLost,
    LockContention,
    MalformedInput,
    ProvkitError,
    RetriesExhausted,
    TransientExternalFailure,
)
from ..core.config import CoordinatorConfig
from ..core.log import get_logger, log_context, swallow
from ..core.time import Clock, SystemClock
from ..core.utils import nanoid
from ..observability.tracing import trace
from ..protocol.report import ResourceReport, RunReport, TransitionReport
from ..provisioning.base import ResourceKind, ResourceProvider
from ..storage.locks import LockBackend
from .ensurer import EnsureOutcome, ResourceEnsurer
from .fingerprint import Fingerprint, bucket_name, derive, workspace_name
from .metrics import CoordinatorMetrics
from .mutex import DistributedMutex, LeaseKeeper, LockHandle, ReleaseResult, TimedOut
from .retry import RetryPolicy

__all__ = [
    "Action",
    "LockRelease",
    "RunAttempt",
    "RunContext",
    "RunCoordinator",
    "RunOutcome",
    "RunState",
]

T = TypeVar("T")


class RunState(str, Enum):
    pending = "pending"
    fingerprint_derived = "fingerprint_derived"
    lock_acquiring = "lock_acquiring"
    lock_held = "lock_held"
    resources_ensured = "resources_ensured"
    action_running = "action_running"
    completed = "completed"
    aborted = "aborted"
    failed = "failed"


TERMINAL_STATES: frozenset[RunState] = frozenset({RunState.completed, RunState.aborted, RunState.failed})

_EXITS = {RunState.aborted, RunState.failed}
_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.pending: {RunState.fingerprint_derived, *_EXITS},
    RunState.fingerprint_derived: {RunState.lock_acquiring, *_EXITS},
    RunState.lock_acquiring: {RunState.lock_held, *_EXITS},
    # lock_held -> completed is the cleanup path (no action phase).
    RunState.lock_held: {RunState.resources_ensured, RunState.completed, *_EXITS},
    RunState.resources_ensured: {RunState.action_running, *_EXITS},
    RunState.action_running: {RunState.completed, *_EXITS},
}


class RunOutcome(str, Enum):
    succeeded = "succeeded"
    aborted = "aborted"
    failed = "failed"


class LockRelease(str, Enum):
    released = "released"
    lease_expiry = "lease_expiry"
    not_held = "not_held"


@dataclass
class RunAttempt:
    """Mutable record of one attempt; `to_report()` freezes it for the scheduler."""

    run_id: str
    holder: str
    operation: str = "run"
    fingerprint: str | None = None
    ordinal: int = 0
    state: RunState = RunState.pending
    outcome: RunOutcome | None = None
    reason: str | None = None
    last_error: str | None = None
    lock_release: LockRelease = LockRelease.not_held
    started_at_ms: int = 0
    finished_at_ms: int | None = None
    resources: list[EnsureOutcome] = field(default_factory=list)
    history: list[tuple[RunState, int]] = field(default_factory=list)
    action_result: Any = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_report(self) -> RunReport:
        return RunReport(
            operation=self.operation,
            run_id=self.run_id,
            holder=self.holder,
            fingerprint=self.fingerprint,
            ordinal=self.ordinal,
            state=self.state.value,
            outcome=(self.outcome or RunOutcome.failed).value,
            reason=self.reason,
            last_error=self.last_error,
            lock_release=self.lock_release.value,
            started_at_ms=self.started_at_ms,
            finished_at_ms=self.finished_at_ms,
            resources=[
                ResourceReport(kind=r.kind.value, name=r.name, status=r.status.value, reason=r.reason, error=r.error)
                for r in self.resources
            ],
            history=[TransitionReport(state=s.value, ts_ms=ts) for s, ts in self.history],
            action_result=self.action_result,
        )


@dataclass
class RunContext:
    """What the action sees while it runs under the lock."""

    fingerprint: Fingerprint
    workspace: str
    bucket: str
    handle: LockHandle
    cancel: asyncio.Event
    lease_lost: asyncio.Event
    attempt: RunAttempt


Action = Callable[[RunContext], Awaitable[Any]]
_Body = Callable[[RunAttempt, Fingerprint, LockHandle, LeaseKeeper, asyncio.Event], Awaitable[None]]


class RunCoordinator:
    """
    Usage:
        coord = RunCoordinator(backend=DynamoLockBackend("ci-locks"), providers={...}, cfg=CoordinatorConfig.load())
        attempt = await coord.run("abc123", "20260101", action, cancel=cancel_event)
        print(attempt.to_report().model_dump_json())

    `run` never raises for run-level failures; the attempt carries the terminal
    state, reason and lock-release result. Only programming errors (bad config)
    and host-task cancellation escape.
    """

    def __init__(
        self,
        *,
        backend: LockBackend,
        providers: Mapping[ResourceKind, ResourceProvider],
        cfg: CoordinatorConfig | None = None,
        clock: Clock | None = None,
        metrics: CoordinatorMetrics | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.cfg = cfg or CoordinatorConfig()
        self.clock: Clock = clock or SystemClock()
        self.backend = backend
        self.mutex = DistributedMutex(backend, clock=self.clock, poll_ms=self.cfg.lock_poll_ms)
        self.ensurer = ResourceEnsurer(providers)
        self.metrics = metrics or CoordinatorMetrics.create()
        self.rng = rng or random.Random()
        self.log = get_logger("runtime.coordinator")

    # ---- public API ---------------------------------------------------------

    @trace("coordinator.run")
    async def run(
        self,
        revision: str,
        date_marker: str,
        action: Action,
        *,
        cancel: asyncio.Event | None = None,
    ) -> RunAttempt:
        """Derive, lock, ensure workspace and bucket, run `action`, release."""

        async def body(
            attempt: RunAttempt, fp: Fingerprint, handle: LockHandle, keeper: LeaseKeeper, cancel: asyncio.Event
        ) -> None:
            ws = workspace_name(fp, self.cfg.workspace_name_fmt)
            bucket = bucket_name(fp, self.cfg.bucket_name_fmt)
            for kind, name in ((ResourceKind.workspace, ws), (ResourceKind.bucket, bucket)):
                outcome = await self._ensure(kind, name, cancel=cancel, keeper=keeper)
                attempt.resources.append(outcome)
                if not outcome.ok:
                    self._finish(
                        attempt,
                        RunState.failed,
                        reason="resource_failed",
                        error=f"{kind.value} {name!r}: {outcome.reason}: {outcome.error}",
                    )
                    return
            self._transition(attempt, RunState.resources_ensured)

            self._transition(attempt, RunState.action_running)
            ctx = RunContext(
                fingerprint=fp,
                workspace=ws,
                bucket=bucket,
                handle=handle,
                cancel=cancel,
                lease_lost=keeper.lost,
                attempt=attempt,
            )
            try:
                result = await self._guarded(action(ctx), cancel=cancel, keeper=keeper)
            except (Cancelled, LeaseLost):
                raise
            except ProvkitError as e:
                self._finish(attempt, RunState.failed, reason=e.reason, error=str(e))
                return
            except Exception as e:
                self.log.error(
                    "run.action_failed", event="run.action_failed", error=str(e), error_type=type(e).__name__
                )
                self._finish(attempt, RunState.failed, reason="action_failed", error=f"{type(e).__name__}: {e}")
                return
            attempt.action_result = result
            self._finish(attempt, RunState.completed)

        return await self._execute("run", revision, date_marker, body, cancel=cancel)

    @trace("coordinator.cleanup")
    async def cleanup(
        self,
        revision: str,
        date_marker: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> RunAttempt:
        """
        Remove the bucket and workspace a previous run for this fingerprint
        left behind. Runs under the same lock as `run`, so it never races an
        in-flight run; missing resources are not an error.
        """

        async def body(
            attempt: RunAttempt, fp: Fingerprint, handle: LockHandle, keeper: LeaseKeeper, cancel: asyncio.Event
        ) -> None:
            targets = (
                (ResourceKind.bucket, bucket_name(fp, self.cfg.bucket_name_fmt)),
                (ResourceKind.workspace, workspace_name(fp, self.cfg.workspace_name_fmt)),
            )
            removed: dict[str, bool] = {}
            for kind, name in targets:
                policy = self._policy("remove." + kind.value, retry_on=(TransientExternalFailure,))
                try:
                    removed[kind.value] = await policy.call(
                        lambda kind=kind, name=name: self._guarded(self.ensurer.remove(kind, name), cancel=cancel, keeper=keeper),
                        name=f"remove.{kind.value}",
                        cancel=cancel,
                    )
                except (Cancelled, LeaseLost, RetriesExhausted):
                    raise
                except ProvkitError as e:
                    self._finish(attempt, RunState.failed, reason=e.reason, error=f"{kind.value} {name!r}: {e}")
                    return
            attempt.action_result = removed
            self._finish(attempt, RunState.completed)

        return await self._execute("cleanup", revision, date_marker, body, cancel=cancel)

    # ---- driver -------------------------------------------------------------

    async def _execute(
        self,
        operation: str,
        revision: str,
        date_marker: str,
        body: _Body,
        *,
        cancel: asyncio.Event | None,
    ) -> RunAttempt:
        cancel = cancel if cancel is not None else asyncio.Event()
        run_id = nanoid(12)
        attempt = RunAttempt(
            run_id=run_id,
            holder=f"{self.cfg.holder_id}/{run_id}",
            operation=operation,
            started_at_ms=self.clock.now_ms(),
        )
        attempt.history.append((RunState.pending, attempt.started_at_ms))
        started = self.clock.mono_ms()

        with log_context(run_id=attempt.run_id, holder=attempt.holder):
            try:
                await self._drive(attempt, revision, date_marker, body, cancel)
            finally:
                attempt.finished_at_ms = self.clock.now_ms()
                outcome = attempt.outcome.value if attempt.outcome else "failed"
                self.metrics.runs_total.labels(outcome, attempt.reason or "none").inc()
                self.metrics.run_duration_ms.observe(self.clock.mono_ms() - started)
                self.log.info(
                    "run.finished",
                    event="run.finished",
                    operation=operation,
                    state=attempt.state.value,
                    outcome=outcome,
                    reason=attempt.reason,
                    lock_release=attempt.lock_release.value,
                    duration_ms=self.clock.mono_ms() - started,
                )
        return attempt

    async def _drive(
        self,
        attempt: RunAttempt,
        revision: str,
        date_marker: str,
        body: _Body,
        cancel: asyncio.Event,
    ) -> None:
        if cancel.is_set():
            self._finish(attempt, RunState.aborted, reason=Cancelled.reason, error="cancelled before start")
            return
        try:
            fp = derive(revision, date_marker)
        except MalformedInput as e:
            self._finish(attempt, RunState.failed, reason=e.reason, error=str(e))
            return
        attempt.fingerprint = fp.value
        self._transition(attempt, RunState.fingerprint_derived)
        key = self.cfg.lock_key(fp.value)

        with log_context(fingerprint=fp.value):
            with swallow(logger=self.log, code="run.ordinal", msg="attempt counter unavailable", level=logging.WARNING):
                attempt.ordinal = await self.backend.incr(key + "#attempts")

            with log_context(ordinal=attempt.ordinal):
                self._transition(attempt, RunState.lock_acquiring)
                try:
                    handle = await self._acquire(key, attempt.holder, cancel)
                except Cancelled as e:
                    self._finish(attempt, RunState.aborted, reason=e.reason, error=str(e))
                    return
                except ProvkitError as e:
                    self._finish(attempt, RunState.failed, reason=e.reason, error=self._error_text(e))
                    return
                except Exception as e:
                    self.log.error("run.acquire_error", event="run.acquire_error", exc_info=True)
                    self._finish(attempt, RunState.failed, reason="internal_error", error=f"{type(e).__name__}: {e}")
                    return

                self._transition(attempt, RunState.lock_held)
                keeper = LeaseKeeper(
                    self.mutex, handle, lease_ms=self.cfg.lease_ttl_ms, interval_ms=self.cfg.renew_interval_ms
                )
                keeper.start()
                try:
                    await body(attempt, fp, handle, keeper, cancel)
                except Cancelled as e:
                    self._finish(attempt, RunState.aborted, reason=e.reason, error=str(e))
                except ProvkitError as e:
                    self._finish(attempt, RunState.failed, reason=e.reason, error=self._error_text(e))
                except asyncio.CancelledError:
                    if not attempt.terminal:
                        self._finish(attempt, RunState.aborted, reason=Cancelled.reason, error="coordinator task cancelled")
                    raise
                except Exception as e:
                    self.log.error("run.internal_error", event="run.internal_error", exc_info=True)
                    self._finish(attempt, RunState.failed, reason="internal_error", error=f"{type(e).__name__}: {e}")
                finally:
                    await keeper.stop()
                    await self._release(attempt, handle)

    # ---- steps --------------------------------------------------------------

    def _policy(self, op: str, *, retry_on: tuple[type[BaseException], ...]) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.cfg.retry_max_attempts,
            base_delay_ms=self.cfg.retry_base_delay_ms,
            ceiling_ms=self.cfg.retry_ceiling_ms,
            retry_on=retry_on,
            clock=self.clock,
            rng=self.rng,
            on_retry=lambda name, _n, _e, _d: self.metrics.retries_total.labels(name).inc(),
        )

    @trace("coordinator.acquire")
    async def _acquire(self, key: str, holder: str, cancel: asyncio.Event) -> LockHandle:
        retry_on: tuple[type[BaseException], ...] = (TransientExternalFailure,)
        if self.cfg.retry_on_contention:
            retry_on = (LockContention, TransientExternalFailure)
        policy = self._policy("lock.acquire", retry_on=retry_on)

        async def op() -> LockHandle:
            res = await self.mutex.acquire(
                key, self.cfg.lease_ttl_ms, self.cfg.lock_timeout_ms, holder=holder, cancel=cancel
            )
            if isinstance(res, TimedOut):
                raise LockContention(key, holder=res.holder, waited_ms=res.waited_ms)
            return res

        started = self.clock.mono_ms()
        try:
            return await policy.call(op, name="lock.acquire", cancel=cancel)
        finally:
            self.metrics.lock_wait_ms.observe(self.clock.mono_ms() - started)

    @trace("coordinator.ensure")
    async def _ensure(
        self, kind: ResourceKind, name: str, *, cancel: asyncio.Event, keeper: LeaseKeeper
    ) -> EnsureOutcome:
        policy = self._policy("ensure." + kind.value, retry_on=(TransientExternalFailure,))
        outcome = await policy.call(
            lambda: self._guarded(self.ensurer.ensure(kind, name), cancel=cancel, keeper=keeper),
            name=f"ensure.{kind.value}",
            cancel=cancel,
        )
        self.metrics.ensure_total.labels(kind.value, outcome.status.value).inc()
        return outcome

    async def _guarded(self, aw: Awaitable[T], *, cancel: asyncio.Event, keeper: LeaseKeeper) -> T:
        """
        Await `aw` while watching the cancel signal and the lease. Whichever
        fires first wins: the work is cancelled and Cancelled or LeaseLost is
        raised.
        """
        work = asyncio.ensure_future(aw)
        on_cancel = asyncio.ensure_future(cancel.wait())
        on_lost = asyncio.ensure_future(keeper.lost.wait())
        try:
            done, _ = await asyncio.wait({work, on_cancel, on_lost}, return_when=asyncio.FIRST_COMPLETED)
            if work in done:
                return work.result()
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            if on_cancel in done:
                raise Cancelled("cancelled while holding the lock")
            raise LeaseLost(f"lease on {keeper.handle.key!r} was lost")
        finally:
            for t in (work, on_cancel, on_lost):
                if not t.done():
                    t.cancel()

    async def _release(self, attempt: RunAttempt, handle: LockHandle) -> None:
        timeout_s = self.cfg.release_timeout_ms / 1000.0
        # Until the backend acknowledges, the lock is only guaranteed to go away by expiry.
        attempt.lock_release = LockRelease.lease_expiry
        try:
            result = await asyncio.wait_for(self.mutex.release(handle), timeout=timeout_s)
        except Exception as e:
            self.log.warning(
                "run.release_failed",
                event="run.release_failed",
                key=handle.key,
                expires_at_ms=handle.expires_at_ms,
                error=str(e) or type(e).__name__,
            )
            self.metrics.lock_releases_total.labels("error").inc()
            return
        if result is ReleaseResult.ack:
            attempt.lock_release = LockRelease.released
        self.metrics.lock_releases_total.labels(result.value).inc()

    # ---- state machine ------------------------------------------------------

    def _transition(self, attempt: RunAttempt, new: RunState) -> None:
        allowed = _TRANSITIONS.get(attempt.state, set())
        if new not in allowed:
            raise RuntimeError(f"illegal run transition {attempt.state.value} -> {new.value}")
        prev = attempt.state
        attempt.state = new
        attempt.history.append((new, self.clock.now_ms()))
        self.log.info("run.transition", event="run.transition", frm=prev.value, to=new.value)

    def _finish(self, attempt: RunAttempt, state: RunState, *, reason: str | None = None, error: str | None = None) -> None:
        if attempt.terminal:
            return
        self._transition(attempt, state)
        attempt.outcome = {
            RunState.completed: RunOutcome.succeeded,
            RunState.aborted: RunOutcome.aborted,
            RunState.failed: RunOutcome.failed,
        }[state]
        attempt.reason = reason
        if error:
            attempt.last_error = error

    @staticmethod
    def _error_text(e: ProvkitError) -> str:
        if isinstance(e, RetriesExhausted) and e.last_error is not None:
            return f"{e} ({type(e.last_error).__name__})"
        return str(e)
