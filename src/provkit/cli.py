# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Command-line entrypoint for CI schedulers.

    provkit run --revision abc123 --date 20260101 --lock-table ci-locks -- ./provision.sh
    provkit cleanup --revision abc123 --date 20260101 --lock-table ci-locks
    provkit lock-status --key provkit/lock/abc123-20260101 --lock-table ci-locks

`run` and `cleanup` print a JSON RunReport on stdout; the action's own output
goes to stderr. Exit codes: 0 completed, 1 failed, 130 aborted, 2 usage error.
"""

import argparse
import asyncio
import json
import os
import signal
import sys
from collections.abc import Sequence
from typing import Any

from .api.errors import MalformedInput, ProvisioningError
from .core.config import CoordinatorConfig
from .core.log import configure_from_env, get_logger, swallow
from .core.time import SystemClock
from .observability.tracing import setup_tracing
from .provisioning.base import ResourceKind, ResourceProvider
from .provisioning.s3 import S3Buckets
from .provisioning.terraform import TerraformWorkspaces, terminate_process
from .runtime.coordinator import RunAttempt, RunContext, RunCoordinator, RunState
from .storage.dynamodb import DynamoLockBackend
from .storage.locks import LockBackend
from .storage.memory import InMemoryLockBackend

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_ABORTED = 130

_log = get_logger("cli")


def _exit_code(attempt: RunAttempt) -> int:
    if attempt.state is RunState.completed:
        return EXIT_OK
    if attempt.state is RunState.aborted:
        return EXIT_ABORTED
    return EXIT_FAILED


def _backend(args: argparse.Namespace) -> LockBackend:
    if args.lock_table:
        return DynamoLockBackend(args.lock_table, region_name=args.region)
    _log.warning(
        "cli.memory_backend",
        event="cli.memory_backend",
        note="no --lock-table given; the lock only excludes runs inside this process",
    )
    return InMemoryLockBackend()


def _providers(args: argparse.Namespace) -> dict[ResourceKind, ResourceProvider]:
    return {
        ResourceKind.workspace: TerraformWorkspaces(args.terraform_dir, binary=args.terraform_bin),
        ResourceKind.bucket: S3Buckets(region=args.region),
    }


def command_action(argv: Sequence[str], *, cwd: str | None = None):
    """
    Build an action that runs `argv` as a child process under the lock.

    The child inherits the environment plus TF_WORKSPACE, PROVKIT_BUCKET and
    PROVKIT_FINGERPRINT. Its stdout is redirected to our stderr so stdout stays
    reserved for the report. The child is terminated when the run is cancelled.
    """

    async def action(ctx: RunContext) -> dict[str, Any]:
        env = dict(os.environ)
        env.update(
            TF_WORKSPACE=ctx.workspace,
            PROVKIT_BUCKET=ctx.bucket,
            PROVKIT_FINGERPRINT=ctx.fingerprint.value,
        )
        kwargs = {"start_new_session": True} if os.name == "posix" else {}
        proc = await asyncio.create_subprocess_exec(*argv, cwd=cwd, env=env, stdout=sys.stderr, **kwargs)
        try:
            rc = await proc.wait()
        except asyncio.CancelledError:
            await terminate_process(proc)
            raise
        if rc != 0:
            raise ProvisioningError(f"action {argv[0]!r} exited with status {rc}")
        return {"returncode": rc}

    return action


def _install_signal_handlers(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with swallow(logger=_log, code="cli.signals", msg=f"cannot install handler for {sig.name}"):
            loop.add_signal_handler(sig, cancel.set)


async def _coordinate(args: argparse.Namespace, cfg: CoordinatorConfig) -> int:
    cancel = asyncio.Event()
    _install_signal_handlers(cancel)
    coord = RunCoordinator(backend=_backend(args), providers=_providers(args), cfg=cfg)
    if args.command == "run":
        attempt = await coord.run(args.revision, args.date, command_action(args.action), cancel=cancel)
    else:
        attempt = await coord.cleanup(args.revision, args.date, cancel=cancel)
    print(attempt.to_report().model_dump_json())
    return _exit_code(attempt)


async def _lock_status(args: argparse.Namespace) -> int:
    rec = await _backend(args).get(args.key)
    if rec is None or rec.expired(SystemClock().now_ms()):
        print(json.dumps({"key": args.key, "held": False}))
    else:
        print(
            json.dumps(
                {"key": rec.key, "held": True, "owner": rec.owner, "expires_at_ms": rec.expires_at_ms},
            )
        )
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="provkit", description="Serialize CI provisioning runs per fingerprint.")
    sub = ap.add_subparsers(dest="command", required=True)

    def common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--lock-table", help="DynamoDB lock table (default: in-process lock only)")
        p.add_argument("--region", default=os.getenv("AWS_REGION"), help="AWS region for DynamoDB and S3")

    def run_like(p: argparse.ArgumentParser) -> None:
        common(p)
        p.add_argument("--revision", required=True, help="Source revision identifier")
        p.add_argument("--date", required=True, help="Date marker, e.g. 20260101")
        p.add_argument("--config", help="JSON config file (PROVKIT_* env vars override it)")
        p.add_argument("--terraform-dir", default=".", help="Terraform working directory (default: .)")
        p.add_argument("--terraform-bin", default="terraform", help="Terraform binary (default: terraform)")
        p.add_argument("--holder", help="Holder identity recorded on the lock")
        p.add_argument("--otlp-endpoint", default=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"), help="Export spans here")

    p_run = sub.add_parser("run", help="Run an action under the fingerprint lock")
    run_like(p_run)
    p_run.add_argument("action", nargs=argparse.REMAINDER, help="Command to run, after `--`")

    p_clean = sub.add_parser("cleanup", help="Remove the workspace and bucket of a fingerprint")
    run_like(p_clean)

    p_status = sub.add_parser("lock-status", help="Show the current holder of a lock key")
    common(p_status)
    p_status.add_argument("--key", required=True, help="Lock key, e.g. provkit/lock/<fingerprint>")
    return ap


def main(argv: Sequence[str] | None = None) -> int:
    # stdout carries the report
    configure_from_env(stream=sys.stderr)
    ap = build_parser()
    args = ap.parse_args(argv)

    if args.command == "lock-status":
        return asyncio.run(_lock_status(args))

    if args.command == "run":
        action = list(args.action)
        if action and action[0] == "--":
            action = action[1:]
        if not action:
            ap.error("run: missing action command after `--`")
        args.action = action

    overrides: dict[str, Any] = {}
    if args.holder:
        overrides["holder_id"] = args.holder
    try:
        cfg = CoordinatorConfig.load(args.config, overrides=overrides)
    except (MalformedInput, ValueError) as e:
        print(f"provkit: invalid configuration: {e}", file=sys.stderr)
        return EXIT_USAGE

    if args.otlp_endpoint:
        setup_tracing(service_name="provkit", otlp_endpoint=args.otlp_endpoint)
    return asyncio.run(_coordinate(args, cfg))


if __name__ == "__main__":
    sys.exit(main())
