# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Terraform workspaces via the Terraform CLI.

Commands run in the configured working directory. Terraform's
own state locking stays in force: a "state lock" error is reported as a
transient failure so the retry policy backs off instead of forcing the lock.
"""

import asyncio
import logging
import os
import signal
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass

from ..api.errors import (
    PermissionDenied,
    ProvisioningError,
    ResourceAlreadyExists,
    TransientExternalFailure,
)
from ..core.log import get_logger, swallow
from .base import ResourceKind, ResourceProvider

__all__ = ["CommandResult", "TerraformWorkspaces", "run_command", "terminate_process"]

_log = get_logger("provisioning.terraform")


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


CommandRunner = Callable[[Sequence[str], str, Mapping[str, str] | None, float], Awaitable[CommandResult]]


async def terminate_process(proc: asyncio.subprocess.Process, *, grace_s: float = 5.0) -> None:
    if proc.returncode is not None:
        return
    if os.name == "posix":
        with swallow(logger=_log, code="cmd.killpg", msg="killpg SIGTERM failed", level=logging.DEBUG):
            os.killpg(proc.pid, signal.SIGTERM)
    with swallow(logger=_log, code="cmd.terminate", msg="proc.terminate failed", level=logging.DEBUG):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_s)
    except TimeoutError:
        with swallow(logger=_log, code="cmd.kill", msg="proc.kill failed after grace period", level=logging.DEBUG):
            proc.kill()


async def run_command(
    argv: Sequence[str],
    cwd: str,
    env: Mapping[str, str] | None = None,
    timeout_s: float = 300.0,
) -> CommandResult:
    """
    Run a command in its own process group and capture its output.
    `env` replaces the inherited environment when given.

    On timeout or task cancellation the process group gets SIGTERM, then SIGKILL.
    """
    kwargs = {"start_new_session": True} if os.name == "posix" else {}
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        **kwargs,
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except TimeoutError:
        await terminate_process(proc)
        raise TransientExternalFailure(f"{argv[0]} timed out after {timeout_s:.0f}s: {' '.join(argv[1:])}")
    except asyncio.CancelledError:
        await terminate_process(proc)
        raise
    return CommandResult(
        returncode=proc.returncode or 0,
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
    )


_TRANSIENT_MARKERS = (
    "error acquiring the state lock",
    "requestlimitexceeded",
    "throttling",
    "slowdown",
    "connection reset",
    "i/o timeout",
    "tls handshake timeout",
)
_DENIED_MARKERS = ("accessdenied", "access denied", "403 forbidden", "not authorized")


def _classify(argv: Sequence[str], res: CommandResult) -> Exception:
    msg = (res.stderr or res.stdout).strip()
    low = msg.lower()
    where = " ".join(argv[1:])
    if "already exists" in low:
        return ResourceAlreadyExists(f"terraform {where}: {msg}")
    if any(m in low for m in _TRANSIENT_MARKERS):
        return TransientExternalFailure(f"terraform {where}: {msg}")
    if any(m in low for m in _DENIED_MARKERS):
        return PermissionDenied(f"terraform {where}: {msg}")
    return ProvisioningError(f"terraform {where} exited {res.returncode}: {msg}")


class TerraformWorkspaces(ResourceProvider):
    """Create-or-select Terraform workspaces in `working_dir`."""

    kind = ResourceKind.workspace

    def __init__(
        self,
        working_dir: str = ".",
        *,
        binary: str = "terraform",
        timeout_s: float = 300.0,
        env: Mapping[str, str] | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.working_dir = working_dir
        self.binary = binary
        self.timeout_s = timeout_s
        # TF_WORKSPACE overrides `workspace select`; never inherit it here.
        self.env = {**(env or {}), "TF_IN_AUTOMATION": "1"}
        self.runner: CommandRunner = runner or run_command
        self.log = _log

    async def _tf(self, *args: str) -> CommandResult:
        argv = [self.binary, *args]
        env = {k: v for k, v in {**os.environ, **self.env}.items() if k != "TF_WORKSPACE"}
        res = await self.runner(argv, self.working_dir, env, self.timeout_s)
        self.log.debug("terraform.cmd", event="terraform.cmd", argv=argv, returncode=res.returncode)
        if res.returncode != 0:
            raise _classify(argv, res)
        return res

    async def list(self) -> list[str]:
        res = await self._tf("workspace", "list")
        names = []
        for line in res.stdout.splitlines():
            name = line.strip().lstrip("*").strip()
            if name:
                names.append(name)
        return names

    async def exists(self, name: str) -> bool:
        return name in await self.list()

    async def create(self, name: str) -> None:
        await self._tf("workspace", "new", name)

    async def select(self, name: str) -> None:
        await self._tf("workspace", "select", name)

    async def delete(self, name: str) -> bool:
        if not await self.exists(name):
            return False
        # A workspace cannot be deleted while selected.
        await self._tf("workspace", "select", "default")
        await self._tf("workspace", "delete", name)
        return True
