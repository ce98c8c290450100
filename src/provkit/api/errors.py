# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Error taxonomy for provkit.

Lock backends, resource providers and the retry wrapper raise these; the run
coordinator classifies them to decide between retry, fail and abort.
"""


class ProvkitError(Exception):
    """Base class for all provkit errors."""

    reason: str = "error"


class RetryableError(ProvkitError):
    """
    The operation failed due to a transient condition. The retry policy may
    repeat it if the error kind is in its `retry_on` set.
    """

    reason = "transient"


class TransientExternalFailure(RetryableError):
    """An external system (lock table, Terraform, S3) throttled, timed out or was unavailable."""

    reason = "transient_external_failure"


class LockContention(RetryableError):
    """The lock stayed held by another run for the whole acquire timeout."""

    reason = "lock_contention"

    def __init__(self, key: str, *, holder: str | None = None, waited_ms: int = 0) -> None:
        who = f" by {holder}" if holder else ""
        super().__init__(f"lock {key!r} held{who}; gave up after {waited_ms} ms")
        self.key = key
        self.holder = holder
        self.waited_ms = waited_ms


class PermanentError(ProvkitError):
    """The operation failed for a reason that retrying cannot fix."""

    reason = "permanent"


class MalformedInput(PermanentError):
    """Run inputs (revision, date marker, config) are empty or contain disallowed characters."""

    reason = "malformed_input"


class PermissionDenied(PermanentError):
    """Credentials lack access to the lock table, state backend or bucket."""

    reason = "permission_denied"


class ProvisioningError(PermanentError):
    """The provisioning tool rejected the request (non-transient failure)."""

    reason = "provisioning_error"


class LockBackendError(PermanentError):
    """The lock store rejected a request for a reason retrying cannot fix (missing table, bad request)."""

    reason = "lock_backend_error"


class LeaseLost(PermanentError):
    """The lock lease lapsed or was taken over while the critical section was running."""

    reason = "lease_lost"


class RetriesExhausted(PermanentError):
    """The retry policy ran out of attempts or wall-clock budget."""

    reason = "retries_exhausted"

    def __init__(self, op: str, *, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"{op}: gave up after {attempts} attempt(s); last error: {last_error}")
        self.op = op
        self.attempts = attempts
        self.last_error = last_error


class ResourceAlreadyExists(ProvkitError):
    """Create was rejected because the resource exists; callers map this to success."""

    reason = "already_exists"


class Cancelled(ProvkitError):
    """The run was cancelled cooperatively by the scheduler."""

    reason = "cancelled"
