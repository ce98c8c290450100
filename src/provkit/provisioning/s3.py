# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
S3 buckets via boto3.

Error mapping:
  BucketAlreadyOwnedByYou            -> ResourceAlreadyExists (ours; success)
  BucketAlreadyExists                -> ProvisioningError (name owned by another account)
  SlowDown/Throttling/5xx/timeouts   -> TransientExternalFailure
  AccessDenied/403                   -> PermissionDenied
"""

import asyncio
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..api.errors import PermissionDenied, ProvisioningError, ResourceAlreadyExists, TransientExternalFailure
from ..core.log import get_logger
from .base import ResourceKind, ResourceProvider

__all__ = ["S3Buckets"]

_TRANSIENT_CODES = frozenset(
    {
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "RequestTimeout",
        "RequestTimeTooSkewed",
        "ServiceUnavailable",
        "InternalError",
        "OperationAborted",
    }
)
_DENIED_CODES = frozenset({"AccessDenied", "AllAccessDisabled", "InvalidAccessKeyId", "ExpiredToken", "403"})
_MISSING_CODES = frozenset({"404", "NoSuchBucket", "NotFound"})


def _code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def _status(exc: ClientError) -> int:
    return int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)


def _translate(op: str, name: str, exc: Exception) -> Exception:
    if isinstance(exc, BotoCoreError):
        return TransientExternalFailure(f"s3 {op} {name}: {exc}")
    if not isinstance(exc, ClientError):
        return exc
    code = _code(exc)
    if code == "BucketAlreadyOwnedByYou":
        return ResourceAlreadyExists(f"s3 bucket {name} already owned by this account")
    if code == "BucketAlreadyExists":
        return ProvisioningError(f"s3 bucket name {name} is taken by another account")
    if code in _DENIED_CODES or _status(exc) == 403:
        return PermissionDenied(f"s3 {op} {name}: {code or 403}: {exc}")
    if code in _TRANSIENT_CODES or _status(exc) >= 500:
        return TransientExternalFailure(f"s3 {op} {name}: {code or _status(exc)}: {exc}")
    return ProvisioningError(f"s3 {op} {name}: {code}: {exc}")


class S3Buckets(ResourceProvider):
    kind = ResourceKind.bucket

    def __init__(self, *, region: str | None = None, client: Any | None = None) -> None:
        self.client = client or boto3.client("s3", region_name=region)
        self.region = region or getattr(getattr(self.client, "meta", None), "region_name", None) or "us-east-1"
        self.log = get_logger("provisioning.s3")

    async def _call(self, op: str, name: str, **kwargs: Any) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(getattr(self.client, op), Bucket=name, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise _translate(op, name, e) from e

    async def exists(self, name: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_bucket, Bucket=name)
        except ClientError as e:
            if _code(e) in _MISSING_CODES or _status(e) == 404:
                return False
            raise _translate("head_bucket", name, e) from e
        except BotoCoreError as e:
            raise _translate("head_bucket", name, e) from e
        return True

    async def create(self, name: str) -> None:
        kwargs: dict[str, Any] = {}
        # us-east-1 rejects an explicit LocationConstraint.
        if self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        await self._call("create_bucket", name, **kwargs)
        self.log.info("s3.bucket.created", event="s3.bucket.created", bucket=name, region=self.region)

    async def delete(self, name: str) -> bool:
        try:
            await self._call("delete_bucket", name)
        except ProvisioningError as e:
            cause = e.__cause__
            if isinstance(cause, ClientError) and _code(cause) in _MISSING_CODES:
                return False
            raise
        return True
