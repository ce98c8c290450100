# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
DynamoDB lock backend.

Table layout (single table, string partition key `lock_key`):

    lock_key       S   lock name or counter name
    owner          S   holder identity
    token          S   per-acquire token
    expires_at_ms  N   lease deadline, epoch ms
    counter        N   only on counter rows (see `incr`)

All writes are conditional, so the table itself arbitrates between concurrent
runs on different CI hosts. Lease deadlines use the caller's wall clock; keep CI
hosts NTP-synchronised and the lease much longer than the expected skew.
"""

import asyncio
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..api.errors import LockBackendError, PermissionDenied, TransientExternalFailure
from ..core.log import get_logger
from ..core.time import Clock, SystemClock
from .locks import LockRecord

__all__ = ["DynamoLockBackend"]

_CONDITION_FAILED = "ConditionalCheckFailedException"

_TRANSIENT_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "ThrottlingException",
        "RequestLimitExceeded",
        "InternalServerError",
        "ServiceUnavailable",
        "TransactionConflictException",
    }
)
_DENIED_CODES = frozenset({"AccessDeniedException", "UnrecognizedClientException", "ExpiredTokenException"})


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def _translate(op: str, exc: Exception) -> Exception:
    if isinstance(exc, ClientError):
        code = _error_code(exc)
        if code in _DENIED_CODES:
            return PermissionDenied(f"dynamodb {op}: {code}: {exc}")
        status = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
        if code in _TRANSIENT_CODES or status >= 500:
            return TransientExternalFailure(f"dynamodb {op}: {code or status}: {exc}")
        return LockBackendError(f"dynamodb {op}: {code or status}: {exc}")
    if isinstance(exc, BotoCoreError):
        return TransientExternalFailure(f"dynamodb {op}: {exc}")
    return exc


def _record(item: dict[str, Any]) -> LockRecord:
    return LockRecord(
        key=item["lock_key"]["S"],
        owner=item.get("owner", {}).get("S", ""),
        token=item.get("token", {}).get("S", ""),
        expires_at_ms=int(item.get("expires_at_ms", {}).get("N", "0")),
    )


class DynamoLockBackend:
    """Lock backend over a DynamoDB table using conditional writes."""

    def __init__(
        self,
        table_name: str,
        *,
        client: Any | None = None,
        region_name: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        if not table_name:
            raise ValueError("table_name must be a non-empty string")
        self.table_name = table_name
        self.client = client or boto3.client("dynamodb", region_name=region_name)
        self.clock: Clock = clock or SystemClock()
        self.log = get_logger("storage.dynamodb")

    async def _call(self, op: str, **kwargs: Any) -> dict[str, Any]:
        fn = getattr(self.client, op)
        try:
            return await asyncio.to_thread(fn, TableName=self.table_name, **kwargs)
        except ClientError as e:
            if _error_code(e) == _CONDITION_FAILED:
                raise
            raise _translate(op, e) from e
        except BotoCoreError as e:
            raise _translate(op, e) from e

    async def acquire(self, key: str, *, owner: str, token: str, ttl_ms: int) -> LockRecord | None:
        now = self.clock.now_ms()
        rec = LockRecord(key=key, owner=owner, token=token, expires_at_ms=now + ttl_ms)
        try:
            await self._call(
                "put_item",
                Item={
                    "lock_key": {"S": key},
                    "owner": {"S": owner},
                    "token": {"S": token},
                    "expires_at_ms": {"N": str(rec.expires_at_ms)},
                },
                ConditionExpression="attribute_not_exists(lock_key) OR expires_at_ms <= :now",
                ExpressionAttributeValues={":now": {"N": str(now)}},
            )
        except ClientError as e:
            if _error_code(e) == _CONDITION_FAILED:
                return None
            raise
        return rec

    async def renew(self, key: str, *, token: str, ttl_ms: int) -> LockRecord | None:
        now = self.clock.now_ms()
        try:
            resp = await self._call(
                "update_item",
                Key={"lock_key": {"S": key}},
                UpdateExpression="SET expires_at_ms = :exp",
                ConditionExpression="#t = :token AND expires_at_ms > :now",
                ExpressionAttributeNames={"#t": "token"},
                ExpressionAttributeValues={
                    ":exp": {"N": str(now + ttl_ms)},
                    ":token": {"S": token},
                    ":now": {"N": str(now)},
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _error_code(e) == _CONDITION_FAILED:
                return None
            raise
        return _record(resp["Attributes"])

    async def release(self, key: str, *, token: str) -> bool:
        now = self.clock.now_ms()
        try:
            resp = await self._call(
                "delete_item",
                Key={"lock_key": {"S": key}},
                ConditionExpression="#t = :token",
                ExpressionAttributeNames={"#t": "token"},
                ExpressionAttributeValues={":token": {"S": token}},
                ReturnValues="ALL_OLD",
            )
        except ClientError as e:
            if _error_code(e) == _CONDITION_FAILED:
                return False
            raise
        old = resp.get("Attributes")
        return old is None or not _record(old).expired(now)

    async def get(self, key: str) -> LockRecord | None:
        resp = await self._call("get_item", Key={"lock_key": {"S": key}}, ConsistentRead=True)
        item = resp.get("Item")
        if not item or "token" not in item:
            return None
        return _record(item)

    async def incr(self, key: str) -> int:
        resp = await self._call(
            "update_item",
            Key={"lock_key": {"S": key}},
            UpdateExpression="ADD #c :one",
            ExpressionAttributeNames={"#c": "counter"},
            ExpressionAttributeValues={":one": {"N": "1"}},
            ReturnValues="UPDATED_NEW",
        )
        return int(resp["Attributes"]["counter"]["N"])
