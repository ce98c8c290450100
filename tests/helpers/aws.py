from __future__ import annotations

import copy
from collections import Counter
from types import SimpleNamespace
from typing import Any

from botocore.exceptions import ClientError


def client_error(code: str, *, status: int = 400, op: str = "Operation") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        op,
    )


class _Scripted:
    def __init__(self, errors: dict[str, list[BaseException]] | None = None) -> None:
        self.errors = {op: list(errs) for op, errs in (errors or {}).items()}
        self.calls: Counter[str] = Counter()
        self.requests: list[tuple[str, dict[str, Any]]] = []

    def _step(self, op: str, kwargs: dict[str, Any]) -> None:
        self.calls[op] += 1
        self.requests.append((op, kwargs))
        queue = self.errors.get(op)
        if queue:
            raise queue.pop(0)


class FakeDynamoClient(_Scripted):
    """
    Understands exactly the condition expressions DynamoLockBackend sends;
    a failed condition raises ConditionalCheckFailedException like the service.
    """

    def __init__(self, errors=None) -> None:
        super().__init__(errors)
        self.items: dict[str, dict[str, dict[str, str]]] = {}

    @staticmethod
    def _ccf(op: str) -> ClientError:
        return client_error("ConditionalCheckFailedException", op=op)

    def put_item(self, *, TableName, Item, ConditionExpression, ExpressionAttributeValues):
        self._step("put_item", {"Item": Item, "ConditionExpression": ConditionExpression})
        key = Item["lock_key"]["S"]
        now = int(ExpressionAttributeValues[":now"]["N"])
        cur = self.items.get(key)
        if cur is not None and int(cur["expires_at_ms"]["N"]) > now:
            raise self._ccf("PutItem")
        self.items[key] = copy.deepcopy(Item)
        return {}

    def update_item(
        self,
        *,
        TableName,
        Key,
        UpdateExpression,
        ExpressionAttributeNames,
        ExpressionAttributeValues,
        ReturnValues,
        ConditionExpression=None,
    ):
        self._step("update_item", {"Key": Key, "UpdateExpression": UpdateExpression})
        key = Key["lock_key"]["S"]
        if UpdateExpression.startswith("ADD"):
            row = self.items.setdefault(key, {"lock_key": {"S": key}})
            n = int(row.get("counter", {}).get("N", "0")) + 1
            row["counter"] = {"N": str(n)}
            return {"Attributes": {"counter": {"N": str(n)}}}
        cur = self.items.get(key)
        vals = ExpressionAttributeValues
        if (
            cur is None
            or cur.get("token", {}).get("S") != vals[":token"]["S"]
            or int(cur["expires_at_ms"]["N"]) <= int(vals[":now"]["N"])
        ):
            raise self._ccf("UpdateItem")
        cur["expires_at_ms"] = {"N": vals[":exp"]["N"]}
        return {"Attributes": copy.deepcopy(cur)}

    def delete_item(self, *, TableName, Key, ConditionExpression, ExpressionAttributeNames, ExpressionAttributeValues, ReturnValues):
        self._step("delete_item", {"Key": Key})
        key = Key["lock_key"]["S"]
        cur = self.items.get(key)
        if cur is None or cur.get("token", {}).get("S") != ExpressionAttributeValues[":token"]["S"]:
            raise self._ccf("DeleteItem")
        del self.items[key]
        return {"Attributes": cur}

    def get_item(self, *, TableName, Key, ConsistentRead):
        self._step("get_item", {"Key": Key})
        cur = self.items.get(Key["lock_key"]["S"])
        return {"Item": copy.deepcopy(cur)} if cur is not None else {}


class FakeS3Client(_Scripted):
    def __init__(self, *, region: str = "eu-west-1", buckets=(), errors=None) -> None:
        super().__init__(errors)
        self.meta = SimpleNamespace(region_name=region)
        self.buckets: set[str] = set(buckets)

    def head_bucket(self, *, Bucket):
        self._step("head_bucket", {"Bucket": Bucket})
        if Bucket not in self.buckets:
            raise client_error("404", status=404, op="HeadBucket")
        return {}

    def create_bucket(self, *, Bucket, **kwargs):
        self._step("create_bucket", {"Bucket": Bucket, **kwargs})
        if Bucket in self.buckets:
            raise client_error("BucketAlreadyOwnedByYou", status=409, op="CreateBucket")
        self.buckets.add(Bucket)
        return {"Location": f"/{Bucket}"}

    def delete_bucket(self, *, Bucket):
        self._step("delete_bucket", {"Bucket": Bucket})
        if Bucket not in self.buckets:
            raise client_error("NoSuchBucket", status=404, op="DeleteBucket")
        self.buckets.discard(Bucket)
        return {}
