import pytest
from botocore.exceptions import EndpointConnectionError

from provkit.api.errors import (
    PermissionDenied,
    ProvisioningError,
    ResourceAlreadyExists,
    TransientExternalFailure,
)
from provkit.provisioning.s3 import S3Buckets
from tests.helpers import FakeS3Client, client_error

pytestmark = [pytest.mark.unit]


@pytest.mark.asyncio
async def test_exists_create_delete_cycle():
    client = FakeS3Client(region="eu-west-1")
    s3 = S3Buckets(client=client)
    assert await s3.exists("b1") is False
    await s3.create("b1")
    assert await s3.exists("b1") is True
    assert await s3.delete("b1") is True
    assert await s3.delete("b1") is False

    op, kwargs = next(r for r in client.requests if r[0] == "create_bucket")
    assert kwargs["CreateBucketConfiguration"] == {"LocationConstraint": "eu-west-1"}


@pytest.mark.asyncio
async def test_us_east_1_omits_location_constraint():
    client = FakeS3Client(region="us-east-1")
    await S3Buckets(client=client).create("b1")
    _, kwargs = next(r for r in client.requests if r[0] == "create_bucket")
    assert "CreateBucketConfiguration" not in kwargs


@pytest.mark.asyncio
async def test_already_owned_maps_to_already_exists():
    s3 = S3Buckets(client=FakeS3Client(buckets={"b1"}))
    with pytest.raises(ResourceAlreadyExists):
        await s3.create("b1")


@pytest.mark.parametrize(
    "err, expected",
    [
        (client_error("BucketAlreadyExists", status=409), ProvisioningError),
        (client_error("AccessDenied", status=403), PermissionDenied),
        (client_error("SlowDown", status=503), TransientExternalFailure),
        (client_error("InternalError", status=500), TransientExternalFailure),
        (client_error("InvalidBucketName", status=400), ProvisioningError),
        (EndpointConnectionError(endpoint_url="https://s3.example"), TransientExternalFailure),
    ],
)
@pytest.mark.asyncio
async def test_create_error_mapping(err, expected):
    s3 = S3Buckets(client=FakeS3Client(errors={"create_bucket": [err]}))
    with pytest.raises(expected):
        await s3.create("b1")


@pytest.mark.asyncio
async def test_head_bucket_forbidden_is_permission_denied():
    s3 = S3Buckets(client=FakeS3Client(errors={"head_bucket": [client_error("403", status=403)]}))
    with pytest.raises(PermissionDenied):
        await s3.exists("b1")


@pytest.mark.asyncio
async def test_head_bucket_throttled_is_transient():
    s3 = S3Buckets(client=FakeS3Client(errors={"head_bucket": [client_error("503", status=503)]}))
    with pytest.raises(TransientExternalFailure):
        await s3.exists("b1")
