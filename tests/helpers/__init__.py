from .aws import FakeDynamoClient, FakeS3Client, client_error
from .locks import CountingBackend, FlakyBackend, HolderProbe
from .providers import FakeProvider, fake_providers
from .terraform import FakeTerraform
from .util import wait_until

__all__ = [
    "CountingBackend",
    "FakeDynamoClient",
    "FakeProvider",
    "FakeS3Client",
    "FakeTerraform",
    "FlakyBackend",
    "HolderProbe",
    "client_error",
    "fake_providers",
    "wait_until",
]
