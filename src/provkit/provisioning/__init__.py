# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Resource providers: adapters over the provisioning tool and the storage API.
"""

from .base import ResourceKind, ResourceProvider
from .s3 import S3Buckets
from .terraform import CommandResult, TerraformWorkspaces, run_command

__all__ = [
    "CommandResult",
    "ResourceKind",
    "ResourceProvider",
    "S3Buckets",
    "TerraformWorkspaces",
    "run_command",
]
