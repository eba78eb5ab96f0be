"""Provider interfaces for platformctl."""
from __future__ import annotations

from .kubectl import KubectlError, KubectlProvider
from .object_storage import (
    BucketStatus,
    ObjectStorageAuthError,
    ObjectStorageError,
    ObjectStorageProvider,
)
from .terraform import PlanSummary, TerraformError, TerraformProvider

__all__ = [
    "BucketStatus",
    "KubectlError",
    "KubectlProvider",
    "ObjectStorageAuthError",
    "ObjectStorageError",
    "ObjectStorageProvider",
    "PlanSummary",
    "TerraformError",
    "TerraformProvider",
]
