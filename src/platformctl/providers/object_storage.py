"""S3-compatible object storage provider used for remote state containers."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import NoReturn

from ..process import Command, CommandError, CommandResult, CommandRunner

_MISSING_MARKERS = ("404", "not found", "nosuchbucket", "nosuchkey")
_FORBIDDEN_MARKERS = ("403", "forbidden", "accessdenied", "access denied", "invalidaccesskeyid")


class ObjectStorageError(RuntimeError):
    """Raised when object storage operations fail."""


class ObjectStorageAuthError(ObjectStorageError):
    """Raised when credentials are rejected."""


class BucketStatus(str, Enum):
    """Observed state of a bucket."""

    PRESENT = "present"
    MISSING = "missing"
    FORBIDDEN = "forbidden"


@dataclass(slots=True)
class ObjectStorageProvider:
    """Drive ``aws s3api`` against an S3-compatible endpoint."""

    runner: CommandRunner
    endpoint: str
    region: str
    storage_bin: str = "aws"
    timeout: float | None = 60.0
    credentials: Mapping[str, str] = field(default_factory=dict)

    def bucket_status(self, bucket: str) -> BucketStatus:
        """Return whether *bucket* exists and is readable."""
        result = self._s3api(("head-bucket", "--bucket", bucket))
        if result.ok:
            return BucketStatus.PRESENT
        return self._classify(result, f"head-bucket {bucket}")

    def create_bucket(self, bucket: str) -> None:
        """Create *bucket* in the configured region."""
        result = self._s3api(
            (
                "create-bucket",
                "--bucket",
                bucket,
                "--create-bucket-configuration",
                f"LocationConstraint={self.region}",
            )
        )
        if result.ok or "bucketalreadyownedbyyou" in result.message().lower():
            return
        self._raise(result, f"create-bucket {bucket}")

    def enable_versioning(self, bucket: str) -> None:
        """Turn on object versioning for *bucket*."""
        result = self._s3api(
            (
                "put-bucket-versioning",
                "--bucket",
                bucket,
                "--versioning-configuration",
                "Status=Enabled",
            )
        )
        if not result.ok:
            self._raise(result, f"put-bucket-versioning {bucket}")

    def object_exists(self, bucket: str, key: str) -> bool:
        """Return ``True`` when *key* exists in *bucket*."""
        result = self._s3api(("head-object", "--bucket", bucket, "--key", key))
        if result.ok:
            return True
        self._classify(result, f"head-object {bucket}/{key}")
        return False

    # ------------------------------------------------------------------
    def _classify(self, result: CommandResult, label: str) -> BucketStatus:
        text = result.message().lower()
        if any(marker in text for marker in _FORBIDDEN_MARKERS):
            raise ObjectStorageAuthError(f"Access denied for {label}: {result.message()}")
        if any(marker in text for marker in _MISSING_MARKERS):
            return BucketStatus.MISSING
        self._raise(result, label)

    def _raise(self, result: CommandResult, label: str) -> NoReturn:
        message = result.message()
        if any(marker in message.lower() for marker in _FORBIDDEN_MARKERS):
            raise ObjectStorageAuthError(f"Access denied for {label}: {message}")
        raise ObjectStorageError(
            f"{self.storage_bin} s3api {label} failed (exit {result.returncode}): {message}"
        )

    def _s3api(self, args: Sequence[str]) -> CommandResult:
        env = {"AWS_DEFAULT_REGION": self.region, **dict(self.credentials)}
        command = Command(
            argv=(
                self.storage_bin,
                "s3api",
                *args,
                "--endpoint-url",
                self.endpoint,
                "--region",
                self.region,
            ),
            env=env,
            timeout=self.timeout,
        )
        try:
            return self.runner.run(command)
        except CommandError as exc:
            raise ObjectStorageError(str(exc)) from exc


def credentials_from_env(env: Mapping[str, str]) -> dict[str, str]:
    """Map provider credentials onto the variables the S3 CLI reads."""
    mapped: dict[str, str] = {}
    if env.get("SCW_ACCESS_KEY"):
        mapped["AWS_ACCESS_KEY_ID"] = env["SCW_ACCESS_KEY"]
    if env.get("SCW_SECRET_KEY"):
        mapped["AWS_SECRET_ACCESS_KEY"] = env["SCW_SECRET_KEY"]
    return mapped


__all__ = [
    "BucketStatus",
    "ObjectStorageAuthError",
    "ObjectStorageError",
    "ObjectStorageProvider",
    "credentials_from_env",
]
