"""Remote state container coordination.

Each environment owns one versioned bucket holding a state key per phase
(``infra/terraform.tfstate`` and ``app/terraform.tfstate``). Environments
created before the phase split keep a single ``<env>/terraform.tfstate`` key;
the coordinator looks for the phase key first and only then falls back to the
legacy key. Nothing here provides locking: one writer per environment is an
operational rule, not something this module enforces.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig
from .environments import Environment, Layout, Phase
from .providers.object_storage import (
    BucketStatus,
    ObjectStorageAuthError,
    ObjectStorageError,
    ObjectStorageProvider,
)
from .templates import TemplateEngine

_LOG = logging.getLogger(__name__)

BACKEND_FILE_NAME = "backend.hcl"
STATE_FILE_NAME = "terraform.tfstate"


class BackendError(RuntimeError):
    """Raised when the state container cannot be confirmed reachable."""


class BackendAuthError(BackendError):
    """Raised when the state container rejects our credentials."""


@dataclass(slots=True, frozen=True)
class BackendPointer:
    """Resolved location of one phase's remote state."""

    environment: Environment
    phase: Phase
    bucket: str
    key: str
    region: str
    endpoint: str
    layout: Layout

    def remote_state_inputs(self, prefix: str = "infra_state") -> dict[str, str]:
        """Return variables that let another phase read this state read-only."""
        return {
            f"{prefix}_bucket": self.bucket,
            f"{prefix}_key": self.key,
            f"{prefix}_region": self.region,
            f"{prefix}_endpoint": self.endpoint,
        }

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "environment": self.environment.value,
            "phase": self.phase.value,
            "bucket": self.bucket,
            "key": self.key,
            "region": self.region,
            "endpoint": self.endpoint,
            "layout": self.layout.value,
        }


class StateBackendCoordinator:
    """Guarantee a reachable state container before provisioning starts."""

    def __init__(
        self,
        config: AppConfig,
        storage: ObjectStorageProvider,
        templates: TemplateEngine,
    ) -> None:
        """Store collaborators."""
        self._config = config
        self._storage = storage
        self._templates = templates

    def bucket_name(self, environment: Environment) -> str:
        """Return the container name for *environment*."""
        backend = self._config.backend
        return f"{backend.bucket_prefix}-{self._config.project}-{environment.value}"

    def phase_key(self, phase: Phase) -> str:
        """Return the phase-scoped state key."""
        phases = self._config.phases
        prefix = (
            phases.infrastructure_key if phase is Phase.INFRASTRUCTURE else phases.application_key
        )
        return f"{prefix}/{STATE_FILE_NAME}"

    @staticmethod
    def legacy_key(environment: Environment) -> str:
        """Return the single-phase state key used before the phase split."""
        return f"{environment.value}/{STATE_FILE_NAME}"

    def ensure(
        self,
        environment: Environment,
        phase: Phase,
        *,
        preferred_layout: Layout = Layout.TWO_PHASE,
    ) -> BackendPointer:
        """Return a pointer to an existing, readable container for *phase*.

        Creates the container (with versioning) when it is absent. Safe to call
        repeatedly: an existing container is reused untouched.
        """
        bucket = self.bucket_name(environment)
        status = self._status(bucket)
        if status is BucketStatus.MISSING:
            _LOG.info("Creating state container %s", bucket)
            try:
                self._storage.create_bucket(bucket)
                if self._config.backend.versioning:
                    self._storage.enable_versioning(bucket)
            except ObjectStorageAuthError as exc:
                raise BackendAuthError(f"Not authorised to create {bucket}: {exc}") from exc
            except ObjectStorageError as exc:
                raise BackendError(f"Failed to create state container {bucket}: {exc}") from exc
            status = self._status(bucket)
        if status is not BucketStatus.PRESENT:
            raise BackendError(f"State container {bucket} exists but cannot be read.")

        layout = self.detect_layout(environment, phase, preferred=preferred_layout)
        key = self.phase_key(phase) if layout is Layout.TWO_PHASE else self.legacy_key(environment)
        pointer = BackendPointer(
            environment=environment,
            phase=phase,
            bucket=bucket,
            key=key,
            region=self._config.backend.region,
            endpoint=self._config.backend.endpoint,
            layout=layout,
        )
        _LOG.info(
            "State backend for %s/%s: s3://%s/%s", environment.value, phase.value, bucket, key
        )
        return pointer

    def detect_layout(
        self,
        environment: Environment,
        phase: Phase,
        *,
        preferred: Layout = Layout.TWO_PHASE,
    ) -> Layout:
        """Return the layout in use, checking the phase key before the legacy key."""
        bucket = self.bucket_name(environment)
        try:
            if self._storage.object_exists(bucket, self.phase_key(phase)):
                return Layout.TWO_PHASE
            # The legacy layout only ever held a single (infrastructure) state.
            if phase is Phase.INFRASTRUCTURE and self._storage.object_exists(
                bucket, self.legacy_key(environment)
            ):
                return Layout.LEGACY
        except ObjectStorageAuthError as exc:
            raise BackendAuthError(str(exc)) from exc
        except ObjectStorageError as exc:
            raise BackendError(f"Unable to inspect state container {bucket}: {exc}") from exc
        return preferred

    def write_backend_config(self, pointer: BackendPointer, workdir: Path) -> tuple[Path, bool]:
        """Render the backend pointer file consumed by ``terraform init``."""
        destination = workdir / BACKEND_FILE_NAME
        changed = self._templates.render_to_path(
            "backend.hcl.j2",
            destination,
            {
                "bucket": pointer.bucket,
                "key": pointer.key,
                "region": pointer.region,
                "endpoint": pointer.endpoint,
            },
            mode=0o600,
        )
        return destination, changed

    def describe(self, environment: Environment) -> dict[str, object]:
        """Report container and key presence without creating anything."""
        bucket = self.bucket_name(environment)
        status = self._status(bucket)
        keys: dict[str, bool | None] = {}
        for key in (
            self.phase_key(Phase.INFRASTRUCTURE),
            self.phase_key(Phase.APPLICATION),
            self.legacy_key(environment),
        ):
            if status is BucketStatus.PRESENT:
                try:
                    keys[key] = self._storage.object_exists(bucket, key)
                except ObjectStorageError as exc:
                    raise BackendError(str(exc)) from exc
            else:
                keys[key] = None
        return {
            "environment": environment.value,
            "bucket": bucket,
            "status": status.value,
            "endpoint": self._config.backend.endpoint,
            "region": self._config.backend.region,
            "keys": keys,
        }

    def _status(self, bucket: str) -> BucketStatus:
        try:
            status = self._storage.bucket_status(bucket)
        except ObjectStorageAuthError as exc:
            raise BackendAuthError(f"Not authorised to access {bucket}: {exc}") from exc
        except ObjectStorageError as exc:
            raise BackendError(f"State container {bucket} is unreachable: {exc}") from exc
        if status is BucketStatus.FORBIDDEN:
            raise BackendAuthError(f"Not authorised to access {bucket}.")
        return status


__all__ = [
    "BackendAuthError",
    "BackendError",
    "BackendPointer",
    "StateBackendCoordinator",
]
