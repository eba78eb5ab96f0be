"""Backup archive data model."""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

MANIFEST_NAME = "backup-manifest.json"


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


class RestoreError(BackupError):
    """Raised when a restore cannot start or a component fails to restore."""


class RestoreCancelled(RestoreError):
    """Raised when the operator declines a restore prompt."""


class ComponentSkipped(Exception):
    """Raised by a component handler when there is nothing to capture."""


class BackupComponent(str, Enum):
    """Independently captured parts of an environment."""

    INFRASTRUCTURE = "infrastructure"
    KUBERNETES = "kubernetes"
    DATABASE = "database"
    WORKSPACE_DATA = "workspace-data"

    @property
    def destructive_restore(self) -> bool:
        """Return ``True`` when restoring overwrites live data."""
        return self in {BackupComponent.DATABASE, BackupComponent.WORKSPACE_DATA}


# Later components assume the resources restored by earlier ones exist.
RESTORE_ORDER: tuple[BackupComponent, ...] = (
    BackupComponent.INFRASTRUCTURE,
    BackupComponent.KUBERNETES,
    BackupComponent.DATABASE,
    BackupComponent.WORKSPACE_DATA,
)


def parse_components(values: Iterable[str] | str | None) -> tuple[BackupComponent, ...]:
    """Return components named in *values*, in restore order.

    ``None``, an empty selection and ``all`` select every component. Values may
    be repeated or comma-separated.
    """
    if values is None:
        return RESTORE_ORDER
    raw = [values] if isinstance(values, str) else list(values)
    names = {part.strip().lower() for item in raw for part in item.split(",") if part.strip()}
    if not names or "all" in names:
        return RESTORE_ORDER
    known = {component.value: component for component in BackupComponent}
    unknown = sorted(names - known.keys())
    if unknown:
        allowed = ", ".join(["all", *known])
        raise BackupError(f"Unknown component(s): {', '.join(unknown)}. Allowed: {allowed}.")
    return tuple(component for component in RESTORE_ORDER if component.value in names)


class BackupKind(str, Enum):
    """Why an archive was taken; doubles as the archive name prefix."""

    MANUAL = "backup"
    PRE_DESTROY = "pre-destroy"
    POST_SETUP = "post-setup"


def default_backup_name(
    kind: BackupKind,
    environment: str,
    now: datetime | None = None,
) -> str:
    """Return ``<kind>-<YYYYmmdd-HHMMSS>-<env>``."""
    moment = now or datetime.now(tz=UTC)
    return f"{kind.value}-{moment.strftime('%Y%m%d-%H%M%S')}-{environment}"


class ComponentStatus(str, Enum):
    """Capture outcome for one component."""

    CAPTURED = "captured"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True, frozen=True)
class ComponentRecord:
    """Manifest entry for one component."""

    status: ComponentStatus
    size_bytes: int = 0
    files: tuple[str, ...] = ()
    message: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status": self.status.value,
            "size_bytes": self.size_bytes,
            "files": list(self.files),
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> ComponentRecord:
        """Rebuild a record from its manifest form."""
        try:
            status = ComponentStatus(str(payload.get("status", "")))
        except ValueError as exc:
            raise BackupError(f"Invalid component status in manifest: {exc}") from exc
        files = payload.get("files") or []
        message = payload.get("message")
        size = payload.get("size_bytes")
        return cls(
            status=status,
            size_bytes=size if isinstance(size, int) else 0,
            files=tuple(str(item) for item in files) if isinstance(files, list) else (),
            message=str(message) if message is not None else None,
        )


@dataclass(slots=True, frozen=True)
class BackupManifest:
    """Description of an archive's contents."""

    name: str
    environment: str
    kind: BackupKind
    created_at: str
    components: Mapping[BackupComponent, ComponentRecord]
    created_by: Mapping[str, object] = field(default_factory=dict)
    hostname: str | None = None
    checksum: str | None = None

    @property
    def total_size_bytes(self) -> int:
        """Return the summed size of captured components."""
        return sum(record.size_bytes for record in self.components.values())

    def captured(self) -> tuple[BackupComponent, ...]:
        """Return components present in the archive, in restore order."""
        return tuple(
            component
            for component in RESTORE_ORDER
            if (record := self.components.get(component)) is not None
            and record.status is ComponentStatus.CAPTURED
        )

    def failed(self) -> tuple[BackupComponent, ...]:
        """Return components whose capture failed."""
        return tuple(
            component
            for component, record in self.components.items()
            if record.status is ComponentStatus.FAILED
        )

    def to_dict(self) -> dict[str, object]:
        """Return the manifest document."""
        return {
            "name": self.name,
            "environment": self.environment,
            "kind": self.kind.value,
            "created_at": self.created_at,
            "created_by": dict(self.created_by),
            "hostname": self.hostname,
            "components": {
                component.value: record.to_dict()
                for component, record in self.components.items()
            },
            "total_size_bytes": self.total_size_bytes,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> BackupManifest:
        """Rebuild a manifest read from disk."""
        raw_components = payload.get("components")
        if not isinstance(raw_components, Mapping):
            raise BackupError("Backup manifest lacks a components mapping.")
        components: dict[BackupComponent, ComponentRecord] = {}
        for key, value in raw_components.items():
            try:
                component = BackupComponent(str(key))
            except ValueError:
                continue
            if isinstance(value, Mapping):
                components[component] = ComponentRecord.from_dict(value)
        try:
            kind = BackupKind(str(payload.get("kind", BackupKind.MANUAL.value)))
        except ValueError as exc:
            raise BackupError(f"Invalid backup kind in manifest: {exc}") from exc
        checksum = payload.get("checksum")
        created_by = payload.get("created_by")
        hostname = payload.get("hostname")
        return cls(
            name=str(payload.get("name", "")),
            environment=str(payload.get("environment", "")),
            kind=kind,
            created_at=str(payload.get("created_at", "")),
            components=components,
            created_by=dict(created_by) if isinstance(created_by, Mapping) else {},
            hostname=str(hostname) if hostname else None,
            checksum=(
                str(checksum.get("value")) if isinstance(checksum, Mapping) else None
            ),
        )


@dataclass(slots=True, frozen=True)
class BackupArchive:
    """A finished backup: its manifest and where it lives."""

    manifest: BackupManifest
    directory: Path | None
    archive_path: Path | None = None
    archive_checksum: str | None = None

    @property
    def location(self) -> Path:
        """Return the tarball when compressed, otherwise the directory."""
        location = self.archive_path or self.directory
        if location is None:
            raise BackupError(f"Backup '{self.manifest.name}' has no location.")
        return location

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.manifest.name,
            "path": str(self.location),
            "manifest": self.manifest.to_dict(),
            "archive_checksum": self.archive_checksum,
        }


class RestoreStatus(str, Enum):
    """Restore outcome for one component."""

    RESTORED = "restored"
    PLANNED = "planned"
    SKIPPED = "skipped"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(slots=True, frozen=True)
class RestoreOutcome:
    """Result of restoring one component."""

    component: BackupComponent
    status: RestoreStatus
    message: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "component": self.component.value,
            "status": self.status.value,
            "message": self.message,
        }


@dataclass(slots=True, frozen=True)
class RestoreResult:
    """Ordered outcomes of a restore run."""

    environment: str
    backup_name: str
    dry_run: bool
    outcomes: tuple[RestoreOutcome, ...]

    @property
    def ok(self) -> bool:
        """Return ``True`` when nothing failed or was aborted."""
        return not any(
            outcome.status in {RestoreStatus.FAILED, RestoreStatus.ABORTED}
            for outcome in self.outcomes
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "environment": self.environment,
            "backup": self.backup_name,
            "dry_run": self.dry_run,
            "ok": self.ok,
            "components": [outcome.to_dict() for outcome in self.outcomes],
        }


__all__ = [
    "MANIFEST_NAME",
    "RESTORE_ORDER",
    "BackupArchive",
    "BackupComponent",
    "BackupError",
    "BackupKind",
    "BackupManifest",
    "BackupRegistryError",
    "ComponentRecord",
    "ComponentSkipped",
    "ComponentStatus",
    "RestoreCancelled",
    "RestoreError",
    "RestoreOutcome",
    "RestoreResult",
    "RestoreStatus",
    "default_backup_name",
    "parse_components",
]
