"""Backup and restore orchestration over independent components.

Backups are best-effort: every requested component is attempted and its
outcome recorded in the manifest, so an archive with a failed database dump
is still a valid archive for the components it holds. Restores run in
:data:`RESTORE_ORDER` and stop at the first failing component, because later
components depend on the resources restored by earlier ones.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import socket
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

from ..config import AppConfig
from ..environments import Environment, environment_root
from ..process import CommandRunner
from .archive import (
    compression_extension,
    compute_checksum,
    create_archive,
    directory_checksum,
    extract_archive,
    write_checksum_file,
)
from .components import ComponentContext, ComponentRegistry
from .models import (
    MANIFEST_NAME,
    RESTORE_ORDER,
    BackupArchive,
    BackupComponent,
    BackupError,
    BackupKind,
    BackupManifest,
    ComponentRecord,
    ComponentSkipped,
    ComponentStatus,
    RestoreCancelled,
    RestoreError,
    RestoreOutcome,
    RestoreResult,
    RestoreStatus,
    default_backup_name,
)
from .registry import BackupsRegistry

_LOG = logging.getLogger(__name__)


def _now_iso(moment: datetime | None = None) -> str:
    value = moment or datetime.now(tz=UTC)
    return value.isoformat(timespec="seconds").replace("+00:00", "Z")


def _parse_iso_datetime(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class BackupManager:
    """Capture and replay named, timestamped environment archives."""

    def __init__(
        self,
        config: AppConfig,
        *,
        registry: BackupsRegistry,
        components: ComponentRegistry,
        runner: CommandRunner,
        confirm: Callable[[str], bool],
    ) -> None:
        """Store collaborators; *confirm* answers yes/no prompts."""
        self._config = config
        self._registry = registry
        self._components = components
        self._runner = runner
        self._confirm = confirm

    @property
    def registry(self) -> BackupsRegistry:
        """Return the archive index."""
        return self._registry

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------
    def backup(
        self,
        context: ComponentContext,
        *,
        components: Sequence[BackupComponent] = RESTORE_ORDER,
        name: str | None = None,
        kind: BackupKind = BackupKind.MANUAL,
        actor: Mapping[str, object] | None = None,
        compression: str | None = None,
    ) -> BackupArchive:
        """Capture *components* of ``context.environment`` into a new archive."""
        environment = context.environment.value
        archive_name = name or default_backup_name(kind, environment)
        algorithm = compression or self._config.backups.compression
        self._registry.ensure_root()
        directory = self._registry.root / archive_name
        tarball = self._registry.root / f"{archive_name}.{compression_extension(algorithm)}"
        if directory.exists() or tarball.exists():
            raise BackupError(f"Backup '{archive_name}' already exists.")
        directory.mkdir(parents=True)

        records: dict[BackupComponent, ComponentRecord] = {}
        for component in RESTORE_ORDER:
            if component not in components:
                records[component] = ComponentRecord(
                    status=ComponentStatus.SKIPPED, message="not requested"
                )
                continue
            records[component] = self._capture(context, component, directory / component.value)

        manifest = BackupManifest(
            name=archive_name,
            environment=environment,
            kind=kind,
            created_at=_now_iso(),
            components=records,
            created_by=dict(actor or {}),
            hostname=socket.gethostname(),
            checksum=directory_checksum(directory),
        )
        (directory / MANIFEST_NAME).write_text(
            json.dumps(manifest.to_dict(), indent=2) + "\n", encoding="utf-8"
        )

        archive = BackupArchive(manifest=manifest, directory=directory)
        if algorithm == "gzip":
            create_archive(directory, tarball, algorithm, runner=self._runner)
            checksum = compute_checksum(tarball)
            write_checksum_file(tarball, checksum)
            shutil.rmtree(directory)
            archive = BackupArchive(
                manifest=manifest,
                directory=None,
                archive_path=tarball,
                archive_checksum=checksum,
            )

        self._registry.record(archive)
        failed = manifest.failed()
        if failed:
            _LOG.warning(
                "Backup %s is partial; failed components: %s",
                archive_name,
                ", ".join(component.value for component in failed),
            )
        else:
            _LOG.info("Backup %s written to %s", archive_name, archive.location)
        return archive

    def _capture(
        self,
        context: ComponentContext,
        component: BackupComponent,
        destination: Path,
    ) -> ComponentRecord:
        destination.mkdir(parents=True, exist_ok=True)
        try:
            handler = self._components.get(component)
            record = handler.capture(context, destination)
        except ComponentSkipped as exc:
            _LOG.info("Skipping %s: %s", component.value, exc)
            shutil.rmtree(destination, ignore_errors=True)
            return ComponentRecord(status=ComponentStatus.SKIPPED, message=str(exc))
        except (RuntimeError, OSError) as exc:
            _LOG.warning("Backup of %s failed: %s", component.value, exc)
            shutil.rmtree(destination, ignore_errors=True)
            return ComponentRecord(status=ComponentStatus.FAILED, message=str(exc))
        _LOG.info("Captured %s (%d bytes)", component.value, record.size_bytes)
        return record

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def locate(self, name: str) -> Path:
        """Return the unpacked directory for *name*, extracting a tarball when needed."""
        directory = self._registry.root / name
        if directory.is_dir():
            return directory
        entry = self._registry.find(name)
        candidates = [
            self._registry.root / f"{name}.{compression_extension(algorithm)}"
            for algorithm in ("gzip", "none")
        ]
        if entry is not None and entry.get("path"):
            candidates.insert(0, Path(str(entry["path"])))
        for candidate in candidates:
            if candidate.is_file():
                extract_archive(candidate, self._registry.root, runner=self._runner)
                if directory.is_dir():
                    return directory
                raise BackupError(f"Archive {candidate} did not contain '{name}/'.")
        raise BackupError(f"Backup '{name}' not found under {self._registry.root}.")

    def load_manifest(self, name: str) -> tuple[BackupManifest, Path]:
        """Return the manifest of *name* and its unpacked directory."""
        directory = self.locate(name)
        manifest_path = directory / MANIFEST_NAME
        try:
            payload = json.loads(manifest_path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise BackupError(f"Backup '{name}' has no {MANIFEST_NAME}.") from exc
        except json.JSONDecodeError as exc:
            raise BackupError(f"Manifest of '{name}' is corrupted: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise BackupError(f"Manifest of '{name}' must be a JSON object.")
        return BackupManifest.from_dict(payload), directory

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------
    def restore(
        self,
        context: ComponentContext,
        name: str,
        *,
        components: Sequence[BackupComponent] = RESTORE_ORDER,
        dry_run: bool = False,
        auto: bool = False,
        force: bool = False,
    ) -> RestoreResult:
        """Replay *components* of archive *name* into ``context.environment``.

        Raises :class:`RestoreError` before touching anything when a guard
        fails and :class:`RestoreCancelled` when the operator declines.
        """
        manifest, directory = self.load_manifest(name)
        target = context.environment
        captured = set(manifest.captured())
        selected = [component for component in RESTORE_ORDER if component in components]
        runnable = [component for component in selected if component in captured]

        self._check_restore_guards(
            manifest, target, runnable, dry_run=dry_run, auto=auto, force=force
        )
        context = replace(
            context,
            source_environment=manifest.environment,
            confirm=None if auto else self._confirm,
        )

        outcomes: list[RestoreOutcome] = []
        failed = False
        for component in selected:
            if component not in captured:
                record = manifest.components.get(component)
                reason = record.status.value if record else "absent"
                outcomes.append(
                    RestoreOutcome(component, RestoreStatus.SKIPPED, f"not in archive ({reason})")
                )
                continue
            if failed:
                outcomes.append(
                    RestoreOutcome(component, RestoreStatus.ABORTED, "earlier component failed")
                )
                continue
            if dry_run:
                outcomes.append(
                    RestoreOutcome(component, RestoreStatus.PLANNED, "would be restored")
                )
                continue
            try:
                message = self._components.get(component).restore(
                    context, directory / component.value
                )
            except RestoreCancelled:
                raise
            except (RuntimeError, OSError) as exc:
                _LOG.error("Restore of %s failed: %s", component.value, exc)
                outcomes.append(RestoreOutcome(component, RestoreStatus.FAILED, str(exc)))
                failed = True
                continue
            _LOG.info("Restored %s: %s", component.value, message)
            outcomes.append(RestoreOutcome(component, RestoreStatus.RESTORED, message))

        return RestoreResult(
            environment=target.value,
            backup_name=manifest.name,
            dry_run=dry_run,
            outcomes=tuple(outcomes),
        )

    def _check_restore_guards(
        self,
        manifest: BackupManifest,
        target: Environment,
        runnable: Sequence[BackupComponent],
        *,
        dry_run: bool,
        auto: bool,
        force: bool,
    ) -> None:
        if not runnable:
            raise RestoreError(
                f"Backup '{manifest.name}' holds none of the requested components."
            )
        if (
            BackupComponent.INFRASTRUCTURE in runnable
            and environment_root(self._config, target).exists()
            and not force
            and not dry_run
        ):
            raise RestoreError(
                f"Environment '{target.value}' already has a workspace; "
                "pass --force to overwrite it."
            )
        if dry_run:
            return
        if manifest.environment != target.value and not auto:
            prompt = (
                f"Backup '{manifest.name}' was taken from '{manifest.environment}'. "
                f"Restore it into '{target.value}'?"
            )
            if not self._confirm(prompt):
                raise RestoreCancelled("Restore cancelled: environment mismatch not confirmed.")
        destructive = [component.value for component in runnable if component.destructive_restore]
        if destructive and not auto:
            prompt = (
                f"Restoring {', '.join(destructive)} overwrites live data in "
                f"'{target.value}'. Continue?"
            )
            if not self._confirm(prompt):
                raise RestoreCancelled("Restore cancelled: data overwrite not confirmed.")

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    def prune(
        self,
        *,
        retention_days: int | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> list[dict[str, object]]:
        """Remove archives older than the retention window."""
        days = self._config.backups.retention_days if retention_days is None else retention_days
        threshold = (now or datetime.now(tz=UTC)) - timedelta(days=days)
        results: list[dict[str, object]] = []
        for entry in self._registry.list_entries():
            if entry.get("status") == "removed":
                continue
            created_at = _parse_iso_datetime(entry.get("created_at"))
            if created_at is None or created_at >= threshold:
                continue
            name = str(entry.get("name", ""))
            result: dict[str, object] = {"name": name, "created_at": entry.get("created_at")}
            if dry_run:
                result["status"] = "planned"
                results.append(result)
                continue
            errors = self._delete_artifacts(name, entry.get("path"))
            if errors:
                result.update({"status": "error", "errors": errors})
                results.append(result)
                continue
            removed_at = _now_iso()

            def mutator(payload: dict[str, object], *, timestamp: str = removed_at) -> None:
                payload["status"] = "removed"
                payload["removed_at"] = timestamp

            self._registry.update_entry(name, mutator)
            result.update({"status": "removed", "removed_at": removed_at})
            results.append(result)
        return results

    def _delete_artifacts(self, name: str, path_value: object) -> list[str]:
        errors: list[str] = []
        paths = {self._registry.root / name}
        if path_value:
            archive_path = Path(str(path_value))
            paths.add(archive_path)
            paths.add(archive_path.with_name(f"{archive_path.name}.sha256"))
        for path in sorted(paths):
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                elif path.exists():
                    os.unlink(path)
            except OSError as exc:
                errors.append(f"{path}: {exc}")
        return errors


__all__ = ["BackupManager"]
