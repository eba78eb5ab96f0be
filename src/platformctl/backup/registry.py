"""JSON index of backup archives."""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from .models import BackupArchive, BackupRegistryError


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError(f"{label} must be a non-empty string.")
    return normalised


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index next to the archives."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def list_entries(self) -> list[dict[str, object]]:
        """Return every index entry."""
        backups = self.read().get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def record(self, archive: BackupArchive) -> dict[str, object]:
        """Add (or replace) the index entry for *archive*."""
        manifest = archive.manifest
        entry: dict[str, object] = {
            "name": manifest.name,
            "environment": manifest.environment,
            "kind": manifest.kind.value,
            "created_at": manifest.created_at,
            "path": str(archive.location),
            "compressed": archive.archive_path is not None,
            "size_bytes": manifest.total_size_bytes,
            "components": {
                component.value: record.status.value
                for component, record in manifest.components.items()
            },
            "checksum": {
                "algorithm": "sha256",
                "value": archive.archive_checksum or manifest.checksum,
            },
            "status": "available",
        }
        entries = [
            item for item in self.list_entries() if str(item.get("name", "")) != manifest.name
        ]
        entries.append(entry)
        self.write({"backups": entries})
        return entry

    def find(self, name: str) -> dict[str, object] | None:
        """Return the entry for *name* if present."""
        normalized = _normalise_identifier(name, label="Backup name")
        for entry in self.list_entries():
            if str(entry.get("name", "")).strip() == normalized:
                return entry
        return None

    def entries_for_environment(self, environment: str) -> list[dict[str, object]]:
        """Return entries taken from *environment*."""
        normalized = _normalise_identifier(environment, label="Environment")
        return [
            entry
            for entry in self.list_entries()
            if str(entry.get("environment", "")).strip() == normalized
        ]

    def update_entry(
        self,
        name: str,
        mutator: Callable[[dict[str, object]], None],
    ) -> dict[str, object]:
        """Apply *mutator* to the entry for *name* and persist changes."""
        normalized = _normalise_identifier(name, label="Backup name")
        entries = self.list_entries()
        updated_entry: dict[str, object] | None = None
        for index, entry in enumerate(entries):
            if str(entry.get("name", "")).strip() == normalized:
                mutator(entry)
                entries[index] = entry
                updated_entry = entry
                break
        if updated_entry is None:
            raise BackupRegistryError(f"Backup '{normalized}' not found in index.")
        self.write({"backups": entries})
        return updated_entry


__all__ = ["BackupsRegistry"]
