"""Backup and restore of environment components."""

from __future__ import annotations

from .components import (
    ComponentContext,
    ComponentHandler,
    ComponentRegistry,
    default_component_registry,
)
from .manager import BackupManager
from .models import (
    RESTORE_ORDER,
    BackupArchive,
    BackupComponent,
    BackupError,
    BackupKind,
    BackupManifest,
    BackupRegistryError,
    ComponentRecord,
    ComponentSkipped,
    ComponentStatus,
    RestoreCancelled,
    RestoreError,
    RestoreOutcome,
    RestoreResult,
    RestoreStatus,
    default_backup_name,
    parse_components,
)
from .registry import BackupsRegistry

__all__ = [
    "RESTORE_ORDER",
    "BackupArchive",
    "BackupComponent",
    "BackupError",
    "BackupKind",
    "BackupManager",
    "BackupManifest",
    "BackupRegistryError",
    "BackupsRegistry",
    "ComponentContext",
    "ComponentHandler",
    "ComponentRecord",
    "ComponentRegistry",
    "ComponentSkipped",
    "ComponentStatus",
    "RestoreCancelled",
    "RestoreError",
    "RestoreOutcome",
    "RestoreResult",
    "RestoreStatus",
    "default_backup_name",
    "default_component_registry",
    "parse_components",
]
