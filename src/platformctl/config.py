"""Configuration loader for platformctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/platformctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``PLATFORMCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PLATFORMCTL_TEARDOWN__DELAY_SECONDS=60
    export PLATFORMCTL_BUDGET__MONTHLY_LIMIT=250

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "PLATFORMCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
# Variables platformctl exports to hook processes; never read back as config.
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    f"{ENV_PREFIX}ENVIRONMENT",
    f"{ENV_PREFIX}TEMPLATE",
    f"{ENV_PREFIX}HOOK_EVENT",
    f"{ENV_PREFIX}HOOK_WHEN",
    f"{ENV_PREFIX}HOOK_EXPORTS",
    f"{ENV_PREFIX}SETUP_CHANGED",
    f"{ENV_PREFIX}TEARDOWN_STATE",
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PhasesConfig:
    """Directory names and state key prefixes for the two phases."""

    infrastructure_dir: str = "infra"
    application_dir: str = "app"
    infrastructure_key: str = "infra"
    application_key: str = "app"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "infrastructure_dir": self.infrastructure_dir,
            "application_dir": self.application_dir,
            "infrastructure_key": self.infrastructure_key,
            "application_key": self.application_key,
        }


@dataclass(frozen=True)
class BackendConfig:
    """Remote state container settings."""

    bucket_prefix: str = "terraform-state"
    region: str = "fr-par"
    endpoint: str = "https://s3.fr-par.scw.cloud"
    versioning: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bucket_prefix": self.bucket_prefix,
            "region": self.region,
            "endpoint": self.endpoint,
            "versioning": self.versioning,
        }


@dataclass(frozen=True)
class ToolsConfig:
    """External binaries driven by the orchestrator."""

    terraform_bin: str = "terraform"
    kubectl_bin: str = "kubectl"
    storage_bin: str = "aws"
    terraform_min_version: str = "1.12.0"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "terraform_bin": self.terraform_bin,
            "kubectl_bin": self.kubectl_bin,
            "storage_bin": self.storage_bin,
            "terraform_min_version": self.terraform_min_version,
        }


@dataclass(frozen=True)
class TimeoutsConfig:
    """Upper bounds (seconds) for long-running external operations."""

    plan: float = 1800.0
    apply: float = 3600.0
    destroy: float = 3600.0
    kubectl: float = 60.0
    storage: float = 60.0
    cluster_ready: float = 300.0
    drain: float = 120.0
    volume_job: float = 600.0
    hook: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "plan": self.plan,
            "apply": self.apply,
            "destroy": self.destroy,
            "kubectl": self.kubectl,
            "storage": self.storage,
            "cluster_ready": self.cluster_ready,
            "drain": self.drain,
            "volume_job": self.volume_job,
            "hook": self.hook,
        }


@dataclass(frozen=True)
class HooksConfig:
    """Hook discovery and environment inheritance."""

    dir: Path
    inherit_env: tuple[str, ...] = ("PATH", "HOME", "USER", "LANG")
    inherit_prefixes: tuple[str, ...] = ("SLACK_", "JIRA_", "MONITORING_", "SCW_")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "dir": str(self.dir),
            "inherit_env": list(self.inherit_env),
            "inherit_prefixes": list(self.inherit_prefixes),
        }


@dataclass(frozen=True)
class ClusterConfig:
    """Names of cluster objects the orchestrator inspects."""

    application_namespace: str = "coder"
    monitoring_namespace: str = "monitoring"
    application_deployment: str = "coder"
    workload_pattern: str = r"coder-.*workspace"
    database_secrets: tuple[str, ...] = ("coder-db-secret", "coder-database")
    kubeconfig_output: str = "kubeconfig"
    required_outputs: tuple[str, ...] = ("kubeconfig",)
    required_storage_classes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "application_namespace": self.application_namespace,
            "monitoring_namespace": self.monitoring_namespace,
            "application_deployment": self.application_deployment,
            "workload_pattern": self.workload_pattern,
            "database_secrets": list(self.database_secrets),
            "kubeconfig_output": self.kubeconfig_output,
            "required_outputs": list(self.required_outputs),
            "required_storage_classes": list(self.required_storage_classes),
        }


@dataclass(frozen=True)
class TeardownConfig:
    """Safety gate defaults for destructive runs."""

    delay_seconds: int = 300
    production_phrase: str = "DELETE PRODUCTION"
    drain_grace_period: int = 60
    preserved_resource_prefixes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "delay_seconds": self.delay_seconds,
            "production_phrase": self.production_phrase,
            "drain_grace_period": self.drain_grace_period,
            "preserved_resource_prefixes": list(self.preserved_resource_prefixes),
        }


@dataclass(frozen=True)
class BudgetConfig:
    """Monthly budget gate applied before infrastructure apply."""

    monthly_limit: float | None = None
    alert_threshold: int = 80
    estimates: Mapping[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "monthly_limit": self.monthly_limit,
            "alert_threshold": self.alert_threshold,
            "estimates": dict(self.estimates),
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage, retention and compression defaults."""

    root: Path
    index: Path
    retention_days: int = 30
    compression: str = "gzip"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "retention_days": self.retention_days,
            "compression": self.compression,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for platformctl."""

    config_file: Path
    project: str
    project_root: Path
    environments_dir: Path
    templates_catalog_dir: Path
    templates_dir: Path | None
    logs_dir: Path
    kube_dir: Path
    archive_dir: Path
    required_credentials: tuple[str, ...]
    phases: PhasesConfig
    backend: BackendConfig
    tools: ToolsConfig
    timeouts: TimeoutsConfig
    hooks: HooksConfig
    cluster: ClusterConfig
    teardown: TeardownConfig
    budget: BudgetConfig
    backups: BackupConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "project": self.project,
            "project_root": str(self.project_root),
            "environments_dir": str(self.environments_dir),
            "templates_catalog_dir": str(self.templates_catalog_dir),
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "logs_dir": str(self.logs_dir),
            "kube_dir": str(self.kube_dir),
            "archive_dir": str(self.archive_dir),
            "required_credentials": list(self.required_credentials),
            "phases": self.phases.to_dict(),
            "backend": self.backend.to_dict(),
            "tools": self.tools.to_dict(),
            "timeouts": self.timeouts.to_dict(),
            "hooks": self.hooks.to_dict(),
            "cluster": self.cluster.to_dict(),
            "teardown": self.teardown.to_dict(),
            "budget": self.budget.to_dict(),
            "backups": self.backups.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/platformctl/config.yml",
    "project": "coder",
    "project_root": ".",
    "environments_dir": None,  # derived from project_root when absent
    "templates_catalog_dir": None,
    "templates_dir": None,
    "logs_dir": "~/.local/state/platformctl/logs",
    "kube_dir": "~/.kube",
    "archive_dir": None,
    "required_credentials": ["SCW_ACCESS_KEY", "SCW_SECRET_KEY", "SCW_DEFAULT_PROJECT_ID"],
    "phases": {
        "infrastructure_dir": "infra",
        "application_dir": "app",
        "infrastructure_key": "infra",
        "application_key": "app",
    },
    "backend": {
        "bucket_prefix": "terraform-state",
        "region": "fr-par",
        "endpoint": None,  # derived from region when absent
        "versioning": True,
    },
    "tools": {
        "terraform_bin": "terraform",
        "kubectl_bin": "kubectl",
        "storage_bin": "aws",
        "terraform_min_version": "1.12.0",
    },
    "timeouts": {
        "plan": 1800,
        "apply": 3600,
        "destroy": 3600,
        "kubectl": 60,
        "storage": 60,
        "cluster_ready": 300,
        "drain": 120,
        "volume_job": 600,
        "hook": 300,
    },
    "hooks": {
        "dir": None,
        "inherit_env": ["PATH", "HOME", "USER", "LANG"],
        "inherit_prefixes": ["SLACK_", "JIRA_", "MONITORING_", "SCW_"],
    },
    "cluster": {
        "application_namespace": "coder",
        "monitoring_namespace": "monitoring",
        "application_deployment": "coder",
        "workload_pattern": "coder-.*workspace",
        "database_secrets": ["coder-db-secret", "coder-database"],
        "kubeconfig_output": "kubeconfig",
        "required_outputs": ["kubeconfig"],
        "required_storage_classes": [],
    },
    "teardown": {
        "delay_seconds": 300,
        "production_phrase": "DELETE PRODUCTION",
        "drain_grace_period": 60,
        "preserved_resource_prefixes": [],
    },
    "budget": {
        "monthly_limit": None,
        "alert_threshold": 80,
        "estimates": {"dev": 53.70, "staging": 97.85, "prod": 374.50},
    },
    "backups": {
        "root": None,
        "index": None,
        "retention_days": 30,
        "compression": "gzip",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
# Sections whose keys are free-form and therefore not checked against DEFAULTS.
FREE_FORM_SECTIONS = {"budget.estimates"}
ALLOWED_BACKUP_COMPRESSION = {"gzip", "none"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for key, default in DEFAULTS.items():
        if isinstance(default, Mapping) and raw.get(key) is not None:
            _reject_unknown(raw[key], _as_dict(default, key), key)

    backups_map = _as_dict(raw.get("backups"), "backups")
    compression = str(backups_map.get("compression", "gzip"))
    if compression not in ALLOWED_BACKUP_COMPRESSION:
        allowed = ", ".join(sorted(ALLOWED_BACKUP_COMPRESSION))
        raise ConfigError(f"Unsupported backup compression '{compression}'. Allowed: {allowed}.")

    budget_map = _as_dict(raw.get("budget"), "budget")
    threshold = _expect_int(budget_map.get("alert_threshold"), "budget.alert_threshold", default=80)
    if not 0 < threshold <= 100:
        raise ConfigError("budget.alert_threshold must be between 1 and 100.")

    teardown_map = _as_dict(raw.get("teardown"), "teardown")
    delay = _expect_int(teardown_map.get("delay_seconds"), "teardown.delay_seconds", default=300)
    if delay < 0:
        raise ConfigError("teardown.delay_seconds must be non-negative.")
    phrase = teardown_map.get("production_phrase")
    if phrase is not None and not str(phrase).strip():
        raise ConfigError("teardown.production_phrase must be a non-empty string.")


def _reject_unknown(value: object, defaults: Mapping[str, object], label: str) -> None:
    mapping = _as_dict(value, label)
    unknown = set(mapping.keys()) - set(defaults.keys())
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown {label} configuration keys: {joined}.")
    for key, default in defaults.items():
        nested_label = f"{label}.{key}"
        if nested_label in FREE_FORM_SECTIONS:
            continue
        if isinstance(default, Mapping) and mapping.get(key) is not None:
            _reject_unknown(mapping[key], _as_dict(default, nested_label), nested_label)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    project = _expect_str(raw.get("project", "coder"), "project").strip()
    if not project:
        raise ConfigError("project must be a non-empty string.")
    project_root = _to_path(raw.get("project_root"))
    environments_dir = _path_or(raw.get("environments_dir"), project_root / "environments")
    templates_catalog_dir = _path_or(raw.get("templates_catalog_dir"), project_root / "templates")
    templates_value = raw.get("templates_dir")
    templates_dir = _to_path(templates_value) if templates_value else None
    logs_dir = _to_path(raw.get("logs_dir"))
    kube_dir = _to_path(raw.get("kube_dir"))
    archive_dir = _path_or(raw.get("archive_dir"), project_root / "archives" / "teardown")
    required_credentials = _as_str_tuple(raw.get("required_credentials"), "required_credentials")

    phases_map = _as_dict(raw.get("phases"), "phases")
    phases = PhasesConfig(
        infrastructure_dir=str(phases_map.get("infrastructure_dir", "infra")),
        application_dir=str(phases_map.get("application_dir", "app")),
        infrastructure_key=str(phases_map.get("infrastructure_key", "infra")),
        application_key=str(phases_map.get("application_key", "app")),
    )

    backend_map = _as_dict(raw.get("backend"), "backend")
    region = str(backend_map.get("region", "fr-par"))
    endpoint_value = backend_map.get("endpoint")
    backend = BackendConfig(
        bucket_prefix=str(backend_map.get("bucket_prefix", "terraform-state")),
        region=region,
        endpoint=str(endpoint_value) if endpoint_value else f"https://s3.{region}.scw.cloud",
        versioning=bool(backend_map.get("versioning", True)),
    )

    tools_map = _as_dict(raw.get("tools"), "tools")
    tools = ToolsConfig(
        terraform_bin=str(tools_map.get("terraform_bin", "terraform")),
        kubectl_bin=str(tools_map.get("kubectl_bin", "kubectl")),
        storage_bin=str(tools_map.get("storage_bin", "aws")),
        terraform_min_version=str(tools_map.get("terraform_min_version", "1.12.0")),
    )

    timeouts_map = _as_dict(raw.get("timeouts"), "timeouts")
    default_timeouts = TimeoutsConfig()
    timeouts = TimeoutsConfig(
        **{
            name: _expect_positive_float(
                timeouts_map.get(name),
                f"timeouts.{name}",
                default=cast(float, getattr(default_timeouts, name)),
            )
            for name in default_timeouts.to_dict()
        }
    )

    hooks_map = _as_dict(raw.get("hooks"), "hooks")
    hooks = HooksConfig(
        dir=_path_or(hooks_map.get("dir"), project_root / "scripts" / "hooks"),
        inherit_env=_as_str_tuple(hooks_map.get("inherit_env", []), "hooks.inherit_env"),
        inherit_prefixes=_as_str_tuple(
            hooks_map.get("inherit_prefixes", []), "hooks.inherit_prefixes"
        ),
    )

    cluster_map = _as_dict(raw.get("cluster"), "cluster")
    cluster = ClusterConfig(
        application_namespace=str(cluster_map.get("application_namespace", "coder")),
        monitoring_namespace=str(cluster_map.get("monitoring_namespace", "monitoring")),
        application_deployment=str(cluster_map.get("application_deployment", "coder")),
        workload_pattern=str(cluster_map.get("workload_pattern", "coder-.*workspace")),
        database_secrets=_as_str_tuple(
            cluster_map.get("database_secrets", []), "cluster.database_secrets"
        ),
        kubeconfig_output=str(cluster_map.get("kubeconfig_output", "kubeconfig")),
        required_outputs=_as_str_tuple(
            cluster_map.get("required_outputs", []), "cluster.required_outputs"
        ),
        required_storage_classes=_as_str_tuple(
            cluster_map.get("required_storage_classes", []),
            "cluster.required_storage_classes",
        ),
    )

    teardown_map = _as_dict(raw.get("teardown"), "teardown")
    teardown = TeardownConfig(
        delay_seconds=_expect_int(
            teardown_map.get("delay_seconds"), "teardown.delay_seconds", default=300
        ),
        production_phrase=str(teardown_map.get("production_phrase", "DELETE PRODUCTION")),
        drain_grace_period=_expect_int(
            teardown_map.get("drain_grace_period"), "teardown.drain_grace_period", default=60
        ),
        preserved_resource_prefixes=_as_str_tuple(
            teardown_map.get("preserved_resource_prefixes", []),
            "teardown.preserved_resource_prefixes",
        ),
    )

    budget_map = _as_dict(raw.get("budget"), "budget")
    limit_value = budget_map.get("monthly_limit")
    estimates_map = _as_dict(budget_map.get("estimates"), "budget.estimates")
    budget = BudgetConfig(
        monthly_limit=(
            _expect_positive_float(limit_value, "budget.monthly_limit", default=1.0)
            if limit_value not in (None, "")
            else None
        ),
        alert_threshold=_expect_int(
            budget_map.get("alert_threshold"), "budget.alert_threshold", default=80
        ),
        estimates={
            name: _expect_positive_float(value, f"budget.estimates.{name}", default=1.0)
            for name, value in estimates_map.items()
        },
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    backups_root = _path_or(backups_map.get("root"), project_root / "backups")
    backups_index_value = backups_map.get("index")
    backups = BackupConfig(
        root=backups_root,
        index=(
            _to_path(backups_index_value) if backups_index_value else backups_root / "backups.json"
        ),
        retention_days=_expect_int(
            backups_map.get("retention_days"), "backups.retention_days", default=30
        ),
        compression=str(backups_map.get("compression", "gzip")),
    )

    return AppConfig(
        config_file=config_file,
        project=project,
        project_root=project_root,
        environments_dir=environments_dir,
        templates_catalog_dir=templates_catalog_dir,
        templates_dir=templates_dir,
        logs_dir=logs_dir,
        kube_dir=kube_dir,
        archive_dir=archive_dir,
        required_credentials=required_credentials,
        phases=phases,
        backend=backend,
        tools=tools,
        timeouts=timeouts,
        hooks=hooks,
        cluster=cluster,
        teardown=teardown,
        budget=budget,
        backups=backups,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _as_str_tuple(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        # Comma separated values are accepted from environment overrides.
        return tuple(item.strip() for item in value.split(",") if item.strip())
    return tuple(str(item) for item in _as_sequence(value, label))


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _path_or(value: object, default: Path) -> Path:
    if value in (None, ""):
        return default
    return _to_path(value)


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackendConfig",
    "BackupConfig",
    "BudgetConfig",
    "ClusterConfig",
    "ConfigError",
    "HooksConfig",
    "PhasesConfig",
    "TeardownConfig",
    "TimeoutsConfig",
    "ToolsConfig",
    "load_config",
]
