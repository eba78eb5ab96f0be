"""Backup component handlers.

Each :class:`BackupComponent` maps to one handler that knows how to capture
the component into a directory and how to restore it from that directory.
Handlers are looked up in a :class:`ComponentRegistry`; adding a component
means registering another handler.
"""
from __future__ import annotations

import json
import logging
import shutil
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import yaml

from ..backend import BackendPointer, StateBackendCoordinator
from ..config import AppConfig
from ..environments import (
    Environment,
    EnvironmentWorkspace,
    Phase,
    PreconditionError,
    environment_root,
    resolve_workspace,
)
from ..orchestrator import write_cluster_access_artifact
from ..providers.kubectl import KubectlProvider
from ..providers.terraform import VAR_FILE_NAME, TerraformProvider
from ..validation.checks import DATABASE_FIELDS, DATABASE_IMAGE, find_database_secret
from .archive import tree_size
from .models import (
    BackupComponent,
    ComponentRecord,
    ComponentSkipped,
    ComponentStatus,
    RestoreCancelled,
    RestoreError,
)

_LOG = logging.getLogger(__name__)

VOLUME_IMAGE = "busybox:1.36"

# Apply order on restore; capture uses the same order.
MANIFEST_KINDS: tuple[str, ...] = (
    "configmaps",
    "secrets",
    "serviceaccounts",
    "persistentvolumeclaims",
    "services",
    "deployments",
    "statefulsets",
    "ingresses",
)

_SERVER_METADATA = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
    "ownerReferences",
)
_LAST_APPLIED = "kubectl.kubernetes.io/last-applied-configuration"
_STATE_IGNORE = shutil.ignore_patterns(".terraform", "*.tfplan", "backend.hcl")


@dataclass(slots=True, frozen=True)
class ComponentContext:
    """Collaborators a handler may use for one environment."""

    config: AppConfig
    environment: Environment
    terraform: TerraformProvider
    kubectl: KubectlProvider
    backend: StateBackendCoordinator | None = None
    source_environment: str | None = None
    confirm: Callable[[str], bool] | None = None

    def workspace(self) -> EnvironmentWorkspace | None:
        """Return the resolved workspace, or ``None`` when it does not exist."""
        try:
            return resolve_workspace(self.config, self.environment)
        except PreconditionError:
            return None

    @property
    def namespace(self) -> str:
        """Return the application namespace."""
        return self.config.cluster.application_namespace


class ComponentHandler(Protocol):
    """Capture/restore contract every component implements."""

    component: BackupComponent

    def capture(self, context: ComponentContext, destination: Path) -> ComponentRecord:
        """Write the component below *destination*; raise ComponentSkipped when absent."""
        ...

    def restore(self, context: ComponentContext, source: Path) -> str:
        """Replay the component from *source* and return a short summary."""
        ...


def _captured(destination: Path, message: str) -> ComponentRecord:
    size, files = tree_size(destination)
    return ComponentRecord(
        status=ComponentStatus.CAPTURED,
        size_bytes=size,
        files=tuple(files),
        message=message,
    )


def _require_cluster(context: ComponentContext) -> KubectlProvider:
    if not context.kubectl.configured:
        raise ComponentSkipped("no cluster access artifact for this environment")
    return context.kubectl


# ---------------------------------------------------------------------------
# Infrastructure state
# ---------------------------------------------------------------------------


def _ensure_initialised(terraform: TerraformProvider, workdir: Path) -> None:
    if (workdir / ".terraform").is_dir():
        return
    backend_file = workdir / "backend.hcl"
    terraform.init(workdir, backend_config=backend_file if backend_file.is_file() else None)


class InfrastructureStateHandler:
    """Declarative configuration plus the pulled remote state of each phase."""

    component = BackupComponent.INFRASTRUCTURE

    def capture(self, context: ComponentContext, destination: Path) -> ComponentRecord:
        """Copy the environment sources and pull each phase's state."""
        workspace = context.workspace()
        if workspace is None:
            raise ComponentSkipped(f"no configuration for '{context.environment.value}'")
        shutil.copytree(workspace.root, destination / "config", ignore=_STATE_IGNORE)
        pulled: list[str] = []
        for phase in workspace.phases:
            workdir = workspace.phase_dir(phase)
            _ensure_initialised(context.terraform, workdir)
            context.terraform.state_pull(workdir, destination / "state" / f"{phase.value}.tfstate")
            pulled.append(phase.value)
        return _captured(destination, f"configuration and state for {', '.join(pulled)}")

    def restore(self, context: ComponentContext, source: Path) -> str:
        """Copy sources back, re-point the backend, then plan and apply each phase.

        Archived state is pushed only into the environment it was taken from.
        Any other target is provisioned afresh from the configuration, so its
        state never tracks the source environment's resources. The cluster
        access artifact is rewritten from the infrastructure outputs before
        the application phase runs.
        """
        config_dir = source / "config"
        if not config_dir.is_dir():
            raise RestoreError("archive holds no infrastructure configuration")
        root = environment_root(context.config, context.environment)
        shutil.copytree(config_dir, root, dirs_exist_ok=True)
        workspace = resolve_workspace(context.config, context.environment)
        same_environment = context.source_environment in (None, context.environment.value)
        infra_pointer: BackendPointer | None = None
        pushed: list[str] = []
        applied: list[str] = []
        for phase in workspace.phases:
            workdir = workspace.phase_dir(phase)
            pointer: BackendPointer | None = None
            if context.backend is not None:
                pointer = context.backend.ensure(
                    context.environment, phase, preferred_layout=workspace.layout
                )
                context.backend.write_backend_config(pointer, workdir)
            backend_file = workdir / "backend.hcl"
            context.terraform.init(
                workdir, backend_config=backend_file if backend_file.is_file() else None
            )
            state_file = source / "state" / f"{phase.value}.tfstate"
            if same_environment and state_file.is_file() and state_file.stat().st_size > 0:
                context.terraform.state_push(workdir, state_file)
                pushed.append(phase.value)
            var_file = context.terraform.write_var_file(
                workdir, _restored_variables(workdir, context.environment, infra_pointer)
            )
            plan = context.terraform.plan(
                workdir, workdir / f"restore-{phase.value}.tfplan", var_file=var_file
            )
            if not plan.is_empty:
                prompt = (
                    f"Apply restored {phase.value} for {context.environment.value} "
                    f"({plan.describe()})?"
                )
                if context.confirm is not None and not context.confirm(prompt):
                    raise RestoreCancelled(f"Restore cancelled before applying {phase.value}.")
                context.terraform.apply(workdir, plan.plan_file)
                applied.append(phase.value)
            if phase is Phase.INFRASTRUCTURE:
                infra_pointer = pointer
                write_cluster_access_artifact(
                    context.config, context.environment, context.terraform.outputs(workdir)
                )
        return (
            f"configuration restored to {root}; "
            f"state pushed for {', '.join(pushed) or 'none'}; "
            f"applied {', '.join(applied) or 'nothing'}"
        )


def _restored_variables(
    workdir: Path, environment: Environment, infra_pointer: BackendPointer | None
) -> dict[str, object]:
    """Archived variables re-targeted at *environment* and its own state handoff."""
    path = workdir / VAR_FILE_NAME
    variables: dict[str, object] = {}
    if path.is_file():
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RestoreError(f"archived variables in {path} are not valid JSON: {exc}") from exc
        if isinstance(loaded, dict):
            variables.update(loaded)
    variables["environment"] = environment.value
    if infra_pointer is not None:
        variables.update(infra_pointer.remote_state_inputs())
    return variables


# ---------------------------------------------------------------------------
# Cluster manifests
# ---------------------------------------------------------------------------


def clean_manifest(item: Mapping[str, Any]) -> dict[str, Any]:
    """Strip server-managed fields so the object re-applies cleanly."""
    cleaned: dict[str, Any] = {key: value for key, value in item.items() if key != "status"}
    metadata = dict(cleaned.get("metadata") or {})
    for key in _SERVER_METADATA:
        metadata.pop(key, None)
    annotations = dict(metadata.get("annotations") or {})
    annotations.pop(_LAST_APPLIED, None)
    if annotations:
        metadata["annotations"] = annotations
    else:
        metadata.pop("annotations", None)
    cleaned["metadata"] = metadata
    spec = cleaned.get("spec")
    if isinstance(spec, Mapping):
        spec = dict(spec)
        kind = cleaned.get("kind")
        if kind == "Service":
            for key in ("clusterIP", "clusterIPs"):
                spec.pop(key, None)
        elif kind == "PersistentVolumeClaim":
            spec.pop("volumeName", None)
        cleaned["spec"] = spec
    return cleaned


def _is_managed_secret(item: Mapping[str, Any]) -> bool:
    return item.get("type") == "kubernetes.io/service-account-token"


class ClusterManifestsHandler:
    """Namespaced objects of the application and monitoring namespaces as YAML."""

    component = BackupComponent.KUBERNETES

    def _namespaces(self, context: ComponentContext) -> Iterator[str]:
        cluster = context.config.cluster
        yield cluster.application_namespace
        if cluster.monitoring_namespace != cluster.application_namespace:
            yield cluster.monitoring_namespace

    def capture(self, context: ComponentContext, destination: Path) -> ComponentRecord:
        """Export cleaned manifests, one YAML file per kind and namespace."""
        kubectl = _require_cluster(context)
        namespaces: list[str] = []
        for namespace in self._namespaces(context):
            if not kubectl.exists("namespace", namespace):
                _LOG.info("Namespace %s not found; not exporting it", namespace)
                continue
            namespaces.append(namespace)
            target = destination / namespace
            target.mkdir(parents=True, exist_ok=True)
            namespace_doc = clean_manifest(kubectl.get("namespace", namespace))
            (target / "namespace.yaml").write_text(
                yaml.safe_dump(namespace_doc, sort_keys=False), encoding="utf-8"
            )
            for kind in MANIFEST_KINDS:
                items = [
                    clean_manifest(item)
                    for item in kubectl.items(kind, namespace=namespace)
                    if not _is_managed_secret(item)
                ]
                if not items:
                    continue
                (target / f"{kind}.yaml").write_text(
                    yaml.safe_dump_all(items, sort_keys=False), encoding="utf-8"
                )
        if not namespaces:
            raise ComponentSkipped("no application or monitoring namespace")
        return _captured(destination, f"namespaces: {', '.join(namespaces)}")

    def restore(self, context: ComponentContext, source: Path) -> str:
        """Apply namespaces first, then each kind in dependency order."""
        kubectl = context.kubectl
        if not kubectl.configured:
            raise RestoreError("cluster access artifact is missing; restore infrastructure first")
        applied = 0
        for namespace_dir in sorted(path for path in source.iterdir() if path.is_dir()):
            documents = [namespace_dir / "namespace.yaml"]
            documents.extend(namespace_dir / f"{kind}.yaml" for kind in MANIFEST_KINDS)
            for document in documents:
                if document.is_file():
                    kubectl.apply_manifest(document.read_text(encoding="utf-8"))
                    applied += 1
        if not applied:
            raise RestoreError("archive holds no cluster manifests")
        return f"applied {applied} manifest files"


# ---------------------------------------------------------------------------
# Database dump
# ---------------------------------------------------------------------------


class DatabaseDumpHandler:
    """Logical dump of the application database, taken from inside the cluster."""

    component = BackupComponent.DATABASE
    dump_name = "database.sql"

    def _credentials(self, context: ComponentContext) -> dict[str, str]:
        kubectl = _require_cluster(context)
        cluster = context.config.cluster
        if not kubectl.exists("namespace", cluster.application_namespace):
            raise ComponentSkipped(f"namespace '{cluster.application_namespace}' not found")
        secret = find_database_secret(
            kubectl, cluster.application_namespace, cluster.database_secrets
        )
        if secret is None:
            raise ComponentSkipped("no database secret")
        values = kubectl.secret_values(secret, namespace=cluster.application_namespace)
        missing = [key for key in DATABASE_FIELDS if not values.get(key)]
        if missing:
            raise RestoreError(f"database secret '{secret}' lacks {', '.join(missing)}")
        return values

    def _client(
        self,
        context: ComponentContext,
        values: Mapping[str, str],
        program: str,
        *extra: str,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> None:
        result = context.kubectl.run_pod(
            f"{program.replace('_', '-')}-{int(time.time())}",
            image=DATABASE_IMAGE,
            namespace=context.namespace,
            command=[
                program,
                "-h",
                values["host"],
                "-U",
                values["username"],
                "-d",
                values["database"],
                *extra,
            ],
            env={"PGPASSWORD": values["password"]},
            stdin_path=stdin_path,
            stdout_path=stdout_path,
            timeout=context.config.timeouts.volume_job,
        )
        if not result.ok:
            raise RestoreError(f"{program} failed: {result.message()}")

    def capture(self, context: ComponentContext, destination: Path) -> ComponentRecord:
        """Run ``pg_dump`` in a throwaway pod."""
        values = self._credentials(context)
        destination.mkdir(parents=True, exist_ok=True)
        self._client(
            context,
            values,
            "pg_dump",
            "--clean",
            "--if-exists",
            "--no-owner",
            stdout_path=destination / self.dump_name,
        )
        return _captured(destination, f"dump of database '{values['database']}'")

    def restore(self, context: ComponentContext, source: Path) -> str:
        """Replay the dump through ``psql``; overwrites live data."""
        dump = source / self.dump_name
        if not dump.is_file():
            raise RestoreError("archive holds no database dump")
        try:
            values = self._credentials(context)
        except ComponentSkipped as exc:
            raise RestoreError(f"database is not reachable: {exc}") from exc
        self._client(context, values, "psql", "-v", "ON_ERROR_STOP=1", "-q", stdin_path=dump)
        return f"database '{values['database']}' restored"


# ---------------------------------------------------------------------------
# Workspace volumes
# ---------------------------------------------------------------------------


def _volume_overrides(claim: str, name: str, command: list[str]) -> dict[str, object]:
    return {
        "spec": {
            "containers": [
                {
                    "name": name,
                    "image": VOLUME_IMAGE,
                    "command": command,
                    "stdin": True,
                    "stdinOnce": True,
                    "volumeMounts": [{"name": "data", "mountPath": "/data"}],
                }
            ],
            "volumes": [{"name": "data", "persistentVolumeClaim": {"claimName": claim}}],
        }
    }


class WorkspaceVolumesHandler:
    """Contents of every persistent volume claim in the application namespace."""

    component = BackupComponent.WORKSPACE_DATA

    def _run(
        self,
        context: ComponentContext,
        claim: str,
        command: list[str],
        *,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> None:
        name = f"volume-{claim}"[:50].rstrip("-")
        result = context.kubectl.run_pod(
            name,
            image=VOLUME_IMAGE,
            namespace=context.namespace,
            command=command,
            overrides=_volume_overrides(claim, name, command),
            stdin_path=stdin_path,
            stdout_path=stdout_path,
            timeout=context.config.timeouts.volume_job,
        )
        if not result.ok:
            raise RestoreError(f"volume job for {claim} failed: {result.message()}")

    def capture(self, context: ComponentContext, destination: Path) -> ComponentRecord:
        """Stream a tarball of each claim through a helper pod."""
        kubectl = _require_cluster(context)
        if not kubectl.exists("namespace", context.namespace):
            raise ComponentSkipped(f"namespace '{context.namespace}' not found")
        claims = kubectl.names("persistentvolumeclaims", namespace=context.namespace)
        if not claims:
            raise ComponentSkipped("no persistent volume claims")
        destination.mkdir(parents=True, exist_ok=True)
        for claim in claims:
            self._run(
                context,
                claim,
                ["tar", "-czf", "-", "-C", "/data", "."],
                stdout_path=destination / f"{claim}.tar.gz",
            )
        return _captured(destination, f"{len(claims)} volumes")

    def restore(self, context: ComponentContext, source: Path) -> str:
        """Unpack each archived claim into the live claim of the same name."""
        if not context.kubectl.configured:
            raise RestoreError("cluster access artifact is missing; restore infrastructure first")
        archives = sorted(source.glob("*.tar.gz"))
        if not archives:
            raise RestoreError("archive holds no workspace volumes")
        live = set(context.kubectl.names("persistentvolumeclaims", namespace=context.namespace))
        restored: list[str] = []
        for archive in archives:
            claim = archive.name.removesuffix(".tar.gz")
            if claim not in live:
                raise RestoreError(f"claim '{claim}' does not exist; restore manifests first")
            self._run(context, claim, ["tar", "-xzf", "-", "-C", "/data"], stdin_path=archive)
            restored.append(claim)
        return f"restored volumes: {', '.join(restored)}"


class ComponentRegistry:
    """Handlers looked up by component."""

    def __init__(self) -> None:
        """Create an empty registry."""
        self._handlers: dict[BackupComponent, ComponentHandler] = {}

    def register(self, handler: ComponentHandler) -> None:
        """Register *handler* for its component, replacing any previous one."""
        self._handlers[handler.component] = handler

    def get(self, component: BackupComponent) -> ComponentHandler:
        """Return the handler for *component*."""
        try:
            return self._handlers[component]
        except KeyError as exc:
            raise RestoreError(f"No handler registered for '{component.value}'.") from exc

    def __contains__(self, component: object) -> bool:
        """Return ``True`` when *component* has a handler."""
        return component in self._handlers


def default_component_registry() -> ComponentRegistry:
    """Return a registry holding the built-in handlers."""
    registry = ComponentRegistry()
    registry.register(InfrastructureStateHandler())
    registry.register(ClusterManifestsHandler())
    registry.register(DatabaseDumpHandler())
    registry.register(WorkspaceVolumesHandler())
    return registry


__all__ = [
    "ClusterManifestsHandler",
    "ComponentContext",
    "ComponentHandler",
    "ComponentRegistry",
    "DatabaseDumpHandler",
    "InfrastructureStateHandler",
    "WorkspaceVolumesHandler",
    "clean_manifest",
    "default_component_registry",
]
