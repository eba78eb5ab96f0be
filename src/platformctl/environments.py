"""Environment identifiers and on-disk workspace layout detection."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .config import AppConfig


class PreconditionError(RuntimeError):
    """Raised when a run cannot start (bad input, missing tool or layout)."""


class Environment(str, Enum):
    """Closed set of deployable environments."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"

    @property
    def is_most_sensitive(self) -> bool:
        """Return ``True`` for the environment that needs the strongest gate."""
        return self is Environment.PROD

    @classmethod
    def parse(cls, value: str) -> Environment:
        """Return the environment named *value* or raise :class:`PreconditionError`."""
        normalised = (value or "").strip().lower()
        for member in cls:
            if member.value == normalised:
                return member
        allowed = ", ".join(member.value for member in cls)
        raise PreconditionError(f"Invalid environment '{value}'. Allowed: {allowed}.")


class Phase(str, Enum):
    """Ordered provisioning stages."""

    INFRASTRUCTURE = "infrastructure"
    APPLICATION = "application"


class Layout(str, Enum):
    """How an environment's declarative sources and remote state are organised."""

    TWO_PHASE = "two-phase"
    LEGACY = "legacy"


@dataclass(slots=True, frozen=True)
class EnvironmentWorkspace:
    """Resolved source directories for one environment."""

    environment: Environment
    root: Path
    layout: Layout
    infrastructure_dir: Path
    application_dir: Path | None

    def phase_dir(self, phase: Phase) -> Path:
        """Return the working directory for *phase*."""
        if phase is Phase.INFRASTRUCTURE:
            return self.infrastructure_dir
        if self.application_dir is None:
            raise PreconditionError(
                f"Environment '{self.environment.value}' uses the legacy layout and has "
                "no separate application phase."
            )
        return self.application_dir

    @property
    def phases(self) -> tuple[Phase, ...]:
        """Return the phases present, in creation order."""
        if self.layout is Layout.LEGACY:
            return (Phase.INFRASTRUCTURE,)
        return (Phase.INFRASTRUCTURE, Phase.APPLICATION)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "environment": self.environment.value,
            "root": str(self.root),
            "layout": self.layout.value,
            "infrastructure_dir": str(self.infrastructure_dir),
            "application_dir": str(self.application_dir) if self.application_dir else None,
        }


def environment_root(config: AppConfig, environment: Environment) -> Path:
    """Return ``<environments_dir>/<env>``."""
    return config.environments_dir / environment.value


def resolve_workspace(config: AppConfig, environment: Environment) -> EnvironmentWorkspace:
    """Detect whether *environment* uses the two-phase or the legacy layout."""
    root = environment_root(config, environment)
    infra_dir = root / config.phases.infrastructure_dir
    app_dir = root / config.phases.application_dir
    if (infra_dir / "main.tf").is_file() and (app_dir / "main.tf").is_file():
        return EnvironmentWorkspace(
            environment=environment,
            root=root,
            layout=Layout.TWO_PHASE,
            infrastructure_dir=infra_dir,
            application_dir=app_dir,
        )
    if (root / "main.tf").is_file():
        return EnvironmentWorkspace(
            environment=environment,
            root=root,
            layout=Layout.LEGACY,
            infrastructure_dir=root,
            application_dir=None,
        )
    raise PreconditionError(
        f"No configuration found for environment '{environment.value}': expected "
        f"{infra_dir / 'main.tf'} and {app_dir / 'main.tf'}, or {root / 'main.tf'}."
    )


def discover_templates(config: AppConfig) -> dict[str, Path]:
    """Return workspace template ids mapped to their directories."""
    catalog = config.templates_catalog_dir
    if not catalog.is_dir():
        return {}
    found: dict[str, Path] = {}
    for main_file in sorted(catalog.rglob("main.tf")):
        found.setdefault(main_file.parent.name, main_file.parent)
    return found


def resolve_template(config: AppConfig, template_id: str | None) -> Path | None:
    """Return the directory for *template_id* or raise when it is unknown."""
    if not template_id:
        return None
    templates = discover_templates(config)
    if template_id in templates:
        return templates[template_id]
    available = ", ".join(sorted(templates)) or "none"
    raise PreconditionError(f"Unknown template '{template_id}'. Available: {available}.")


def kubeconfig_path(config: AppConfig, environment: Environment) -> Path:
    """Return the cluster access artifact path for *environment*."""
    return config.kube_dir / f"config-{config.project}-{environment.value}"


__all__ = [
    "Environment",
    "EnvironmentWorkspace",
    "Layout",
    "Phase",
    "PreconditionError",
    "discover_templates",
    "environment_root",
    "kubeconfig_path",
    "resolve_template",
    "resolve_workspace",
]
