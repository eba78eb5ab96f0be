"""Two-phase setup orchestration.

The infrastructure phase is planned and applied first; its outputs are read
back, the cluster access artifact is written to disk, and only then is the
application phase initialised against its own state key with read-only access
to the infrastructure state. The artifact is written before anything in the
application phase runs, so an application failure never takes cluster access
away from the operator.

There is no rollback. Every step is safe to re-run: an unchanged
configuration plans to zero changes and the apply is skipped.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .backend import BackendPointer, StateBackendCoordinator
from .config import AppConfig
from .environments import (
    Environment,
    EnvironmentWorkspace,
    Layout,
    Phase,
    kubeconfig_path,
    resolve_template,
    resolve_workspace,
)
from .providers.kubectl import KubectlError, KubectlProvider
from .providers.terraform import PlanSummary, TerraformError, TerraformProvider

_LOG = logging.getLogger(__name__)

Confirm = Callable[[str], bool]
StepCallback = Callable[[str, str, object], None]


def write_cluster_access_artifact(
    config: AppConfig, environment: Environment, outputs: Mapping[str, object]
) -> Path:
    """Write the kubeconfig output of the infrastructure phase with mode 0600."""
    value = outputs.get(config.cluster.kubeconfig_output)
    if not isinstance(value, str) or not value.strip():
        raise TerraformError(
            f"output '{config.cluster.kubeconfig_output}' is not a kubeconfig document"
        )
    path = kubeconfig_path(config, environment)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(value if value.endswith("\n") else value + "\n")
    os.chmod(path, 0o600)
    _LOG.info("Cluster access artifact written to %s", path)
    return path


class SetupCancelled(RuntimeError):
    """Raised when the operator declines a confirmation prompt."""


class PhaseStepError(RuntimeError):
    """A setup step failed; carries what was produced before the failure."""

    def __init__(
        self,
        step: str,
        phase: Phase,
        message: str,
        *,
        artifacts: Mapping[str, str] | None = None,
        partial: bool = False,
    ) -> None:
        """Record the failing step, its phase and the artifacts left behind."""
        super().__init__(f"step '{step}' ({phase.value} phase) failed: {message}")
        self.step = step
        self.phase = phase
        self.artifacts = dict(artifacts or {})
        self.partial = partial


@dataclass(slots=True, frozen=True)
class SetupOptions:
    """Operator choices for a setup run."""

    template: str | None = None
    dry_run: bool = False
    auto_approve: bool = False
    enable_monitoring: bool = False
    enable_ha: bool = False
    budget: float | None = None
    alert_threshold: int | None = None


@dataclass(slots=True, frozen=True)
class CostEstimate:
    """Monthly cost estimate compared against the configured budget."""

    environment: Environment
    monthly: float | None
    limit: float | None
    alert_threshold: int

    @property
    def percent_of_limit(self) -> int | None:
        """Return the estimate as a whole percentage of the limit."""
        if self.monthly is None or not self.limit:
            return None
        return int(self.monthly * 100 // self.limit)

    @property
    def over_limit(self) -> bool:
        """Return ``True`` when the estimate exceeds the limit."""
        return self.monthly is not None and self.limit is not None and self.monthly > self.limit

    @property
    def over_threshold(self) -> bool:
        """Return ``True`` when the estimate crosses the alert threshold."""
        percent = self.percent_of_limit
        return percent is not None and percent >= self.alert_threshold

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "environment": self.environment.value,
            "monthly": self.monthly,
            "limit": self.limit,
            "alert_threshold": self.alert_threshold,
            "percent_of_limit": self.percent_of_limit,
        }


class CostEstimator:
    """Look up monthly estimates from externally maintained cost data."""

    def __init__(self, config: AppConfig) -> None:
        """Store budget configuration."""
        self._budget = config.budget

    def estimate(self, environment: Environment, options: SetupOptions) -> CostEstimate:
        """Return the estimate for *environment* under *options*."""
        limit = options.budget if options.budget is not None else self._budget.monthly_limit
        threshold = (
            options.alert_threshold
            if options.alert_threshold is not None
            else self._budget.alert_threshold
        )
        return CostEstimate(
            environment=environment,
            monthly=self._budget.estimates.get(environment.value),
            limit=limit,
            alert_threshold=threshold,
        )


@dataclass(slots=True)
class SetupResult:
    """What a setup run did and left behind."""

    environment: Environment
    layout: Layout
    dry_run: bool = False
    steps: list[dict[str, object]] = field(default_factory=list)
    plans: dict[str, PlanSummary] = field(default_factory=dict)
    applied: dict[str, bool] = field(default_factory=dict)
    artifacts: dict[str, str] = field(default_factory=dict)
    output_names: list[str] = field(default_factory=list)
    cost: CostEstimate | None = None

    @property
    def changed(self) -> bool:
        """Return ``True`` when any phase applied changes."""
        return any(self.applied.values())

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "environment": self.environment.value,
            "layout": self.layout.value,
            "dry_run": self.dry_run,
            "steps": list(self.steps),
            "plans": {name: plan.to_dict() for name, plan in self.plans.items()},
            "applied": dict(self.applied),
            "artifacts": dict(self.artifacts),
            "outputs": list(self.output_names),
            "cost": self.cost.to_dict() if self.cost else None,
        }


class PhaseOrchestrator:
    """Drive the infrastructure phase, hand off its outputs, then the application phase."""

    def __init__(
        self,
        config: AppConfig,
        *,
        backend: StateBackendCoordinator,
        terraform: TerraformProvider,
        kubectl: KubectlProvider,
        confirm: Confirm,
        on_step: StepCallback | None = None,
    ) -> None:
        """Store collaborators."""
        self._config = config
        self._backend = backend
        self._terraform = terraform
        self._kubectl = kubectl
        self._confirm = confirm
        self._on_step = on_step
        self._estimator = CostEstimator(config)

    def run_setup(self, environment: Environment, options: SetupOptions) -> SetupResult:
        """Run setup for *environment*; raise :class:`PhaseStepError` on failure."""
        workspace = resolve_workspace(self._config, environment)
        resolve_template(self._config, options.template)
        result = SetupResult(
            environment=environment, layout=workspace.layout, dry_run=options.dry_run
        )
        variables = self._base_variables(environment, options)

        infra = Phase.INFRASTRUCTURE
        infra_dir = workspace.phase_dir(infra)
        with self._step(result, "backend-infrastructure", infra):
            infra_pointer = self._prepare_backend(environment, infra, infra_dir, workspace.layout)

        with self._step(result, "plan-infrastructure", infra) as record:
            var_file = self._terraform.write_var_file(infra_dir, variables)
            infra_plan = self._terraform.plan(
                infra_dir, infra_dir / "infra.tfplan", var_file=var_file
            )
            result.plans[infra.value] = infra_plan
            record["detail"] = infra_plan.describe()

        with self._step(result, "budget-gate", infra) as record:
            result.cost = self._estimator.estimate(environment, options)
            record["detail"] = result.cost.to_dict()
            self._budget_gate(result.cost, options)

        if options.dry_run:
            self._dry_run_application(result, workspace, infra_pointer, variables)
            return result

        with self._step(result, "apply-infrastructure", infra) as record:
            if infra_plan.is_empty:
                record["status"] = "skipped"
                record["detail"] = "no changes"
                result.applied[infra.value] = False
            else:
                self._require_confirmation(
                    options,
                    f"Apply infrastructure changes for {environment.value} "
                    f"({infra_plan.describe()})?",
                )
                self._terraform.apply(infra_dir, infra_plan.plan_file)
                result.applied[infra.value] = True

        with self._step(result, "outputs", infra) as record:
            outputs = self._terraform.outputs(infra_dir)
            result.output_names = sorted(outputs)
            missing = [
                name for name in self._config.cluster.required_outputs if not outputs.get(name)
            ]
            if missing:
                raise TerraformError(f"required outputs missing: {', '.join(missing)}")
            record["detail"] = result.output_names

        with self._step(result, "cluster-access-artifact", infra) as record:
            artifact = self._write_kubeconfig(environment, outputs)
            result.artifacts["kubeconfig"] = str(artifact)
            record["detail"] = str(artifact)

        if workspace.layout is Layout.LEGACY:
            self._record(result, "application", Phase.APPLICATION, "skipped", "legacy layout")
            return result

        app = Phase.APPLICATION
        app_dir = workspace.phase_dir(app)
        kubectl = self._kubectl.with_kubeconfig(Path(result.artifacts["kubeconfig"]))
        partial = True

        with self._step(result, "backend-application", app, partial=partial):
            self._prepare_backend(environment, app, app_dir, workspace.layout)

        with self._step(result, "preflight-application", app, partial=partial) as record:
            record["detail"] = self._application_preflight(kubectl)

        with self._step(result, "plan-application", app, partial=partial) as record:
            app_vars = {**variables, **infra_pointer.remote_state_inputs()}
            var_file = self._terraform.write_var_file(app_dir, app_vars)
            app_plan = self._terraform.plan(app_dir, app_dir / "app.tfplan", var_file=var_file)
            result.plans[app.value] = app_plan
            record["detail"] = app_plan.describe()

        with self._step(result, "apply-application", app, partial=partial) as record:
            if app_plan.is_empty:
                record["status"] = "skipped"
                record["detail"] = "no changes"
                result.applied[app.value] = False
            else:
                self._require_confirmation(
                    options,
                    f"Apply application changes for {environment.value} "
                    f"({app_plan.describe()})?",
                )
                self._terraform.apply(app_dir, app_plan.plan_file)
                result.applied[app.value] = True
        return result

    # ------------------------------------------------------------------
    def _base_variables(
        self, environment: Environment, options: SetupOptions
    ) -> dict[str, object]:
        variables: dict[str, object] = {
            "environment": environment.value,
            "enable_monitoring": options.enable_monitoring,
            "enable_ha": options.enable_ha,
        }
        if options.template:
            variables["workspace_template"] = options.template
        return variables

    def _prepare_backend(
        self,
        environment: Environment,
        phase: Phase,
        workdir: Path,
        layout: Layout,
    ) -> BackendPointer:
        pointer = self._backend.ensure(environment, phase, preferred_layout=layout)
        backend_file, _ = self._backend.write_backend_config(pointer, workdir)
        self._terraform.init(workdir, backend_config=backend_file)
        return pointer

    def _budget_gate(self, cost: CostEstimate, options: SetupOptions) -> None:
        if cost.limit is None or cost.monthly is None:
            return
        if cost.over_threshold:
            _LOG.warning(
                "Estimated monthly cost %.2f is %s%% of the %.2f budget.",
                cost.monthly,
                cost.percent_of_limit,
                cost.limit,
            )
        if cost.over_limit and not options.auto_approve and not options.dry_run:
            prompt = (
                f"Estimated monthly cost {cost.monthly:.2f} exceeds the budget "
                f"{cost.limit:.2f}. Continue?"
            )
            if not self._confirm(prompt):
                raise SetupCancelled("Setup cancelled at the budget gate.")

    def _require_confirmation(self, options: SetupOptions, prompt: str) -> None:
        if options.auto_approve:
            return
        if not self._confirm(prompt):
            raise SetupCancelled("Setup cancelled before apply.")

    def _write_kubeconfig(self, environment: Environment, outputs: Mapping[str, object]) -> Path:
        return write_cluster_access_artifact(self._config, environment, outputs)

    def _application_preflight(self, kubectl: KubectlProvider) -> dict[str, object]:
        if not kubectl.cluster_reachable():
            raise KubectlError("cluster control plane is not reachable with the new kubeconfig")
        ready_timeout = self._config.timeouts.cluster_ready
        if not kubectl.wait(
            "nodes", condition="condition=Ready", all_objects=True, timeout=ready_timeout
        ):
            raise KubectlError(f"cluster nodes not Ready within {int(ready_timeout)}s")
        classes = kubectl.names("storageclass")
        required = list(self._config.cluster.required_storage_classes)
        missing = [name for name in required if name not in classes]
        if missing:
            raise KubectlError(f"required storage classes missing: {', '.join(missing)}")
        if not required and not classes:
            raise KubectlError("cluster has no storage classes; volume claims would stay pending")
        return {"reachable": True, "nodes_ready": True, "storage_classes": classes}

    def _dry_run_application(
        self,
        result: SetupResult,
        workspace: EnvironmentWorkspace,
        infra_pointer: BackendPointer,
        variables: Mapping[str, object],
    ) -> None:
        if workspace.layout is Layout.LEGACY:
            return
        app = Phase.APPLICATION
        infra_dir = workspace.phase_dir(Phase.INFRASTRUCTURE)
        try:
            outputs = self._terraform.outputs(infra_dir)
        except TerraformError:
            outputs = {}
        if any(not outputs.get(name) for name in self._config.cluster.required_outputs):
            self._record(
                result, "plan-application", app, "skipped", "infrastructure outputs not available"
            )
            return
        app_dir = workspace.phase_dir(app)
        with self._step(result, "backend-application", app):
            self._prepare_backend(workspace.environment, app, app_dir, workspace.layout)
        with self._step(result, "plan-application", app) as record:
            var_file = self._terraform.write_var_file(
                app_dir, {**variables, **infra_pointer.remote_state_inputs()}
            )
            plan = self._terraform.plan(app_dir, app_dir / "app.tfplan", var_file=var_file)
            result.plans[app.value] = plan
            record["detail"] = plan.describe()

    def _record(
        self,
        result: SetupResult,
        name: str,
        phase: Phase,
        status: str,
        detail: object | None = None,
    ) -> None:
        entry = {"name": name, "phase": phase.value, "status": status, "detail": detail}
        result.steps.append(entry)
        if self._on_step is not None:
            self._on_step(name, status, detail)

    @contextmanager
    def _step(
        self,
        result: SetupResult,
        name: str,
        phase: Phase,
        *,
        partial: bool = False,
    ) -> Iterator[dict[str, object]]:
        record: dict[str, object] = {"status": "success", "detail": None}
        _LOG.info("[%s] %s", phase.value, name)
        try:
            yield record
        except SetupCancelled:
            self._record(result, name, phase, "cancelled")
            raise
        except (RuntimeError, OSError) as exc:
            self._record(result, name, phase, "failed", str(exc))
            raise PhaseStepError(
                name, phase, str(exc), artifacts=result.artifacts, partial=partial
            ) from exc
        self._record(result, name, phase, str(record["status"]), record["detail"])


__all__ = [
    "CostEstimate",
    "CostEstimator",
    "PhaseOrchestrator",
    "PhaseStepError",
    "SetupCancelled",
    "SetupOptions",
    "SetupResult",
    "write_cluster_access_artifact",
]
