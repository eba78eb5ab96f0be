"""Setup and teardown workflow tests (hooks, validation and snapshots around the core)."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from conftest import FakeRunner
from platformctl.backend import StateBackendCoordinator
from platformctl.backup import (
    BackupArchive,
    BackupComponent,
    BackupError,
    BackupKind,
    BackupManifest,
    ComponentRecord,
    ComponentStatus,
)
from platformctl.config import AppConfig
from platformctl.environments import Environment, resolve_workspace
from platformctl.hooks import (
    HookContext,
    HookEvent,
    HookExecution,
    HookRegistry,
    HookRunner,
    HookSession,
    HookVetoError,
    HookWhen,
)
from platformctl.lifecycle import SetupWorkflow, TeardownWorkflow
from platformctl.orchestrator import PhaseOrchestrator, PhaseStepError, SetupOptions
from platformctl.providers import KubectlProvider, ObjectStorageProvider, TerraformProvider
from platformctl.teardown import (
    DestructionRequest,
    Destroyer,
    SafetyGate,
    TeardownState,
    TeardownStepError,
)
from platformctl.templates import TemplateEngine
from platformctl.validation import (
    ValidationDepth,
    ValidationReport,
    ValidationResult,
    ValidationStatus,
    aggregate_results,
)

OUTPUTS = {"kubeconfig": {"value": "apiVersion: v1\nkind: Config\n"}}
STORAGE_CLASSES = {"items": [{"metadata": {"name": "sbs-default"}}]}
PLAN_JSON = {
    "resource_changes": [
        {"address": "scaleway_k8s_cluster.main", "change": {"actions": ["create"]}},
    ]
}


@dataclass
class Hook:
    """In-process hook with a fixed exit code that records its environment."""

    name: str
    returncode: int = 0
    seen: list[dict[str, str]] = field(default_factory=list)

    def run(
        self,
        event: HookEvent,
        when: HookWhen,
        context: HookContext,
        extra: Mapping[str, str],
    ) -> HookExecution:
        self.seen.append(context.environment_variables(event, when, extra))
        return HookExecution(returncode=self.returncode, output="")


def _session(tmp_path: Path, **hooks: Hook) -> HookSession:
    registry = HookRegistry()
    for slot, hook in hooks.items():
        when, _, event = slot.partition("_")
        registry.register(HookEvent(event), HookWhen(when), hook)
    return HookSession(HookRunner(registry), HookContext.build(Environment.DEV, tmp_path))


def _orchestrator(config: AppConfig, runner: FakeRunner) -> PhaseOrchestrator:
    storage = ObjectStorageProvider(
        runner,  # type: ignore[arg-type]
        endpoint=config.backend.endpoint,
        region=config.backend.region,
    )
    return PhaseOrchestrator(
        config,
        backend=StateBackendCoordinator(config, storage, TemplateEngine.with_overrides(None)),
        terraform=TerraformProvider(runner),  # type: ignore[arg-type]
        kubectl=KubectlProvider(runner),  # type: ignore[arg-type]
        confirm=lambda prompt: True,
    )


def _ready(runner: FakeRunner) -> FakeRunner:
    runner.on("terraform", "show", "-json", stdout=PLAN_JSON)
    runner.on("terraform", "output", "-json", stdout=OUTPUTS)
    runner.on("kubectl", "get", "storageclass", stdout=STORAGE_CLASSES)
    return runner


def _report(*statuses: ValidationStatus) -> ValidationReport:
    results = [
        ValidationResult("cluster", f"check-{index}", status, status.value)
        for index, status in enumerate(statuses)
    ]
    return ValidationReport(
        environment="dev",
        timestamp="2026-01-01T00:00:00Z",
        depth=ValidationDepth.STANDARD,
        components=["cluster"],
        results=results,
        summary=aggregate_results(results),
    )


def _archive(kind: BackupKind, *failed: BackupComponent) -> BackupArchive:
    components = {
        component: ComponentRecord(
            status=ComponentStatus.FAILED if component in failed else ComponentStatus.CAPTURED
        )
        for component in BackupComponent
    }
    manifest = BackupManifest(
        name=f"{kind.value}-20260101-000000-dev",
        environment="dev",
        kind=kind,
        created_at="2026-01-01T00:00:00Z",
        components=components,
    )
    return BackupArchive(manifest=manifest, directory=None)


# setup ---------------------------------------------------------------------


def test_setup_veto_stops_before_provisioning(
    config: AppConfig, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """A failing pre-setup hook aborts before any tool runs."""
    workflow = SetupWorkflow(
        orchestrator=_orchestrator(config, fake_runner),
        hooks=_session(tmp_path, pre_setup=Hook("guard", returncode=2)),
    )

    with pytest.raises(HookVetoError):
        workflow.run(Environment.DEV, SetupOptions(auto_approve=True))

    assert fake_runner.commands == []


def test_setup_collects_validation_and_snapshot_warnings(
    config: AppConfig, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """Validation failures and partial snapshots warn without failing setup."""
    _ready(fake_runner)
    post = Hook("notify", returncode=1)
    kinds: list[BackupKind] = []

    def snapshot(kind: BackupKind) -> BackupArchive:
        kinds.append(kind)
        return _archive(kind, BackupComponent.DATABASE)

    workflow = SetupWorkflow(
        orchestrator=_orchestrator(config, fake_runner),
        hooks=_session(tmp_path, post_setup=post),
        validate=lambda: _report(ValidationStatus.PASS, ValidationStatus.FAIL),
        snapshot=snapshot,
    )

    outcome = workflow.run(Environment.DEV, SetupOptions(auto_approve=True))

    assert kinds == [BackupKind.POST_SETUP]
    assert outcome.backup == "post-setup-20260101-000000-dev"
    assert outcome.warnings == [
        "post-setup validation failed (1 checks)",
        "post-setup snapshot is partial: database",
        "post-setup hook failed: post hook failed",
    ]
    (variables,) = post.seen
    assert variables["PLATFORMCTL_SETUP_CHANGED"] == "1"
    payload = outcome.to_dict()
    assert payload["validation"] == {
        "status": "fail",
        "passed": 1,
        "warnings": 0,
        "failed": 1,
        "success_rate": 50,
    }
    assert payload["backup"] == outcome.backup


def test_setup_snapshot_failure_is_a_warning(
    config: AppConfig, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """A failed post-setup snapshot leaves a warning and no backup name."""
    _ready(fake_runner)

    def snapshot(kind: BackupKind) -> BackupArchive:
        raise BackupError("tar missing")

    outcome = SetupWorkflow(
        orchestrator=_orchestrator(config, fake_runner),
        hooks=_session(tmp_path),
        snapshot=snapshot,
    ).run(Environment.DEV, SetupOptions(auto_approve=True))

    assert outcome.backup is None
    assert outcome.warnings == ["post-setup snapshot failed: tar missing"]
    assert outcome.validation is None


def test_setup_dry_run_skips_hooks_validation_and_snapshot(
    config: AppConfig, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """Dry runs only plan."""
    pre, post = Hook("pre"), Hook("post")
    called: list[str] = []

    def validate() -> ValidationReport:
        called.append("validate")
        return _report()

    outcome = SetupWorkflow(
        orchestrator=_orchestrator(config, fake_runner),
        hooks=_session(tmp_path, pre_setup=pre, post_setup=post),
        validate=validate,
    ).run(Environment.DEV, SetupOptions(dry_run=True))

    assert outcome.setup.dry_run
    assert pre.seen == [] and post.seen == []
    assert called == []


def test_partial_setup_is_logged_and_reraised(
    config: AppConfig,
    project: Path,
    fake_runner: FakeRunner,
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """An application failure is logged as partial and the post hook does not run."""
    _ready(fake_runner)
    app_plan = project / "environments" / "dev" / "app" / "app.tfplan"
    fake_runner.on("apply", str(app_plan), returncode=1, stderr="helm timeout")
    post = Hook("post")

    with caplog.at_level(logging.ERROR, logger="platformctl.lifecycle"):
        with pytest.raises(PhaseStepError):
            SetupWorkflow(
                orchestrator=_orchestrator(config, fake_runner),
                hooks=_session(tmp_path, post_setup=post),
            ).run(Environment.DEV, SetupOptions(auto_approve=True))

    assert "SETUP_PARTIAL environment=dev" in caplog.text
    assert "config-coder-dev" in caplog.text
    assert post.seen == []


# teardown ------------------------------------------------------------------


def _teardown(
    config: AppConfig,
    runner: FakeRunner,
    session: HookSession,
    snapshot: object = None,
) -> TeardownWorkflow:
    kubectl = KubectlProvider(runner)  # type: ignore[arg-type]
    return TeardownWorkflow(
        gate=SafetyGate(config, kubectl, prompt=lambda text: ""),
        destroyer=Destroyer(
            config,
            terraform=TerraformProvider(runner),  # type: ignore[arg-type]
            kubectl=kubectl,
            templates=TemplateEngine.with_overrides(None),
        ),
        hooks=session,
        snapshot=snapshot,  # type: ignore[arg-type]
    )


def _request(**kwargs: object) -> DestructionRequest:
    return DestructionRequest(
        Environment.DEV, confirmations=("dev",), **kwargs  # type: ignore[arg-type]
    )


def test_teardown_runs_hooks_around_snapshot_and_destroy(
    config: AppConfig, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """The pre hook runs after the gate, then the snapshot, then the destroyer."""
    fake_runner.on("terraform", "show", "-json", stdout=PLAN_JSON)
    post = Hook("post")
    kinds: list[BackupKind] = []

    def snapshot(kind: BackupKind) -> BackupArchive:
        kinds.append(kind)
        return _archive(kind)

    result = _teardown(
        config,
        fake_runner,
        _session(tmp_path, pre_teardown=Hook("pre"), post_teardown=post),
        snapshot,
    ).run(_request(), resolve_workspace(config, Environment.DEV))

    assert kinds == [BackupKind.PRE_DESTROY]
    assert result.backup == "pre-destroy-20260101-000000-dev"
    assert [step["name"] for step in result.steps[:2]] == [
        "pre-teardown-hook",
        "pre-destroy-backup",
    ]
    assert result.state is TeardownState.DONE
    (variables,) = post.seen
    assert variables["PLATFORMCTL_TEARDOWN_STATE"] == "done"


def test_teardown_veto_rejects_before_snapshot(
    config: AppConfig, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """A vetoing pre-teardown hook stops the run before anything is destroyed."""
    kinds: list[BackupKind] = []

    def snapshot(kind: BackupKind) -> BackupArchive:
        kinds.append(kind)
        return _archive(kind)

    workflow = _teardown(
        config, fake_runner, _session(tmp_path, pre_teardown=Hook("pre", 1)), snapshot
    )

    with pytest.raises(HookVetoError):
        workflow.run(_request(), resolve_workspace(config, Environment.DEV))

    assert kinds == []
    assert fake_runner.calls("terraform") == []


def test_failed_pre_destroy_backup_aborts_unless_forced(
    config: AppConfig, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """Without force a failed snapshot stops teardown; with force it only warns."""

    def snapshot(kind: BackupKind) -> BackupArchive:
        raise BackupError("bucket unreachable")

    workspace = resolve_workspace(config, Environment.DEV)

    with pytest.raises(TeardownStepError) as excinfo:
        _teardown(config, fake_runner, _session(tmp_path), snapshot).run(_request(), workspace)
    assert excinfo.value.step == "pre-destroy-backup"
    assert fake_runner.calls("terraform") == []

    result = _teardown(config, fake_runner, _session(tmp_path), snapshot).run(
        _request(force=True), workspace
    )
    backup_step = result.steps[1]
    assert backup_step == {
        "name": "pre-destroy-backup",
        "status": "failed",
        "detail": "bucket unreachable",
    }
    assert result.backup is None
    assert fake_runner.calls("terraform", "plan", "-destroy") != []


def test_no_backup_skips_snapshot(
    config: AppConfig, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """Opting out of the pre-destroy backup records a skipped step."""

    def snapshot(kind: BackupKind) -> BackupArchive:
        raise AssertionError("snapshot must not run")

    result = _teardown(config, fake_runner, _session(tmp_path), snapshot).run(
        _request(backup=False), resolve_workspace(config, Environment.DEV)
    )

    assert result.steps[1] == {
        "name": "pre-destroy-backup",
        "status": "skipped",
        "detail": "--no-backup",
    }
