"""End-to-end setup and teardown flows.

``setup``: pre-setup hook, phase orchestrator, validation, post-setup
snapshot, post-setup hook. ``teardown``: safety gate, pre-teardown hook,
pre-destroy snapshot, destroyer, post-teardown hook. Hooks of one run share a
:class:`~platformctl.hooks.HookSession`, so variables exported by the pre hook
reach the post hook.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .backup import BackupArchive, BackupError, BackupKind
from .environments import Environment, EnvironmentWorkspace
from .hooks import HookEvent, HookSession, HookVetoError, HookWhen
from .orchestrator import PhaseOrchestrator, PhaseStepError, SetupOptions, SetupResult
from .teardown import (
    Destroyer,
    DestructionRequest,
    SafetyGate,
    TeardownResult,
    TeardownState,
    TeardownStepError,
)
from .validation import ValidationReport, ValidationStatus

_LOG = logging.getLogger(__name__)

Snapshot = Callable[[BackupKind], BackupArchive]
Validate = Callable[[], ValidationReport]


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(slots=True)
class SetupOutcome:
    """Result of a full setup run."""

    setup: SetupResult
    validation: ValidationReport | None = None
    backup: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        summary = self.validation.summary if self.validation else None
        return {
            **self.setup.to_dict(),
            "validation": (
                {
                    "status": summary.status.value,
                    "passed": summary.passed,
                    "warnings": summary.warnings,
                    "failed": summary.failed,
                    "success_rate": summary.success_rate,
                }
                if summary
                else None
            ),
            "backup": self.backup,
            "warnings": list(self.warnings),
        }


class SetupWorkflow:
    """Run setup with hooks, validation and the post-setup snapshot around it."""

    def __init__(
        self,
        *,
        orchestrator: PhaseOrchestrator,
        hooks: HookSession,
        validate: Validate | None = None,
        snapshot: Snapshot | None = None,
    ) -> None:
        """Store collaborators; *validate* and *snapshot* are optional."""
        self._orchestrator = orchestrator
        self._hooks = hooks
        self._validate = validate
        self._snapshot = snapshot

    def run(self, environment: Environment, options: SetupOptions) -> SetupOutcome:
        """Run setup; a vetoing pre hook raises before anything is provisioned."""
        if not options.dry_run:
            self._hooks.fire(HookEvent.SETUP, HookWhen.PRE)

        try:
            outcome = SetupOutcome(setup=self._orchestrator.run_setup(environment, options))
        except PhaseStepError as exc:
            if exc.partial:
                _LOG.error(
                    "SETUP_PARTIAL environment=%s: infrastructure is up, %s. "
                    "Cluster access artifact kept at %s.",
                    environment.value,
                    exc,
                    exc.artifacts.get("kubeconfig", "n/a"),
                )
            raise
        if options.dry_run:
            return outcome

        if self._validate is not None:
            outcome.validation = self._validate()
            status = outcome.validation.summary.status
            if status is ValidationStatus.FAIL:
                outcome.warnings.append(
                    f"post-setup validation failed ({outcome.validation.summary.failed} checks)"
                )

        if self._snapshot is not None:
            try:
                archive = self._snapshot(BackupKind.POST_SETUP)
            except BackupError as exc:
                _LOG.warning("Post-setup snapshot failed: %s", exc)
                outcome.warnings.append(f"post-setup snapshot failed: {exc}")
            else:
                outcome.backup = archive.manifest.name
                failed = archive.manifest.failed()
                if failed:
                    outcome.warnings.append(
                        "post-setup snapshot is partial: "
                        + ", ".join(component.value for component in failed)
                    )

        post = self._hooks.fire(
            HookEvent.SETUP,
            HookWhen.POST,
            extra={"PLATFORMCTL_SETUP_CHANGED": "1" if outcome.setup.changed else "0"},
        )
        if post.failed:
            outcome.warnings.append(f"post-setup hook failed: {post.message}")
        return outcome


class TeardownWorkflow:
    """Gate, snapshot and destroy an environment with hooks around the destruction."""

    def __init__(
        self,
        *,
        gate: SafetyGate,
        destroyer: Destroyer,
        hooks: HookSession,
        snapshot: Snapshot | None = None,
    ) -> None:
        """Store collaborators."""
        self._gate = gate
        self._destroyer = destroyer
        self._hooks = hooks
        self._snapshot = snapshot

    def run(
        self,
        request: DestructionRequest,
        workspace: EnvironmentWorkspace,
    ) -> TeardownResult:
        """Run the teardown state machine to ``done`` or ``incomplete``.

        Raises ``TeardownRejected``, ``TeardownCancelled``,
        :class:`HookVetoError` or :class:`TeardownStepError`.
        """
        result = TeardownResult(environment=request.environment, started_at=_now_iso())
        self._gate.check_workloads(request, result)
        self._gate.confirm(request, result)
        self._gate.delay(request, result)

        try:
            self._hooks.fire(HookEvent.TEARDOWN, HookWhen.PRE)
        except HookVetoError:
            result.advance(TeardownState.REJECTED)
            raise
        result.steps.append({"name": "pre-teardown-hook", "status": "success", "detail": None})

        if request.backup and self._snapshot is not None:
            self._pre_destroy_snapshot(self._snapshot, request, result)
        else:
            result.steps.append(
                {"name": "pre-destroy-backup", "status": "skipped", "detail": "--no-backup"}
            )

        self._destroyer.run(request, workspace, result)

        post = self._hooks.fire(
            HookEvent.TEARDOWN,
            HookWhen.POST,
            extra={"PLATFORMCTL_TEARDOWN_STATE": result.state.value},
        )
        if post.failed:
            _LOG.warning("post-teardown hook failed: %s", post.message)
        return result

    def _pre_destroy_snapshot(
        self, snapshot: Snapshot, request: DestructionRequest, result: TeardownResult
    ) -> None:
        try:
            archive = snapshot(BackupKind.PRE_DESTROY)
        except BackupError as exc:
            result.steps.append(
                {"name": "pre-destroy-backup", "status": "failed", "detail": str(exc)}
            )
            if not request.force:
                result.advance(TeardownState.FAILED)
                raise TeardownStepError("pre-destroy-backup", str(exc)) from exc
            _LOG.warning("Pre-destroy backup failed (%s); continuing because of --force.", exc)
            return
        result.backup = archive.manifest.name
        failed = [component.value for component in archive.manifest.failed()]
        result.steps.append(
            {
                "name": "pre-destroy-backup",
                "status": "warning" if failed else "success",
                "detail": archive.manifest.name
                + (f" (failed: {', '.join(failed)})" if failed else ""),
            }
        )


__all__ = [
    "SetupOutcome",
    "SetupWorkflow",
    "TeardownWorkflow",
]
