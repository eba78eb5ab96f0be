"""Teardown safety gate and reverse-order destroyer.

A teardown moves through ``requested -> active-workload-check -> confirmed ->
delay-window -> destroying -> verified`` and ends ``done`` or ``incomplete``.
Nothing destructive happens before the delay window has elapsed (or was
skipped with ``force``/``emergency``). The application phase is always
destroyed before the infrastructure phase, and the run only reports ``done``
when the remaining state is empty.
"""
from __future__ import annotations

import getpass
import logging
import re
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .config import AppConfig
from .environments import Environment, EnvironmentWorkspace, Layout, Phase, kubeconfig_path
from .providers.kubectl import KubectlError, KubectlProvider
from .providers.terraform import TerraformError, TerraformProvider
from .templates import TemplateEngine

_LOG = logging.getLogger(__name__)

SUMMARY_TEMPLATE = "teardown-summary.txt.j2"
SUMMARY_NAME = "teardown-summary.txt"

Prompt = Callable[[str], str]
Sleep = Callable[[float], None]
Tick = Callable[[int], None]


class TeardownState(str, Enum):
    """States of a teardown run."""

    REQUESTED = "requested"
    ACTIVE_WORKLOAD_CHECK = "active-workload-check"
    CONFIRMED = "confirmed"
    DELAY_WINDOW = "delay-window"
    DESTROYING = "destroying"
    VERIFIED = "verified"
    DONE = "done"
    INCOMPLETE = "incomplete"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TeardownRejected(RuntimeError):
    """The safety gate refused the request; nothing was destroyed."""


class TeardownCancelled(RuntimeError):
    """The operator interrupted the delay window; nothing was destroyed."""


class TeardownStepError(RuntimeError):
    """A destruction step failed."""

    def __init__(self, step: str, message: str) -> None:
        """Record the failing step."""
        super().__init__(f"step '{step}' failed: {message}")
        self.step = step


@dataclass(slots=True, frozen=True)
class DestructionRequest:
    """What the operator asked for."""

    environment: Environment
    force: bool = False
    emergency: bool = False
    preserve_data: bool = False
    backup: bool = True
    confirmations: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (confirmation text omitted)."""
        return {
            "environment": self.environment.value,
            "force": self.force,
            "emergency": self.emergency,
            "preserve_data": self.preserve_data,
            "backup": self.backup,
            "confirmations_supplied": len(self.confirmations),
        }


@dataclass(slots=True)
class TeardownResult:
    """Everything a teardown run did and found."""

    environment: Environment
    started_at: str
    state: TeardownState = TeardownState.REQUESTED
    transitions: list[TeardownState] = field(default_factory=lambda: [TeardownState.REQUESTED])
    steps: list[dict[str, object]] = field(default_factory=list)
    workloads: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)
    preserved: list[str] = field(default_factory=list)
    backup: str | None = None
    archive_dir: Path | None = None
    finished_at: str | None = None

    def advance(self, state: TeardownState) -> None:
        """Move to *state*."""
        _LOG.debug("teardown %s: %s -> %s", self.environment.value, self.state.value, state.value)
        self.state = state
        self.transitions.append(state)

    @property
    def complete(self) -> bool:
        """Return ``True`` when verification found nothing left."""
        return self.state is TeardownState.DONE

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "environment": self.environment.value,
            "state": self.state.value,
            "transitions": [state.value for state in self.transitions],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "steps": list(self.steps),
            "workloads": list(self.workloads),
            "remaining": list(self.remaining),
            "preserved": list(self.preserved),
            "backup": self.backup,
            "archive_dir": str(self.archive_dir) if self.archive_dir else None,
        }


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


class SafetyGate:
    """Workload check, typed confirmation and the cancellable delay window."""

    def __init__(
        self,
        config: AppConfig,
        kubectl: KubectlProvider,
        *,
        prompt: Prompt,
        sleep: Sleep = time.sleep,
        on_tick: Tick | None = None,
    ) -> None:
        """Store collaborators; *prompt* reads one line of operator input."""
        self._config = config
        self._kubectl = kubectl
        self._prompt = prompt
        self._sleep = sleep
        self._on_tick = on_tick

    def active_workloads(self) -> list[str]:
        """Return running deployments whose name matches the workload pattern."""
        cluster = self._config.cluster
        pattern = re.compile(cluster.workload_pattern)
        active: list[str] = []
        for item in self._kubectl.items("deployments", namespace=cluster.application_namespace):
            metadata = item.get("metadata") or {}
            name = str(metadata.get("name", "")) if isinstance(metadata, Mapping) else ""
            spec = item.get("spec") or {}
            replicas = spec.get("replicas", 1) if isinstance(spec, Mapping) else 1
            if name and pattern.search(name) and replicas:
                active.append(name)
        return active

    def check_workloads(self, request: DestructionRequest, result: TeardownResult) -> None:
        """Reject the run when dependent workloads are live and ``force`` is unset."""
        result.advance(TeardownState.ACTIVE_WORKLOAD_CHECK)
        if not self._kubectl.configured:
            _LOG.info("No cluster access artifact; skipping the active workload check.")
            return
        try:
            result.workloads = self.active_workloads()
        except KubectlError as exc:
            if request.force:
                _LOG.warning("Cannot inspect workloads (%s); continuing because of --force.", exc)
                return
            result.advance(TeardownState.REJECTED)
            raise TeardownRejected(
                f"Cannot verify that no workloads are active ({exc}); use --force to override."
            ) from exc
        if result.workloads and not request.force:
            result.advance(TeardownState.REJECTED)
            raise TeardownRejected(
                f"{len(result.workloads)} active workloads in "
                f"'{self._config.cluster.application_namespace}': "
                f"{', '.join(result.workloads)}. Stop them or use --force."
            )
        if result.workloads:
            _LOG.warning("Proceeding with %d active workloads (--force).", len(result.workloads))

    def required_confirmations(self, environment: Environment) -> list[str]:
        """Return the literals the operator must type, in order."""
        required = [environment.value]
        if environment.is_most_sensitive:
            required.append(self._config.teardown.production_phrase)
        return required

    def confirm(self, request: DestructionRequest, result: TeardownResult) -> None:
        """Require the typed confirmations; emergency runs skip them."""
        if request.emergency:
            _LOG.warning(
                "EMERGENCY_TEARDOWN environment=%s: confirmation and delay skipped.",
                request.environment.value,
            )
            result.advance(TeardownState.CONFIRMED)
            return
        supplied = iter(request.confirmations)
        for expected in self.required_confirmations(request.environment):
            answer = next(supplied, None)
            if answer is None:
                answer = self._prompt(f"Type '{expected}' to confirm")
            if answer.strip() != expected:
                result.advance(TeardownState.REJECTED)
                raise TeardownRejected(
                    f"Confirmation mismatch: expected '{expected}'. Nothing was destroyed."
                )
        result.advance(TeardownState.CONFIRMED)

    def delay(self, request: DestructionRequest, result: TeardownResult) -> None:
        """Count down the delay window; an interrupt cancels the run."""
        seconds = self._config.teardown.delay_seconds
        if request.force or request.emergency or seconds <= 0:
            _LOG.info("Delay window skipped.")
            return
        result.advance(TeardownState.DELAY_WINDOW)
        _LOG.warning(
            "Destroying %s in %d seconds. Press Ctrl+C to cancel.",
            request.environment.value,
            seconds,
        )
        try:
            for remaining in range(seconds, 0, -1):
                if self._on_tick is not None:
                    self._on_tick(remaining)
                self._sleep(1)
        except KeyboardInterrupt as exc:
            result.advance(TeardownState.CANCELLED)
            raise TeardownCancelled("Teardown cancelled during the delay window.") from exc


class Destroyer:
    """Drain workloads, destroy the application then the infrastructure phase."""

    def __init__(
        self,
        config: AppConfig,
        *,
        terraform: TerraformProvider,
        kubectl: KubectlProvider,
        templates: TemplateEngine,
    ) -> None:
        """Store collaborators."""
        self._config = config
        self._terraform = terraform
        self._kubectl = kubectl
        self._templates = templates

    def run(
        self,
        request: DestructionRequest,
        workspace: EnvironmentWorkspace,
        result: TeardownResult,
    ) -> TeardownResult:
        """Destroy *workspace* and verify; always writes the teardown archive."""
        result.advance(TeardownState.DESTROYING)
        if workspace.layout is Layout.LEGACY:
            _LOG.info("Legacy layout: destroying the single environment state.")
        result.archive_dir = self._archive_dir(request.environment)
        try:
            with self._step(result, "archive-state") as record:
                record["detail"] = self._pull_states(workspace, result.archive_dir)
            with self._step(result, "drain") as record:
                record.update(self._drain(request))
            for phase in reversed(workspace.phases):
                with self._step(result, f"destroy-{phase.value}") as record:
                    record.update(self._destroy_phase(request, workspace, phase))
            with self._step(result, "remove-access-artifact") as record:
                artifact = kubeconfig_path(self._config, request.environment)
                existed = artifact.exists()
                artifact.unlink(missing_ok=True)
                record["detail"] = str(artifact) if existed else "not present"
            self._verify(request, workspace, result)
        except TeardownStepError:
            result.advance(TeardownState.FAILED)
            raise
        finally:
            result.finished_at = _now_iso()
            self._write_summary(request, result)
        return result

    # ------------------------------------------------------------------
    def _archive_dir(self, environment: Environment) -> Path:
        stamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        return self._config.archive_dir / f"{stamp}-{environment.value}"

    def _init(self, workdir: Path) -> None:
        backend_file = workdir / "backend.hcl"
        self._terraform.init(
            workdir, backend_config=backend_file if backend_file.is_file() else None
        )

    def _pull_states(self, workspace: EnvironmentWorkspace, archive_dir: Path) -> list[str]:
        pulled: list[str] = []
        for phase in workspace.phases:
            workdir = workspace.phase_dir(phase)
            self._init(workdir)
            self._terraform.state_pull(workdir, archive_dir / f"{phase.value}.tfstate")
            pulled.append(phase.value)
        return pulled

    def _drain(self, request: DestructionRequest) -> dict[str, object]:
        if not self._kubectl.configured:
            return {"status": "skipped", "detail": "no cluster access artifact"}
        cluster = self._config.cluster
        timeout = float(self._config.timeouts.drain)
        if not self._kubectl.cluster_reachable():
            if request.force:
                return {"status": "skipped", "detail": "cluster unreachable"}
            raise KubectlError("cluster is not reachable; cannot drain workloads")
        actions: list[str] = []
        if not request.preserve_data:
            self._kubectl.delete(
                "namespace", [cluster.monitoring_namespace], timeout=timeout
            )
            actions.append(f"deleted namespace {cluster.monitoring_namespace}")
        for node in self._kubectl.names("nodes"):
            self._kubectl.cordon(node)
            actions.append(f"cordoned {node}")
        self._kubectl.delete(
            "deployments",
            namespace=cluster.application_namespace,
            all_objects=True,
            grace_period=self._config.teardown.drain_grace_period,
            timeout=timeout,
        )
        actions.append(f"deleted deployments in {cluster.application_namespace}")
        drained = self._kubectl.wait(
            "pods",
            condition="delete",
            namespace=cluster.application_namespace,
            timeout=timeout,
            all_objects=True,
        )
        if not drained:
            if not request.force:
                raise KubectlError(
                    f"pods in '{cluster.application_namespace}' still running after "
                    f"{int(timeout)}s"
                )
            actions.append("pods still terminating (--force)")
        return {"detail": actions}

    def _split_preserved(self, addresses: Sequence[str]) -> tuple[list[str], list[str]]:
        prefixes = tuple(self._config.teardown.preserved_resource_prefixes)
        kept = [address for address in addresses if prefixes and address.startswith(prefixes)]
        doomed = [address for address in addresses if address not in kept]
        return doomed, kept

    def _destroy_phase(
        self,
        request: DestructionRequest,
        workspace: EnvironmentWorkspace,
        phase: Phase,
    ) -> dict[str, object]:
        workdir = workspace.phase_dir(phase)
        self._init(workdir)
        targets: list[str] = []
        if request.preserve_data and self._config.teardown.preserved_resource_prefixes:
            doomed, kept = self._split_preserved(self._terraform.state_list(workdir))
            if kept:
                _LOG.info("Preserving %d %s resources", len(kept), phase.value)
            if not doomed:
                return {"status": "skipped", "detail": "only preserved resources remain"}
            targets = doomed
        summary = self._terraform.destroy(workdir, targets=targets)
        if summary.is_empty:
            return {"status": "skipped", "detail": "nothing to destroy"}
        return {"detail": summary.describe()}

    def _verify(
        self,
        request: DestructionRequest,
        workspace: EnvironmentWorkspace,
        result: TeardownResult,
    ) -> None:
        """Confirm emptiness by re-listing each phase's state.

        This is the post-destroy verification pass. It reads state directly
        instead of running the validation checks, which assert presence and
        would need the cluster that was just destroyed. Every address left
        (minus preserved ones) is a leftover and makes the run incomplete.
        """
        remaining: list[str] = []
        preserved: list[str] = []
        with self._step(result, "verify") as record:
            for phase in workspace.phases:
                addresses = self._terraform.state_list(workspace.phase_dir(phase))
                if request.preserve_data:
                    doomed, kept = self._split_preserved(addresses)
                else:
                    doomed, kept = list(addresses), []
                remaining.extend(f"{phase.value}:{address}" for address in doomed)
                preserved.extend(f"{phase.value}:{address}" for address in kept)
            record["detail"] = {"remaining": len(remaining), "preserved": len(preserved)}
        result.remaining = remaining
        result.preserved = preserved
        result.advance(TeardownState.VERIFIED)
        if remaining:
            _LOG.error(
                "TEARDOWN_INCOMPLETE environment=%s remaining=%d: manual cleanup required.",
                request.environment.value,
                len(remaining),
            )
            result.advance(TeardownState.INCOMPLETE)
        else:
            result.advance(TeardownState.DONE)

    def _write_summary(self, request: DestructionRequest, result: TeardownResult) -> None:
        if result.archive_dir is None:
            return
        try:
            operator = getpass.getuser()
        except (KeyError, OSError):  # pragma: no cover - depends on passwd database
            operator = "unknown"
        try:
            self._templates.render_to_path(
                SUMMARY_TEMPLATE,
                result.archive_dir / SUMMARY_NAME,
                {
                    "environment": request.environment.value,
                    "started_at": result.started_at,
                    "finished_at": result.finished_at,
                    "operator": operator,
                    "state": result.state.value,
                    "emergency": request.emergency,
                    "force": request.force,
                    "preserve_data": request.preserve_data,
                    "backup": result.backup,
                    "steps": result.steps,
                    "remaining": result.remaining,
                },
                mode=0o640,
            )
        except OSError as exc:
            _LOG.warning("Could not write teardown summary: %s", exc)

    @contextmanager
    def _step(self, result: TeardownResult, name: str) -> Iterator[dict[str, object]]:
        record: dict[str, object] = {"status": "success", "detail": None}
        _LOG.info("[teardown] %s", name)
        try:
            yield record
        except (TerraformError, KubectlError, OSError) as exc:
            result.steps.append({"name": name, "status": "failed", "detail": str(exc)})
            raise TeardownStepError(name, str(exc)) from exc
        result.steps.append({"name": name, "status": record["status"], "detail": record["detail"]})


__all__ = [
    "Destroyer",
    "DestructionRequest",
    "SafetyGate",
    "TeardownCancelled",
    "TeardownRejected",
    "TeardownResult",
    "TeardownState",
    "TeardownStepError",
]
