"""Terraform provider: the declarative provisioning tool behind both phases."""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from packaging.version import Version

from ..preflight import parse_tool_version
from ..process import Command, CommandError, CommandResult, CommandRunner

_LOG = logging.getLogger(__name__)

VAR_FILE_NAME = "platformctl.auto.tfvars.json"
_NO_STATE_MARKERS = ("no state file", "no state", "does not have any resources")


class TerraformError(RuntimeError):
    """Raised when a terraform invocation fails."""


@dataclass(slots=True, frozen=True)
class PlanSummary:
    """Counts extracted from a saved plan."""

    plan_file: Path
    add: int = 0
    change: int = 0
    destroy: int = 0
    outputs: int = 0
    addresses: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        """Return ``True`` when applying the plan would change nothing.

        Output-only changes count: they must be applied to reach state.
        """
        return self.add == 0 and self.change == 0 and self.destroy == 0 and self.outputs == 0

    def describe(self) -> str:
        """Return the familiar ``N to add, N to change, N to destroy`` line."""
        line = f"{self.add} to add, {self.change} to change, {self.destroy} to destroy"
        if self.outputs:
            line += f", {self.outputs} output changes"
        return line

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "plan_file": str(self.plan_file),
            "add": self.add,
            "change": self.change,
            "destroy": self.destroy,
            "outputs": self.outputs,
        }


@dataclass(slots=True)
class TerraformProvider:
    """Run terraform sub-commands inside a phase working directory."""

    runner: CommandRunner
    terraform_bin: str = "terraform"
    plan_timeout: float | None = None
    apply_timeout: float | None = None
    destroy_timeout: float | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def version(self) -> Version | None:
        """Return the installed terraform version, if it can be parsed."""
        result = self._run(("version",), cwd=None, check=False)
        return parse_tool_version(result.stdout)

    def init(self, workdir: Path, *, backend_config: Path | None = None) -> CommandResult:
        """Initialise *workdir*, pointing it at *backend_config* when given."""
        args = ["init", "-input=false", "-reconfigure"]
        if backend_config is not None:
            args.append(f"-backend-config={backend_config}")
        return self._run(args, cwd=workdir, timeout=self.plan_timeout)

    def validate(self, workdir: Path) -> CommandResult:
        """Run ``terraform validate``."""
        return self._run(("validate", "-no-color"), cwd=workdir)

    def write_var_file(self, workdir: Path, variables: Mapping[str, object]) -> Path:
        """Write *variables* as a JSON tfvars file inside *workdir*."""
        path = workdir / VAR_FILE_NAME
        path.write_text(json.dumps(dict(variables), indent=2, sort_keys=True) + "\n", "utf-8")
        return path

    def plan(
        self,
        workdir: Path,
        plan_file: Path,
        *,
        var_file: Path | None = None,
        destroy: bool = False,
        targets: Sequence[str] = (),
    ) -> PlanSummary:
        """Save a plan to *plan_file* and summarise it."""
        args = ["plan", "-input=false", "-no-color", f"-out={plan_file}"]
        if var_file is not None:
            args.append(f"-var-file={var_file}")
        if destroy:
            args.append("-destroy")
        args.extend(f"-target={target}" for target in targets)
        self._run(args, cwd=workdir, timeout=self.plan_timeout)
        return self.show_plan(workdir, plan_file)

    def show_plan(self, workdir: Path, plan_file: Path) -> PlanSummary:
        """Summarise a saved plan via ``terraform show -json``."""
        result = self._run(("show", "-json", str(plan_file)), cwd=workdir)
        try:
            payload = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise TerraformError(f"terraform show returned invalid JSON: {exc}") from exc
        add = change = destroy = 0
        addresses: list[str] = []
        for entry in payload.get("resource_changes", []) or []:
            actions = set((entry.get("change") or {}).get("actions", []))
            if actions <= {"no-op", "read"}:
                continue
            addresses.append(str(entry.get("address", "")))
            if actions == {"create"}:
                add += 1
            elif actions == {"delete"}:
                destroy += 1
            elif actions == {"update"}:
                change += 1
            elif actions == {"delete", "create"}:
                add += 1
                destroy += 1
        outputs = 0
        for entry in (payload.get("output_changes") or {}).values():
            actions = set((entry or {}).get("actions", []))
            if actions and not actions <= {"no-op"}:
                outputs += 1
        return PlanSummary(
            plan_file=plan_file,
            add=add,
            change=change,
            destroy=destroy,
            outputs=outputs,
            addresses=tuple(addresses),
        )

    def apply(self, workdir: Path, plan_file: Path) -> CommandResult:
        """Apply a previously saved plan."""
        return self._run(
            ("apply", "-input=false", "-no-color", "-auto-approve", str(plan_file)),
            cwd=workdir,
            timeout=self.apply_timeout,
        )

    def destroy(
        self,
        workdir: Path,
        *,
        var_file: Path | None = None,
        targets: Sequence[str] = (),
    ) -> PlanSummary:
        """Plan a destroy and apply it; return the destroy plan summary."""
        plan_file = workdir / "destroy.tfplan"
        summary = self.plan(workdir, plan_file, var_file=var_file, destroy=True, targets=targets)
        if summary.is_empty:
            _LOG.info("Nothing to destroy in %s", workdir)
            return summary
        self._run(
            ("apply", "-input=false", "-no-color", "-auto-approve", str(plan_file)),
            cwd=workdir,
            timeout=self.destroy_timeout,
        )
        return summary

    def outputs(self, workdir: Path) -> dict[str, object]:
        """Return output values keyed by name."""
        result = self._run(("output", "-json"), cwd=workdir)
        try:
            payload = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise TerraformError(f"terraform output returned invalid JSON: {exc}") from exc
        values: dict[str, object] = {}
        for name, entry in payload.items():
            values[name] = entry.get("value") if isinstance(entry, Mapping) else entry
        return values

    def state_list(self, workdir: Path) -> list[str]:
        """Return resource addresses tracked in state (empty when there is none)."""
        result = self._run(("state", "list"), cwd=workdir, check=False)
        if not result.ok:
            if any(marker in result.message().lower() for marker in _NO_STATE_MARKERS):
                return []
            raise TerraformError(
                f"terraform state list failed (exit {result.returncode}): {result.message()}"
            )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def state_pull(self, workdir: Path, destination: Path) -> Path:
        """Write the current remote state to *destination*."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        self._run(("state", "pull"), cwd=workdir, stdout_path=destination)
        return destination

    def state_push(self, workdir: Path, source: Path) -> CommandResult:
        """Upload *source* as the current remote state."""
        return self._run(("state", "push", str(source)), cwd=workdir)

    # ------------------------------------------------------------------
    def _run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None,
        check: bool = True,
        timeout: float | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        env = {"TF_IN_AUTOMATION": "1", "TF_INPUT": "0", **dict(self.env)}
        command = Command(
            argv=(self.terraform_bin, *args),
            cwd=cwd,
            env=env,
            timeout=timeout,
            stdout_path=stdout_path,
        )
        try:
            result = self.runner.run(command)
        except CommandError as exc:
            raise TerraformError(str(exc)) from exc
        if check and not result.ok:
            raise TerraformError(
                f"terraform {args[0]} failed (exit {result.returncode}): {result.message()}"
            )
        return result


__all__ = ["PlanSummary", "TerraformError", "TerraformProvider", "VAR_FILE_NAME"]
