"""Tests for command execution, prerequisite checks and workspace detection."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

from conftest import FakeRunner
from platformctl.config import AppConfig
from platformctl.environments import (
    Environment,
    Layout,
    Phase,
    PreconditionError,
    discover_templates,
    kubeconfig_path,
    resolve_template,
    resolve_workspace,
)
from platformctl.preflight import check_prerequisites, parse_tool_version, require_prerequisites
from platformctl.process import Command, CommandError, CommandRunner, CommandTimeoutError

CREDENTIALS = {
    "SCW_ACCESS_KEY": "key",
    "SCW_SECRET_KEY": "secret",
    "SCW_DEFAULT_PROJECT_ID": "project",
}


def _all_found(programs: list[str]) -> dict[str, str | None]:
    return {program: f"/usr/bin/{program}" for program in programs}


def test_runner_captures_output_and_status() -> None:
    """A real process has its exit status and output captured."""
    runner = CommandRunner()

    result = runner.run(
        Command.of(sys.executable, "-c", "import sys; print('hi'); sys.exit(3)")
    )

    assert result.returncode == 3
    assert result.stdout.strip() == "hi"
    assert not result.ok


def test_runner_check_raises_with_result() -> None:
    """check=True turns a failure into CommandError carrying the result."""
    runner = CommandRunner()

    with pytest.raises(CommandError) as excinfo:
        runner.run(
            Command.of(sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(1)"),
            check=True,
        )

    assert excinfo.value.result is not None
    assert excinfo.value.result.message() == "bad"


def test_runner_reports_timeouts() -> None:
    """Timeouts are reported in the result, and raised under check=True."""
    runner = CommandRunner()
    command = Command.of(sys.executable, "-c", "import time; time.sleep(5)", timeout=0.2)

    result = runner.run(command)
    assert result.timed_out
    assert result.message() == "timed out"

    with pytest.raises(CommandTimeoutError):
        runner.run(command, check=True)


def test_runner_streams_to_stdout_path_and_feeds_input(tmp_path: Path) -> None:
    """stdout_path receives output and input is delivered on stdin."""
    runner = CommandRunner()
    destination = tmp_path / "state.json"

    runner.run(
        Command.of(
            sys.executable,
            "-c",
            "import sys; sys.stdout.write(sys.stdin.read().upper())",
            input="state",
            stdout_path=destination,
        ),
        check=True,
    )

    assert destination.read_text(encoding="utf-8") == "STATE"


def test_runner_missing_program_is_command_error() -> None:
    """A missing executable is reported as a CommandError."""
    with pytest.raises(CommandError, match="not found"):
        CommandRunner().run(Command.of("definitely-not-a-real-binary-xyz"))


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("Terraform v1.12.2\non linux_amd64", "1.12.2"),
        ('{"terraform_version": "1.13.0"}', "1.13.0"),
        ("no version here", None),
    ],
)
def test_parse_tool_version(output: str, expected: str | None) -> None:
    """Versions are extracted from tool output."""
    parsed = parse_tool_version(output)
    assert (str(parsed) if parsed else None) == expected


def test_check_prerequisites_reports_every_problem(
    config: AppConfig, fake_runner: FakeRunner
) -> None:
    """Missing tools, credentials and an old terraform are all reported."""
    fake_runner.on("terraform", "version", stdout="Terraform v1.5.7\n")

    report = check_prerequisites(
        config,
        tools=["terraform", "kubectl"],
        env={"SCW_ACCESS_KEY": "key"},
        runner=fake_runner,  # type: ignore[arg-type]
        which=lambda programs: {"terraform": "/usr/bin/terraform", "kubectl": None},
    )

    assert report.missing_tools == ["kubectl"]
    assert report.missing_credentials == ["SCW_SECRET_KEY", "SCW_DEFAULT_PROJECT_ID"]
    assert report.version_problems == ["terraform 1.5.7 is older than the required 1.12.0"]
    assert not report.ok


def test_require_prerequisites_passes_and_fails(
    config: AppConfig, fake_runner: FakeRunner
) -> None:
    """require_prerequisites raises PreconditionError only when something is missing."""
    fake_runner.on("terraform", "version", stdout="Terraform v1.12.1\n")

    report = require_prerequisites(
        config,
        tools=["terraform"],
        env=CREDENTIALS,
        runner=fake_runner,
        which=_all_found,
    )
    assert report.ok

    with pytest.raises(PreconditionError, match="SCW_SECRET_KEY"):
        require_prerequisites(
            config,
            tools=["terraform"],
            env={"SCW_ACCESS_KEY": "key", "SCW_DEFAULT_PROJECT_ID": "p"},
            runner=fake_runner,
            which=_all_found,
        )


def test_environment_parse_is_closed() -> None:
    """Only dev, staging and prod are accepted; prod is the sensitive one."""
    assert Environment.parse(" Prod ") is Environment.PROD
    assert Environment.PROD.is_most_sensitive
    assert not Environment.STAGING.is_most_sensitive
    with pytest.raises(PreconditionError, match="Allowed: dev, staging, prod"):
        Environment.parse("qa")


def test_resolve_workspace_detects_layouts(config: AppConfig, project: Path) -> None:
    """Two-phase, legacy and missing layouts are distinguished."""
    two_phase = resolve_workspace(config, Environment.DEV)
    assert two_phase.layout is Layout.TWO_PHASE
    assert two_phase.phases == (Phase.INFRASTRUCTURE, Phase.APPLICATION)
    assert two_phase.phase_dir(Phase.APPLICATION) == project / "environments" / "dev" / "app"

    legacy_root = project / "environments" / "staging"
    for phase in ("infra", "app"):
        (legacy_root / phase / "main.tf").unlink()
    (legacy_root / "main.tf").write_text("# legacy\n", encoding="utf-8")
    legacy = resolve_workspace(config, Environment.STAGING)
    assert legacy.layout is Layout.LEGACY
    assert legacy.phases == (Phase.INFRASTRUCTURE,)
    with pytest.raises(PreconditionError, match="legacy layout"):
        legacy.phase_dir(Phase.APPLICATION)

    (project / "environments" / "prod" / "app" / "main.tf").unlink()
    with pytest.raises(PreconditionError, match="No configuration found"):
        resolve_workspace(config, Environment.PROD)


def test_templates_are_discovered_by_directory_name(config: AppConfig) -> None:
    """Template ids map to directories holding a main.tf."""
    assert set(discover_templates(config)) == {"kubernetes-basic"}
    assert resolve_template(config, None) is None
    assert resolve_template(config, "kubernetes-basic") == (
        config.templates_catalog_dir / "kubernetes-basic"
    )
    with pytest.raises(PreconditionError, match="Available: kubernetes-basic"):
        resolve_template(config, "docker")


def test_kubeconfig_path_is_per_environment(config: AppConfig) -> None:
    """The cluster access artifact lives under kube_dir, named per environment."""
    assert kubeconfig_path(config, Environment.STAGING) == (
        config.kube_dir / "config-coder-staging"
    )
