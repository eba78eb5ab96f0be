"""Precondition checks executed before any external call that mutates state."""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from packaging.version import InvalidVersion, Version

from .config import AppConfig
from .environments import PreconditionError
from .process import Command, CommandError, CommandRunner, which_all

_LOG = logging.getLogger(__name__)
_VERSION_PATTERN = re.compile(r"v?(\d+\.\d+\.\d+(?:[-.][0-9A-Za-z.]+)?)")


@dataclass(slots=True)
class PreflightReport:
    """Collected precondition problems."""

    missing_tools: list[str] = field(default_factory=list)
    missing_credentials: list[str] = field(default_factory=list)
    version_problems: list[str] = field(default_factory=list)

    @property
    def problems(self) -> list[str]:
        """Return every problem as a human-readable line."""
        lines = [f"required tool not found: {tool}" for tool in self.missing_tools]
        lines.extend(
            f"required environment variable not set: {name}"
            for name in self.missing_credentials
        )
        lines.extend(self.version_problems)
        return lines

    @property
    def ok(self) -> bool:
        """Return ``True`` when no problems were found."""
        return not self.problems


def parse_tool_version(output: str) -> Version | None:
    """Extract the first semantic version found in *output*."""
    match = _VERSION_PATTERN.search(output or "")
    if match is None:
        return None
    try:
        return Version(match.group(1))
    except InvalidVersion:
        return None


def check_prerequisites(
    config: AppConfig,
    *,
    tools: Sequence[str],
    env: Mapping[str, str],
    runner: CommandRunner,
    require_credentials: bool = True,
    which: Callable[[Sequence[str]], Mapping[str, str | None]] = which_all,
) -> PreflightReport:
    """Check *tools*, provider credentials and the provisioning tool version."""
    report = PreflightReport()
    for tool, resolved in which(list(tools)).items():
        if resolved is None:
            report.missing_tools.append(tool)

    if require_credentials:
        report.missing_credentials.extend(
            name for name in config.required_credentials if not env.get(name)
        )

    terraform_bin = config.tools.terraform_bin
    if terraform_bin in tools and terraform_bin not in report.missing_tools:
        problem = _terraform_version_problem(config, runner)
        if problem:
            report.version_problems.append(problem)
    return report


def _terraform_version_problem(config: AppConfig, runner: CommandRunner) -> str | None:
    minimum = Version(config.tools.terraform_min_version)
    try:
        result = runner.run(Command.of(config.tools.terraform_bin, "version"))
    except CommandError as exc:
        return f"unable to determine terraform version: {exc}"
    found = parse_tool_version(result.stdout)
    if found is None:
        return "unable to determine terraform version from 'terraform version' output"
    _LOG.debug("terraform version %s (minimum %s)", found, minimum)
    if found < minimum:
        return f"terraform {found} is older than the required {minimum}"
    return None


def require_prerequisites(config: AppConfig, **kwargs: object) -> PreflightReport:
    """Run :func:`check_prerequisites` and raise when anything is missing."""
    report = check_prerequisites(config, **kwargs)  # type: ignore[arg-type]
    if not report.ok:
        raise PreconditionError("Prerequisite check failed: " + "; ".join(report.problems))
    return report


__all__ = [
    "PreflightReport",
    "check_prerequisites",
    "parse_tool_version",
    "require_prerequisites",
]
