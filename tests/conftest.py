"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

import pytest

from platformctl.config import AppConfig, load_config
from platformctl.process import Command, CommandError, CommandResult


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def argv_matches(argv: Sequence[str], tokens: Iterable[str]) -> bool:
    """Return ``True`` when *tokens* appear in *argv* in order (not necessarily adjacent)."""
    position = 0
    for token in tokens:
        try:
            position = list(argv).index(token, position) + 1
        except ValueError:
            return False
    return True


@dataclass
class _Rule:
    tokens: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool
    effect: Callable[[Command], None] | None
    times: int | None


class FakeRunner:
    """Scripted stand-in for :class:`platformctl.process.CommandRunner`.

    Every command is recorded. Responses are chosen by the most recently
    registered rule whose tokens appear in the argv; unmatched commands succeed
    with empty output. Like the real runner, ``stdout`` is written to
    ``command.stdout_path`` when one is given.
    """

    def __init__(self) -> None:
        self.commands: list[Command] = []
        self._rules: list[_Rule] = []

    def on(
        self,
        *tokens: str,
        returncode: int = 0,
        stdout: str | dict[str, object] | list[object] = "",
        stderr: str = "",
        timed_out: bool = False,
        effect: Callable[[Command], None] | None = None,
        times: int | None = None,
    ) -> FakeRunner:
        """Register a response for commands containing *tokens*."""
        text = stdout if isinstance(stdout, str) else json.dumps(stdout)
        self._rules.append(
            _Rule(tuple(tokens), returncode, text, stderr, timed_out, effect, times)
        )
        return self

    def run(self, command: Command, *, check: bool = False) -> CommandResult:
        self.commands.append(command)
        rule = self._match(command.argv)
        if rule is None:
            result = CommandResult(argv=command.argv, returncode=0)
        else:
            if rule.times is not None:
                rule.times -= 1
            if rule.effect is not None:
                rule.effect(command)
            result = CommandResult(
                argv=command.argv,
                returncode=-1 if rule.timed_out else rule.returncode,
                stdout=rule.stdout,
                stderr=rule.stderr,
                timed_out=rule.timed_out,
            )
        if command.stdout_path is not None:
            command.stdout_path.write_text(result.stdout, encoding="utf-8")
        if check and not result.ok:
            raise CommandError(f"{command.describe()} failed", result)
        return result

    def _match(self, argv: Sequence[str]) -> _Rule | None:
        for rule in reversed(self._rules):
            if rule.times == 0:
                continue
            if argv_matches(argv, rule.tokens):
                return rule
        return None

    def calls(self, *tokens: str) -> list[Command]:
        """Return recorded commands containing *tokens*."""
        return [command for command in self.commands if argv_matches(command.argv, tokens)]

    def position(self, *tokens: str) -> int:
        """Return the index of the first recorded command containing *tokens* (-1 if none)."""
        for index, command in enumerate(self.commands):
            if argv_matches(command.argv, tokens):
                return index
        return -1

    @property
    def argvs(self) -> list[tuple[str, ...]]:
        """Return every recorded argv."""
        return [command.argv for command in self.commands]


def make_project(root: Path, *, environments: Sequence[str] = ("dev", "staging", "prod")) -> Path:
    """Create a two-phase project tree under *root*."""
    for name in environments:
        for phase in ("infra", "app"):
            phase_dir = root / "environments" / name / phase
            phase_dir.mkdir(parents=True, exist_ok=True)
            (phase_dir / "main.tf").write_text(f"# {name} {phase}\n", encoding="utf-8")
    template = root / "templates" / "kubernetes-basic"
    template.mkdir(parents=True, exist_ok=True)
    (template / "main.tf").write_text("# template\n", encoding="utf-8")
    (root / "scripts" / "hooks").mkdir(parents=True, exist_ok=True)
    return root


def config_values(root: Path, **overrides: object) -> dict[str, object]:
    """Return configuration values pointing every directory under *root*."""
    values: dict[str, object] = {
        "project_root": str(root),
        "logs_dir": str(root / "logs"),
        "kube_dir": str(root / "kube"),
        "teardown": {"delay_seconds": 0},
    }
    values.update(overrides)
    return values


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return a fresh scripted command runner."""
    return FakeRunner()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Return a project root with two-phase dev/staging/prod environments."""
    return make_project(tmp_path / "project")


@pytest.fixture
def config(project: Path, tmp_path: Path) -> AppConfig:
    """Return a configuration rooted in the temporary project."""
    return load_config(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides=config_values(project),
    )
