"""Lifecycle hook tests."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from conftest import FakeRunner
from platformctl.environments import Environment
from platformctl.hooks import (
    HookContext,
    HookDecision,
    HookEvent,
    HookExecution,
    HookRegistry,
    HookRunner,
    HookSession,
    HookVetoError,
    HookWhen,
    ScriptHook,
    parse_exports,
)
from platformctl.process import CommandRunner


@dataclass
class RecordingHook:
    """In-process hook returning a fixed result and recording what it saw."""

    name: str
    returncode: int = 0
    exports: dict[str, str] = field(default_factory=dict)
    seen: list[dict[str, str]] = field(default_factory=list)

    def run(
        self,
        event: HookEvent,
        when: HookWhen,
        context: HookContext,
        extra: Mapping[str, str],
    ) -> HookExecution:
        self.seen.append(context.environment_variables(event, when, extra))
        return HookExecution(returncode=self.returncode, exports=self.exports, output="")


def _context(tmp_path: Path, **kwargs: object) -> HookContext:
    return HookContext.build(Environment.DEV, tmp_path, template="kubernetes-basic", **kwargs)


def test_missing_hook_continues(tmp_path: Path) -> None:
    """An empty slot is a no-op that lets the operation continue."""
    outcome = HookRunner(HookRegistry()).run(HookEvent.SETUP, HookWhen.PRE, _context(tmp_path))

    assert outcome.decision is HookDecision.CONTINUE
    assert not outcome.ran
    assert outcome.slot == "pre-setup"


def test_failing_pre_hook_vetoes_and_drops_exports(tmp_path: Path) -> None:
    """A non-zero pre hook vetoes; its exports are not forwarded."""
    registry = HookRegistry()
    registry.register(
        HookEvent.TEARDOWN, HookWhen.PRE, RecordingHook("guard", 3, {"TOKEN": "x"})
    )
    session = HookSession(HookRunner(registry), _context(tmp_path))

    with pytest.raises(HookVetoError, match="pre-teardown hook vetoed") as excinfo:
        session.fire(HookEvent.TEARDOWN, HookWhen.PRE)

    assert excinfo.value.outcome.returncode == 3
    assert excinfo.value.outcome.exports == {}
    assert session.context.forwarded == {}


def test_failing_post_hook_only_warns(tmp_path: Path) -> None:
    """A failing post hook is reported but never vetoes."""
    registry = HookRegistry()
    registry.register(HookEvent.SETUP, HookWhen.POST, RecordingHook("notify", 1))

    outcome = HookSession(HookRunner(registry), _context(tmp_path)).fire(
        HookEvent.SETUP, HookWhen.POST
    )

    assert outcome.decision is HookDecision.CONTINUE
    assert outcome.failed


def test_exports_are_forwarded_to_later_hooks(tmp_path: Path) -> None:
    """Variables exported by the pre hook reach the post hook of the same run."""
    pre = RecordingHook("pre", exports={"CHANGE_TICKET": "OPS-12"})
    post = RecordingHook("post")
    registry = HookRegistry()
    registry.register(HookEvent.SETUP, HookWhen.PRE, pre)
    registry.register(HookEvent.SETUP, HookWhen.POST, post)
    session = HookSession(HookRunner(registry), _context(tmp_path))

    session.fire(HookEvent.SETUP, HookWhen.PRE)
    session.fire(HookEvent.SETUP, HookWhen.POST, extra={"PLATFORMCTL_SETUP_CHANGED": "1"})

    (variables,) = post.seen
    assert variables["CHANGE_TICKET"] == "OPS-12"
    assert variables["PLATFORMCTL_SETUP_CHANGED"] == "1"
    assert variables["PLATFORMCTL_HOOK_WHEN"] == "post"
    assert variables["PLATFORMCTL_TEMPLATE"] == "kubernetes-basic"
    assert [outcome.slot for outcome in session.outcomes] == ["pre-setup", "post-setup"]


def test_context_inherits_only_selected_variables(tmp_path: Path) -> None:
    """Only named variables and allowed prefixes are inherited from the caller."""
    context = _context(
        tmp_path,
        env={"HOME": "/home/ops", "SCW_ACCESS_KEY": "k", "SECRET": "nope", "PATH": "/bin"},
        inherit_env=["HOME", "PATH"],
        inherit_prefixes=["SCW_"],
    )

    assert dict(context.inherited) == {"HOME": "/home/ops", "SCW_ACCESS_KEY": "k", "PATH": "/bin"}
    with pytest.raises(TypeError):
        context.inherited["SECRET"] = "x"  # type: ignore[index]


def test_raising_hook_is_a_failed_hook(tmp_path: Path) -> None:
    """An exception inside an in-process hook counts as a failure."""

    class Broken:
        name = "broken"

        def run(self, *args: object) -> HookExecution:
            raise ValueError("bad state")

    registry = HookRegistry()
    registry.register(HookEvent.SETUP, HookWhen.PRE, Broken())

    outcome = HookRunner(registry).run(HookEvent.SETUP, HookWhen.PRE, _context(tmp_path))

    assert outcome.decision is HookDecision.VETO
    assert outcome.message == "ValueError: bad state"


def test_discover_registers_scripts_by_slot(tmp_path: Path, fake_runner: FakeRunner) -> None:
    """Scripts are matched by slot name with optional .sh/.py suffixes."""
    (tmp_path / "pre-setup.sh").write_text("exit 0\n", encoding="utf-8")
    (tmp_path / "post-teardown.py").write_text("pass\n", encoding="utf-8")
    (tmp_path / "unrelated.sh").write_text("exit 0\n", encoding="utf-8")

    registry = HookRegistry.discover(tmp_path, fake_runner)  # type: ignore[arg-type]

    assert {
        f"{when.value}-{event.value}" for event, when, hook in registry.slots() if hook
    } == {"pre-setup", "post-teardown"}
    hook = registry.get(HookEvent.SETUP, HookWhen.PRE)
    assert isinstance(hook, ScriptHook)
    assert hook.argv(_context(tmp_path)) == ("bash", str(tmp_path / "pre-setup.sh"), "--env=dev")
    empty = HookRegistry.discover(tmp_path / "missing", fake_runner)  # type: ignore[arg-type]
    assert all(hook is None for _, _, hook in empty.slots())


def test_script_hook_runs_isolated_and_exports(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A real script sees only the hook environment and can export variables."""
    monkeypatch.setenv("LEAKED", "1")
    script = tmp_path / "pre-setup.py"
    script.write_text(
        "import os, sys\n"
        "assert sys.argv[1] == '--env=dev', sys.argv\n"
        "assert 'LEAKED' not in os.environ\n"
        "with open(os.environ['PLATFORMCTL_HOOK_EXPORTS'], 'w') as fh:\n"
        "    fh.write('export STAMP=\"' + os.environ['PLATFORMCTL_HOOK_EVENT'] + '\"\\n')\n",
        encoding="utf-8",
    )
    hook = ScriptHook(script, CommandRunner(), timeout=30)

    execution = hook.run(HookEvent.SETUP, HookWhen.PRE, _context(tmp_path), {})

    assert execution.returncode == 0, execution.output
    assert execution.exports == {"STAMP": "setup"}


def test_script_hook_timeout_is_reported(tmp_path: Path, fake_runner: FakeRunner) -> None:
    """A timed-out script reports exit 124."""
    fake_runner.on("bash", timed_out=True)
    hook = ScriptHook(tmp_path / "pre-setup.sh", fake_runner, timeout=5)  # type: ignore[arg-type]

    execution = hook.run(HookEvent.SETUP, HookWhen.PRE, _context(tmp_path), {})

    assert execution.returncode == 124
    assert execution.output == "timed out after 5s"


def test_parse_exports_skips_malformed_lines() -> None:
    """Comments, blank lines and invalid keys are ignored; quotes are stripped."""
    text = "# comment\n\nexport A=1\nB='two words'\n1BAD=x\nnoequals\n"

    assert parse_exports(text) == {"A": "1", "B": "two words"}
