"""Lifecycle hooks: optional extension points around setup and teardown.

A hook occupies one (event, when) slot, e.g. ``pre-setup``. Script hooks are
discovered by file name in the hooks directory (``pre-setup``,
``pre-setup.sh`` or ``pre-setup.py``); in-process hooks can be registered on a
:class:`HookRegistry` directly. Every hook receives an immutable
:class:`HookContext` and may export ``KEY=VALUE`` pairs that later hooks in
the same run receive as forwarded variables.

A failing ``pre`` hook vetoes the operation. A failing ``post`` hook is only
reported, because the work it follows has already happened.
"""
from __future__ import annotations

import logging
import os
import re
import sys
import tempfile
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

from .environments import Environment
from .process import Command, CommandError, CommandRunner

_LOG = logging.getLogger(__name__)

EXPORTS_ENV_VAR = "PLATFORMCTL_HOOK_EXPORTS"
_EXPORT_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SCRIPT_SUFFIXES = ("", ".sh", ".py")


class HookEvent(str, Enum):
    """Lifecycle operations that expose hooks."""

    SETUP = "setup"
    TEARDOWN = "teardown"


class HookWhen(str, Enum):
    """Position of a hook relative to its operation."""

    PRE = "pre"
    POST = "post"


class HookDecision(str, Enum):
    """What the parent operation should do after a hook ran."""

    CONTINUE = "continue"
    VETO = "veto"


class HookVetoError(RuntimeError):
    """Raised when a ``pre`` hook rejects the operation."""

    def __init__(self, outcome: HookOutcome) -> None:
        """Record the vetoing outcome."""
        super().__init__(
            f"{outcome.slot} hook vetoed the operation "
            f"(exit {outcome.returncode}): {outcome.message}"
        )
        self.outcome = outcome


def slot_name(event: HookEvent, when: HookWhen) -> str:
    """Return the conventional ``<when>-<event>`` name."""
    return f"{when.value}-{event.value}"


@dataclass(slots=True, frozen=True)
class HookContext:
    """Read-only inputs handed to every hook."""

    environment: Environment
    project_root: Path
    template: str | None = None
    inherited: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    forwarded: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(
        cls,
        environment: Environment,
        project_root: Path,
        *,
        template: str | None = None,
        env: Mapping[str, str] | None = None,
        inherit_env: Iterable[str] = (),
        inherit_prefixes: Iterable[str] = (),
    ) -> HookContext:
        """Create a context inheriting selected variables from *env*."""
        source = os.environ if env is None else env
        names = set(inherit_env)
        prefixes = tuple(inherit_prefixes)
        inherited = {
            key: value
            for key, value in source.items()
            if key in names or (prefixes and key.startswith(prefixes))
        }
        return cls(
            environment=environment,
            project_root=project_root,
            template=template,
            inherited=MappingProxyType(inherited),
        )

    def with_forwarded(self, exports: Mapping[str, str]) -> HookContext:
        """Return a new context that also forwards *exports*."""
        if not exports:
            return self
        merged = {**self.forwarded, **exports}
        return replace(self, forwarded=MappingProxyType(merged))

    def environment_variables(
        self,
        event: HookEvent,
        when: HookWhen,
        extra: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Return the process environment for a hook invocation."""
        variables = dict(self.inherited)
        variables.update(self.forwarded)
        variables.update(extra or {})
        variables.update(
            {
                "PLATFORMCTL_ENVIRONMENT": self.environment.value,
                "PLATFORMCTL_TEMPLATE": self.template or "",
                "PLATFORMCTL_HOOK_EVENT": event.value,
                "PLATFORMCTL_HOOK_WHEN": when.value,
                "PLATFORMCTL_PROJECT_ROOT": str(self.project_root),
            }
        )
        return variables


@dataclass(slots=True, frozen=True)
class HookExecution:
    """Raw result reported by a hook implementation."""

    returncode: int
    exports: Mapping[str, str] = field(default_factory=dict)
    output: str = ""


@dataclass(slots=True, frozen=True)
class HookOutcome:
    """Result of running (or not finding) the hook for one slot."""

    event: HookEvent
    when: HookWhen
    decision: HookDecision
    hook: str | None = None
    returncode: int | None = None
    exports: Mapping[str, str] = field(default_factory=dict)
    message: str = ""
    duration_ms: int = 0

    @property
    def slot(self) -> str:
        """Return the slot name, e.g. ``pre-setup``."""
        return slot_name(self.event, self.when)

    @property
    def ran(self) -> bool:
        """Return ``True`` when a hook was present and executed."""
        return self.hook is not None

    @property
    def failed(self) -> bool:
        """Return ``True`` when the hook exited unsuccessfully."""
        return self.returncode not in (None, 0)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "slot": self.slot,
            "hook": self.hook,
            "decision": self.decision.value,
            "returncode": self.returncode,
            "exports": sorted(self.exports),
            "message": self.message,
            "duration_ms": self.duration_ms,
        }


class Hook(Protocol):
    """Interface every hook implementation satisfies."""

    name: str

    def run(
        self,
        event: HookEvent,
        when: HookWhen,
        context: HookContext,
        extra: Mapping[str, str],
    ) -> HookExecution:
        """Execute the hook and report its exit status and exports."""
        ...


@dataclass(slots=True)
class ScriptHook:
    """A hook implemented as an external script."""

    path: Path
    runner: CommandRunner
    timeout: float = 300.0

    @property
    def name(self) -> str:
        """Return the script path as the hook name."""
        return str(self.path)

    def argv(self, context: HookContext) -> tuple[str, ...]:
        """Return the interpreter-aware argument vector."""
        env_arg = f"--env={context.environment.value}"
        if self.path.suffix == ".sh":
            return ("bash", str(self.path), env_arg)
        if self.path.suffix == ".py":
            return (sys.executable, str(self.path), env_arg)
        return (str(self.path), env_arg)

    def run(
        self,
        event: HookEvent,
        when: HookWhen,
        context: HookContext,
        extra: Mapping[str, str],
    ) -> HookExecution:
        """Run the script in an isolated environment and collect its exports."""
        fd, exports_name = tempfile.mkstemp(prefix="platformctl-hook-", suffix=".env")
        os.close(fd)
        exports_path = Path(exports_name)
        try:
            variables = context.environment_variables(event, when, extra)
            variables[EXPORTS_ENV_VAR] = str(exports_path)
            command = Command(
                argv=self.argv(context),
                cwd=context.project_root,
                env=variables,
                timeout=self.timeout,
                inherit_env=False,
            )
            try:
                result = self.runner.run(command)
            except CommandError as exc:
                return HookExecution(returncode=127, output=str(exc))
            if result.timed_out:
                return HookExecution(
                    returncode=124, output=f"timed out after {self.timeout:g}s"
                )
            output = (result.stdout + result.stderr).strip()
            return HookExecution(
                returncode=result.returncode,
                exports=parse_exports(exports_path.read_text(encoding="utf-8")),
                output=output,
            )
        finally:
            exports_path.unlink(missing_ok=True)


def parse_exports(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines written by a hook."""
    exports: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not _EXPORT_KEY.match(key):
            _LOG.warning("Ignoring malformed hook export line: %r", raw_line)
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        exports[key] = value
    return exports


class HookRegistry:
    """Mapping of (event, when) slots to hook implementations."""

    def __init__(self) -> None:
        """Create an empty registry."""
        self._hooks: dict[tuple[HookEvent, HookWhen], Hook] = {}

    def register(self, event: HookEvent, when: HookWhen, hook: Hook) -> None:
        """Register *hook* for a slot, replacing any previous hook."""
        self._hooks[(event, when)] = hook

    def get(self, event: HookEvent, when: HookWhen) -> Hook | None:
        """Return the hook for a slot, if any."""
        return self._hooks.get((event, when))

    def slots(self) -> list[tuple[HookEvent, HookWhen, Hook | None]]:
        """Return every slot with its hook (or ``None``)."""
        return [
            (event, when, self._hooks.get((event, when)))
            for event in HookEvent
            for when in HookWhen
        ]

    @classmethod
    def discover(
        cls,
        directory: Path,
        runner: CommandRunner,
        *,
        timeout: float = 300.0,
    ) -> HookRegistry:
        """Register script hooks found in *directory*."""
        registry = cls()
        if not directory.is_dir():
            return registry
        for event in HookEvent:
            for when in HookWhen:
                base = slot_name(event, when)
                for suffix in _SCRIPT_SUFFIXES:
                    candidate = directory / f"{base}{suffix}"
                    if candidate.is_file():
                        registry.register(
                            event, when, ScriptHook(candidate, runner, timeout=timeout)
                        )
                        break
        return registry


class HookRunner:
    """Execute the hook for a slot and translate its exit status."""

    def __init__(self, registry: HookRegistry) -> None:
        """Store the registry."""
        self._registry = registry

    def run(
        self,
        event: HookEvent,
        when: HookWhen,
        context: HookContext,
        *,
        extra: Mapping[str, str] | None = None,
    ) -> HookOutcome:
        """Run the hook for (event, when); absence means continue."""
        hook = self._registry.get(event, when)
        name = slot_name(event, when)
        if hook is None:
            _LOG.info("No %s hook configured; continuing.", name)
            return HookOutcome(
                event=event,
                when=when,
                decision=HookDecision.CONTINUE,
                message="no hook configured",
            )

        _LOG.info("Running %s hook: %s", name, hook.name)
        start = time.perf_counter()
        try:
            execution = hook.run(event, when, context, dict(extra or {}))
        except Exception as exc:  # noqa: BLE001 - a broken hook is a failed hook
            execution = HookExecution(returncode=1, output=f"{type(exc).__name__}: {exc}")
        duration_ms = int((time.perf_counter() - start) * 1000)

        if execution.returncode == 0:
            decision = HookDecision.CONTINUE
            message = execution.output or "ok"
        elif when is HookWhen.PRE:
            decision = HookDecision.VETO
            message = execution.output or "pre hook failed"
            _LOG.error("%s hook failed (exit %s); vetoing.", name, execution.returncode)
        else:
            decision = HookDecision.CONTINUE
            message = execution.output or "post hook failed"
            _LOG.warning("%s hook failed (exit %s); continuing.", name, execution.returncode)

        return HookOutcome(
            event=event,
            when=when,
            decision=decision,
            hook=hook.name,
            returncode=execution.returncode,
            exports=dict(execution.exports) if decision is HookDecision.CONTINUE else {},
            message=message,
            duration_ms=duration_ms,
        )


class HookSession:
    """Run the hooks of one lifecycle run, carrying exports between them."""

    def __init__(self, runner: HookRunner, context: HookContext) -> None:
        """Start a session with an initial *context*."""
        self._runner = runner
        self.context = context
        self.outcomes: list[HookOutcome] = []

    def fire(
        self,
        event: HookEvent,
        when: HookWhen,
        *,
        extra: Mapping[str, str] | None = None,
    ) -> HookOutcome:
        """Run a slot; raise :class:`HookVetoError` when a ``pre`` hook vetoes."""
        outcome = self._runner.run(event, when, self.context, extra=extra)
        self.outcomes.append(outcome)
        if outcome.decision is HookDecision.VETO:
            raise HookVetoError(outcome)
        self.context = self.context.with_forwarded(outcome.exports)
        return outcome


__all__ = [
    "EXPORTS_ENV_VAR",
    "Hook",
    "HookContext",
    "HookDecision",
    "HookEvent",
    "HookExecution",
    "HookOutcome",
    "HookRegistry",
    "HookRunner",
    "HookSession",
    "HookVetoError",
    "HookWhen",
    "ScriptHook",
    "parse_exports",
    "slot_name",
]
