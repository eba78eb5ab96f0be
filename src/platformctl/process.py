"""Typed subprocess execution shared by every external tool wrapper.

Commands are always explicit argument vectors; nothing is ever passed through
a shell. :class:`CommandRunner` is the only place that spawns processes, so
tests substitute a scripted runner to observe the exact sequence of calls.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

_LOG = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when a command cannot be started or exits unsuccessfully."""

    def __init__(self, message: str, result: CommandResult | None = None) -> None:
        """Store *result* alongside the message."""
        super().__init__(message)
        self.result = result


class CommandTimeoutError(CommandError):
    """Raised when a command exceeds its timeout under ``check=True``."""


@dataclass(slots=True, frozen=True)
class Command:
    """A single external invocation."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: float | None = None
    input: str | None = None
    stdin_path: Path | None = None
    stdout_path: Path | None = None
    inherit_env: bool = True

    @classmethod
    def of(cls, *argv: object, **kwargs: object) -> Command:
        """Build a command from positional arguments, stringifying each."""
        return cls(argv=tuple(str(arg) for arg in argv), **kwargs)  # type: ignore[arg-type]

    @property
    def program(self) -> str:
        """Return the executable name."""
        return self.argv[0] if self.argv else ""

    def describe(self) -> str:
        """Return a human-readable rendering for logs and error messages."""
        return " ".join(self.argv)


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Uniform outcome of a finished (or timed out) command."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        """Return ``True`` for a zero exit status within the timeout."""
        return self.returncode == 0 and not self.timed_out

    def message(self) -> str:
        """Return the most useful diagnostic text the command produced."""
        if self.timed_out:
            return "timed out"
        return self.stderr.strip() or self.stdout.strip() or "no output"


class CommandRunner:
    """Execute :class:`Command` objects with captured output."""

    def run(self, command: Command, *, check: bool = False) -> CommandResult:
        """Run *command* and return its result.

        With ``check=True`` a non-zero exit raises :class:`CommandError` and a
        timeout raises :class:`CommandTimeoutError`.
        """
        if not command.argv:
            raise CommandError("Cannot run an empty command.")
        env = dict(os.environ) if command.inherit_env else {}
        env.update(command.env)
        _LOG.debug("exec: %s", command.describe())
        start = time.perf_counter()
        try:
            result = self._spawn(command, env)
        except FileNotFoundError as exc:
            raise CommandError(f"{command.program} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            result = CommandResult(
                argv=command.argv,
                returncode=-1,
                stdout=_text(exc.stdout),
                stderr=_text(exc.stderr),
                duration_ms=int((time.perf_counter() - start) * 1000),
                timed_out=True,
            )
            if check:
                raise CommandTimeoutError(
                    f"{command.describe()} timed out after {command.timeout}s", result
                ) from exc
            return result
        if check and not result.ok:
            raise CommandError(
                f"{command.describe()} failed (exit {result.returncode}): {result.message()}",
                result,
            )
        return result

    def _spawn(self, command: Command, env: Mapping[str, str]) -> CommandResult:
        start = time.perf_counter()
        stdin_handle = command.stdin_path.open("rb") if command.stdin_path else None
        stdout_handle = command.stdout_path.open("wb") if command.stdout_path else None
        try:
            completed = subprocess.run(  # noqa: S603 - argv is never shell-interpreted
                list(command.argv),
                cwd=str(command.cwd) if command.cwd else None,
                env=dict(env),
                input=command.input.encode("utf-8") if command.input is not None else None,
                stdin=stdin_handle,
                stdout=stdout_handle if stdout_handle is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=command.timeout,
                check=False,
            )
        finally:
            if stdin_handle is not None:
                stdin_handle.close()
            if stdout_handle is not None:
                stdout_handle.close()
        return CommandResult(
            argv=command.argv,
            returncode=completed.returncode,
            stdout=_text(completed.stdout),
            stderr=_text(completed.stderr),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )


def _text(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def which_all(programs: Sequence[str]) -> dict[str, str | None]:
    """Return the resolved path (or ``None``) for each program name."""
    return {program: shutil.which(program) for program in programs}


__all__ = [
    "Command",
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "CommandTimeoutError",
    "which_all",
]
