"""Structured operation logging for platformctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which
collects the steps taken and the final outcome and appends one JSON record to
``operations.jsonl`` under the configured logs directory. Library modules log
free-form progress through the standard :mod:`logging` hierarchy rooted at
``platformctl``; the CLI routes that hierarchy to the terminal through
:class:`rich.logging.RichHandler` and to ``platformctl.log`` on disk.

Logging must never break a lifecycle run: if the directory cannot be created
or a write fails, the logger disables itself and the command carries on.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import socket
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER_NAME = "platformctl"
OPERATIONS_LOG_NAME = "operations.jsonl"
TEXT_LOG_NAME = "platformctl.log"

_LOG = logging.getLogger(ROOT_LOGGER_NAME)
_HANDLER_TAG = "_platformctl_handler"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on passwd database
        user = "unknown"
    return {"user": user, "pid": os.getpid(), "hostname": socket.gethostname()}


def configure_console_logging(console: Console, *, verbose: bool = False) -> None:
    """Route the ``platformctl`` logger hierarchy to *console* via Rich."""
    _replace_handler(
        "console",
        RichHandler(console=console, show_path=False, markup=False, rich_tracebacks=False),
    )
    _LOG.setLevel(logging.DEBUG if verbose else logging.INFO)


def _replace_handler(kind: str, handler: logging.Handler) -> None:
    for existing in list(_LOG.handlers):
        if getattr(existing, _HANDLER_TAG, None) == kind:
            _LOG.removeHandler(existing)
            existing.close()
    setattr(handler, _HANDLER_TAG, kind)
    _LOG.addHandler(handler)


class OperationScope:
    """Mutable record of a single CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Start tracking *command*."""
        self.operation_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _now_iso()
        self._start = time.perf_counter()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None

    def add_step(
        self,
        name: str,
        *,
        status: str = "success",
        detail: object | None = None,
    ) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)
        level = logging.WARNING if status in {"error", "failed", "warning"} else logging.DEBUG
        _LOG.log(level, "%s: step %s %s", self.command, name, status)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            warnings=warnings,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
            rc=rc,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            warnings=warnings,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if changed is not None:
            result["changed"] = changed
        if rc is not None:
            result["rc"] = rc
        if warnings:
            result["warnings"] = [str(item) for item in warnings]
        if errors:
            result["errors"] = [str(item) for item in errors]
        if backups:
            result["backups"] = [str(item) for item in backups]
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable log record."""
        return {
            "id": self.operation_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "actor": _actor(),
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "steps": self.steps,
            "result": self.result or {"status": "success", "message": "Completed."},
        }


class StructuredLogger:
    """Append operation records to ``operations.jsonl``."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it is unusable."""
        self.log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self.log_dir / OPERATIONS_LOG_NAME
        self._text_log_path = self.log_dir / TEXT_LOG_NAME
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._enabled = False
            _LOG.debug("Structured logging disabled (%s): %s", self.log_dir, exc)
            return
        try:
            file_handler = logging.FileHandler(self._text_log_path, encoding="utf-8")
        except OSError as exc:  # pragma: no cover - permissions env-specific
            _LOG.debug("Text log unavailable (%s): %s", self._text_log_path, exc)
            return
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        _replace_handler("file", file_handler)

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSON operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Track an operation and persist its record when the block exits."""
        scope = OperationScope(command, args=args, target=target)
        _LOG.debug("%s: started", command)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                exit_code = getattr(exc, "exit_code", None)
                if exit_code == 0:
                    scope.success("Completed.")
                else:
                    scope.error(
                        f"{type(exc).__name__}: {exc}".rstrip(": "),
                        rc=exit_code if isinstance(exit_code, int) else None,
                    )
            raise
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            self._enabled = False
            _LOG.debug("Structured logging disabled after write failure: %s", exc)


__all__ = [
    "OperationScope",
    "StructuredLogger",
    "configure_console_logging",
]
