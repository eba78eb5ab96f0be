"""Tests for the structured logging subsystem."""
from __future__ import annotations

import io
import json
import logging
from pathlib import Path

import pytest
from rich.console import Console

from platformctl.logging import StructuredLogger, configure_console_logging


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines if line.strip()]


def test_operation_record_contains_steps_and_result(tmp_path: Path) -> None:
    """A successful operation appends one record with its steps and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "setup", args={"env": "dev"}, target={"kind": "environment", "environment": "dev"}
    ) as op:
        op.add_step("plan-infrastructure", detail={"add": 3, "path": Path("/tmp/plan")})
        op.success("Setup completed.", changed=1, backups=["post-setup-1"])

    (record,) = _records(logger)
    assert record["command"] == "setup"
    assert record["args"] == {"env": "dev"}
    assert record["target"] == {"kind": "environment", "environment": "dev"}
    assert record["steps"][0]["name"] == "plan-infrastructure"  # type: ignore[index]
    assert record["steps"][0]["detail"] == {"add": 3, "path": "/tmp/plan"}  # type: ignore[index]
    assert record["result"] == {
        "status": "success",
        "message": "Setup completed.",
        "changed": 1,
        "backups": ["post-setup-1"],
    }
    assert "user" in record["actor"]  # type: ignore[operator]


def test_escaping_exception_is_recorded_as_error(tmp_path: Path) -> None:
    """An exception leaving the scope is logged as an error and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError, match="boom"):
        with logger.operation("teardown"):
            raise RuntimeError("boom")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert "RuntimeError: boom" in record["result"]["message"]  # type: ignore[index]


def test_exit_exception_keeps_explicit_result(tmp_path: Path) -> None:
    """A result set before an exit exception is not overwritten."""

    class _Exit(Exception):
        exit_code = 3

    logger = StructuredLogger(tmp_path / "logs")
    with pytest.raises(_Exit):
        with logger.operation("teardown") as op:
            op.error("TEARDOWN_INCOMPLETE", rc=3)
            raise _Exit()

    (record,) = _records(logger)
    assert record["result"] == {
        "status": "error",
        "message": "TEARDOWN_INCOMPLETE",
        "rc": 3,
        "errors": ["TEARDOWN_INCOMPLETE"],
    }


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.operations_log_path

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)


def test_library_logs_reach_the_text_log(tmp_path: Path) -> None:
    """Module loggers under ``platformctl`` are written to platformctl.log."""
    StructuredLogger(tmp_path / "logs")
    configure_console_logging(Console(file=io.StringIO()), verbose=True)

    logging.getLogger("platformctl.teardown").error("TEARDOWN_INCOMPLETE environment=dev")
    for handler in logging.getLogger("platformctl").handlers:
        handler.flush()

    text = (tmp_path / "logs" / "platformctl.log").read_text(encoding="utf-8")
    assert "TEARDOWN_INCOMPLETE environment=dev" in text
    assert "platformctl.teardown" in text
