"""Serialisation and console rendering for validation reports."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping, Sequence
from pathlib import Path

from rich.console import Console

from .models import ValidationReport, ValidationStatus

_STATUS_STYLE = {
    ValidationStatus.PASS: "[green]PASS[/green]",
    ValidationStatus.WARN: "[yellow]WARN[/yellow]",
    ValidationStatus.FAIL: "[red]FAIL[/red]",
}


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


def serialize_report(report: ValidationReport) -> dict[str, object]:
    """Convert a validation report into a JSON-serialisable mapping."""
    results: list[dict[str, object]] = []
    for result in report.results:
        results.append(
            {
                "component": result.component,
                "check": result.check,
                "status": result.status.value,
                "message": result.message,
                "detail": _sanitize(result.detail) if result.detail else None,
                "duration_ms": result.duration_ms,
            }
        )
    summary = report.summary
    return {
        "environment": report.environment,
        "timestamp": report.timestamp,
        "depth": report.depth.value,
        "components": list(report.components),
        "results": results,
        "summary": {
            "total": summary.total,
            "passed": summary.passed,
            "failed": summary.failed,
            "warnings": summary.warnings,
            "success_rate": summary.success_rate,
            "status": summary.status.value,
        },
        "metadata": _sanitize(report.metadata) if report.metadata else {},
    }


def write_report(path: Path, report: ValidationReport) -> Path:
    """Write the JSON report to *path* atomically."""
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(
        json.dumps(serialize_report(report), indent=2, sort_keys=False) + "\n",
        encoding="utf-8",
    )
    os.replace(tmp_path, path)
    return path


def render_report(console: Console, report: ValidationReport) -> None:
    """Render a validation report in a human-friendly format."""
    summary = report.summary
    console.print(
        f"Validation of [bold]{report.environment}[/bold] ({report.depth.value}): "
        f"{_STATUS_STYLE[summary.status]}"
    )
    console.print(
        f"Totals: passed={summary.passed} warnings={summary.warnings} "
        f"failed={summary.failed} total={summary.total} "
        f"success_rate={summary.success_rate}%"
    )
    if not report.results:
        console.print("No checks were executed.")
        return

    console.print()
    current: str | None = None
    for result in report.results:
        if result.component != current:
            current = result.component
            console.print(f"[bold]{current}[/bold]")
        console.print(f"  {_STATUS_STYLE[result.status]} {result.check}: {result.message}")
        if result.duration_ms is not None and result.status is not ValidationStatus.PASS:
            console.print(f"    duration: {result.duration_ms} ms")


__all__ = ["render_report", "serialize_report", "write_report"]
