"""Environment validation infrastructure."""

from __future__ import annotations

from .checks import CheckRegistry, collect_checks, find_database_secret
from .engine import ValidationEngine, run_checks, select_checks
from .models import (
    COMPONENTS,
    CheckDefinition,
    CheckKind,
    ComponentMissing,
    ValidationContext,
    ValidationDepth,
    ValidationOptions,
    ValidationReport,
    ValidationResult,
    ValidationStatus,
    ValidationSummary,
    aggregate_results,
    build_report,
    kinds_for_depth,
)
from .report import render_report, serialize_report, write_report

__all__ = [
    "COMPONENTS",
    "CheckDefinition",
    "CheckKind",
    "CheckRegistry",
    "ComponentMissing",
    "ValidationContext",
    "ValidationDepth",
    "ValidationEngine",
    "ValidationOptions",
    "ValidationReport",
    "ValidationResult",
    "ValidationStatus",
    "ValidationSummary",
    "aggregate_results",
    "build_report",
    "collect_checks",
    "find_database_secret",
    "kinds_for_depth",
    "render_report",
    "run_checks",
    "select_checks",
    "serialize_report",
    "write_report",
]
