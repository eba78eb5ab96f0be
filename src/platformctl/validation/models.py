"""Data models and aggregation for environment validation."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..environments import Environment, EnvironmentWorkspace
    from ..providers.kubectl import KubectlProvider
    from ..providers.terraform import TerraformProvider


class ValidationStatus(str, Enum):
    """Outcome of a single check."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class ValidationDepth(str, Enum):
    """How much of the registry a run covers."""

    QUICK = "quick"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class CheckKind(str, Enum):
    """Cost class of a check, used to select checks by depth."""

    CONNECTIVITY = "connectivity"
    STANDARD = "standard"
    MEASUREMENT = "measurement"


_KINDS_BY_DEPTH: Mapping[ValidationDepth, frozenset[CheckKind]] = {
    ValidationDepth.QUICK: frozenset({CheckKind.CONNECTIVITY}),
    ValidationDepth.STANDARD: frozenset({CheckKind.CONNECTIVITY, CheckKind.STANDARD}),
    ValidationDepth.COMPREHENSIVE: frozenset(CheckKind),
}

COMPONENTS: tuple[str, ...] = (
    "infrastructure",
    "cluster",
    "application",
    "database",
    "monitoring",
    "network",
    "security",
)


def kinds_for_depth(depth: ValidationDepth) -> frozenset[CheckKind]:
    """Return the check kinds executed at *depth*."""
    return _KINDS_BY_DEPTH[depth]


class ComponentMissing(Exception):
    """Raised by a check when the thing it inspects does not exist (yet)."""


@dataclass(slots=True, frozen=True)
class ValidationOptions:
    """Runtime tunables for a validation run."""

    depth: ValidationDepth = ValidationDepth.STANDARD
    max_concurrency: int = 4


@dataclass(slots=True, frozen=True)
class ValidationContext:
    """Everything a check may consult."""

    config: AppConfig
    environment: Environment
    workspace: EnvironmentWorkspace | None
    terraform: TerraformProvider
    kubectl: KubectlProvider
    kubeconfig: Path
    options: ValidationOptions = field(default_factory=ValidationOptions)


@dataclass(slots=True, frozen=True)
class ValidationResult:
    """Outcome of running one check."""

    component: str
    check: str
    status: ValidationStatus
    message: str
    detail: Mapping[str, Any] | None = None
    duration_ms: int | None = None

    @property
    def id(self) -> str:
        """Return ``component/check``."""
        return f"{self.component}/{self.check}"


CheckFunction = Callable[[ValidationContext], ValidationResult]


@dataclass(slots=True, frozen=True)
class CheckDefinition:
    """Metadata + callable for a check."""

    component: str
    check: str
    kind: CheckKind
    run: CheckFunction

    @property
    def id(self) -> str:
        """Return ``component/check``."""
        return f"{self.component}/{self.check}"


@dataclass(slots=True, frozen=True)
class ValidationSummary:
    """Counts and verdict derived from a result list."""

    total: int
    passed: int
    failed: int
    warnings: int
    success_rate: int
    status: ValidationStatus

    @property
    def ok(self) -> bool:
        """Return ``True`` when no check failed."""
        return self.failed == 0


@dataclass(slots=True, frozen=True)
class ValidationReport:
    """Complete report for a validation run."""

    environment: str
    timestamp: str
    depth: ValidationDepth
    components: Sequence[str]
    results: Sequence[ValidationResult]
    summary: ValidationSummary
    metadata: Mapping[str, Any] | None = None


def aggregate_results(results: Iterable[ValidationResult]) -> ValidationSummary:
    """Count results; any ``fail`` fails the run, ``warn`` only annotates it.

    The success rate is the floor of ``passed * 100 / total`` (100 for an
    empty run).
    """
    total = passed = failed = warnings = 0
    for result in results:
        total += 1
        if result.status is ValidationStatus.PASS:
            passed += 1
        elif result.status is ValidationStatus.FAIL:
            failed += 1
        else:
            warnings += 1
    success_rate = passed * 100 // total if total else 100
    if failed:
        status = ValidationStatus.FAIL
    elif warnings:
        status = ValidationStatus.WARN
    else:
        status = ValidationStatus.PASS
    return ValidationSummary(
        total=total,
        passed=passed,
        failed=failed,
        warnings=warnings,
        success_rate=success_rate,
        status=status,
    )


def build_report(
    environment: str,
    timestamp: str,
    depth: ValidationDepth,
    components: Sequence[str],
    results: Sequence[ValidationResult],
    metadata: Mapping[str, Any] | None = None,
) -> ValidationReport:
    """Create a full ValidationReport from check results."""
    return ValidationReport(
        environment=environment,
        timestamp=timestamp,
        depth=depth,
        components=tuple(components),
        results=tuple(results),
        summary=aggregate_results(results),
        metadata=metadata,
    )
