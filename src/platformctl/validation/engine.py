"""Check execution harness for environment validation."""

from __future__ import annotations

import concurrent.futures
import time
import traceback
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from datetime import UTC, datetime

from .models import (
    COMPONENTS,
    CheckDefinition,
    CheckKind,
    ComponentMissing,
    ValidationContext,
    ValidationReport,
    ValidationResult,
    ValidationStatus,
    build_report,
    kinds_for_depth,
)


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _coerce_result(
    check: CheckDefinition,
    result: ValidationResult,
    duration_ms: int,
) -> ValidationResult:
    coerced = result
    if result.component != check.component or result.check != check.check:
        coerced = replace(coerced, component=check.component, check=check.check)
    if result.duration_ms is None:
        coerced = replace(coerced, duration_ms=duration_ms)
    return coerced


def _unexpected_failure(
    check: CheckDefinition,
    exc: Exception,
    duration_ms: int,
) -> ValidationResult:
    return ValidationResult(
        component=check.component,
        check=check.check,
        status=ValidationStatus.FAIL,
        message=f"Check '{check.id}' raised an unexpected error: {exc}",
        detail={"exception": repr(exc), "traceback": traceback.format_exc()},
        duration_ms=duration_ms,
    )


def _run_single_check(
    check: CheckDefinition,
    context: ValidationContext,
) -> ValidationResult:
    start = time.perf_counter()
    try:
        result = check.run(context)
    except ComponentMissing as missing:
        return ValidationResult(
            component=check.component,
            check=check.check,
            status=ValidationStatus.WARN,
            message=f"component not found: {missing}",
            duration_ms=_duration_ms(start),
        )
    except Exception as exc:  # noqa: BLE001 - one broken check must not stop the rest
        return _unexpected_failure(check, exc, _duration_ms(start))
    return _coerce_result(check, result, _duration_ms(start))


def select_checks(
    checks: Iterable[CheckDefinition],
    context: ValidationContext,
    components: Sequence[str] | None = None,
) -> list[CheckDefinition]:
    """Filter *checks* by the run depth and the requested components."""
    kinds = kinds_for_depth(context.options.depth)
    wanted = set(components) if components else None
    return [
        check
        for check in checks
        if check.kind in kinds and (wanted is None or check.component in wanted)
    ]


def run_checks(
    context: ValidationContext,
    checks: Sequence[CheckDefinition],
) -> list[ValidationResult]:
    """Run checks in registry order.

    Measurement checks are independent of each other and run on a bounded
    thread pool; everything else runs sequentially. Result order always
    matches *checks*.
    """
    if not checks:
        return []

    results: list[ValidationResult | None] = [None] * len(checks)
    measurements: list[int] = []
    for index, check in enumerate(checks):
        if check.kind is CheckKind.MEASUREMENT:
            measurements.append(index)
        else:
            results[index] = _run_single_check(check, context)

    max_workers = max(1, context.options.max_concurrency)
    if measurements and max_workers == 1:
        for index in measurements:
            results[index] = _run_single_check(checks[index], context)
    elif measurements:
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_index: dict[concurrent.futures.Future[ValidationResult], int] = {}
            for index in measurements:
                future = executor.submit(_run_single_check, checks[index], context)
                future_to_index[future] = index
            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()

    return [result for result in results if result is not None]


class ValidationEngine:
    """Coordinator that executes checks and aggregates the overall report."""

    def __init__(self, context: ValidationContext) -> None:
        """Store the check execution context."""
        self._context = context

    def run(
        self,
        checks: Sequence[CheckDefinition],
        *,
        components: Sequence[str] | None = None,
        metadata: Mapping[str, object] | None = None,
    ) -> ValidationReport:
        """Run the matching checks and build a validation report."""
        start = time.perf_counter()
        selected = select_checks(checks, self._context, components)
        results = run_checks(self._context, selected)
        run_metadata: dict[str, object] = {
            "duration_ms": _duration_ms(start),
            "registered_checks": len(checks),
            "selected_checks": len(selected),
            "concurrency": self._context.options.max_concurrency,
        }
        if metadata:
            run_metadata.update(metadata)
        return build_report(
            environment=self._context.environment.value,
            timestamp=datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
            depth=self._context.options.depth,
            components=list(components) if components else list(COMPONENTS),
            results=results,
            metadata=run_metadata,
        )
