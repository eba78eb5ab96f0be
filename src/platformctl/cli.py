"""Typer command line for ``platformctl``.

Every command builds (or reuses) a :class:`RuntimeContext`, records its run in
the structured operation log and maps domain errors onto
:class:`~platformctl.exit_codes.ExitCode` values.
"""
from __future__ import annotations

import json
import os
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backend import BackendAuthError, BackendError, StateBackendCoordinator
from .backup import (
    RESTORE_ORDER,
    BackupComponent,
    BackupError,
    BackupManager,
    BackupRegistryError,
    BackupsRegistry,
    ComponentContext,
    ComponentRegistry,
    RestoreCancelled,
    RestoreError,
    default_component_registry,
    parse_components,
)
from .config import AppConfig, ConfigError, load_config
from .environments import (
    Environment,
    PreconditionError,
    kubeconfig_path,
    resolve_workspace,
)
from .exit_codes import ExitCode
from .hooks import HookContext, HookRegistry, HookRunner, HookSession, HookVetoError
from .lifecycle import SetupWorkflow, TeardownWorkflow
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .orchestrator import PhaseOrchestrator, PhaseStepError, SetupCancelled, SetupOptions
from .preflight import require_prerequisites
from .process import CommandRunner
from .providers import KubectlProvider, ObjectStorageProvider, TerraformProvider
from .providers.object_storage import credentials_from_env
from .teardown import (
    Destroyer,
    DestructionRequest,
    SafetyGate,
    TeardownCancelled,
    TeardownRejected,
    TeardownState,
    TeardownStepError,
)
from .templates import TemplateEngine
from .validation import (
    COMPONENTS,
    ValidationContext,
    ValidationDepth,
    ValidationEngine,
    ValidationOptions,
    ValidationReport,
    ValidationStatus,
    collect_checks,
    render_report,
    serialize_report,
    write_report,
)

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to platformctl's YAML config file.",
)

ENV_OPTION = typer.Option(
    ...,
    "--env",
    "-e",
    help="Target environment (dev, staging or prod).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON.",
)

COMPONENT_OPTION = typer.Option(
    None,
    "--component",
    "-c",
    help=(
        "Component to include: all, infrastructure, kubernetes, database or "
        "workspace-data. Repeat or comma-separate for several."
    ),
)

_STATUS_COLOURS = {
    "success": "green",
    "skipped": "yellow",
    "warning": "yellow",
    "planned": "yellow",
    "cancelled": "yellow",
    "failed": "red",
    "error": "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Two-phase infrastructure lifecycle CLI.

        Provision an environment (infrastructure, then application), validate
        it, back it up, restore it and tear it down behind a safety gate.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    runner: CommandRunner
    templates: TemplateEngine
    terraform: TerraformProvider
    kubectl: KubectlProvider
    storage: ObjectStorageProvider
    backend: StateBackendCoordinator
    hooks: HookRegistry
    backups: BackupsRegistry
    components: ComponentRegistry


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    verbose: bool = False,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    configure_console_logging(console, verbose=verbose)
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    logger = StructuredLogger(config.logs_dir)
    runner = CommandRunner()
    credentials = credentials_from_env(os.environ)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    terraform = TerraformProvider(
        runner,
        terraform_bin=config.tools.terraform_bin,
        plan_timeout=config.timeouts.plan,
        apply_timeout=config.timeouts.apply,
        destroy_timeout=config.timeouts.destroy,
        env=credentials,
    )
    kubectl = KubectlProvider(
        runner,
        kubectl_bin=config.tools.kubectl_bin,
        timeout=config.timeouts.kubectl,
    )
    storage = ObjectStorageProvider(
        runner,
        endpoint=config.backend.endpoint,
        region=config.backend.region,
        storage_bin=config.tools.storage_bin,
        timeout=config.timeouts.storage,
        credentials=credentials,
    )
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        runner=runner,
        templates=templates,
        terraform=terraform,
        kubectl=kubectl,
        storage=storage,
        backend=StateBackendCoordinator(config, storage, templates),
        hooks=HookRegistry.discover(config.hooks.dir, runner, timeout=config.timeouts.hook),
        backups=BackupsRegistry(config.backups.root, config.backups.index),
        components=default_component_registry(),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the platformctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging."),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, verbose)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"platformctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, verbose)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _parse_environment(op: OperationScope, value: str) -> Environment:
    try:
        return Environment.parse(value)
    except PreconditionError as exc:
        _command_error(op, str(exc))


def _preflight(
    runtime: RuntimeContext,
    op: OperationScope,
    tools: Sequence[str],
    *,
    credentials: bool = True,
) -> None:
    try:
        require_prerequisites(
            runtime.config,
            tools=tools,
            env=os.environ,
            runner=runtime.runner,
            require_credentials=credentials,
        )
    except PreconditionError as exc:
        _command_error(op, str(exc))
    op.add_step("preflight", detail={"tools": list(tools)})


def _confirm(message: str) -> bool:
    return typer.confirm(message, default=False)


def _prompt(message: str) -> str:
    return str(typer.prompt(message, default="", show_default=False))


def _bound_kubectl(runtime: RuntimeContext, environment: Environment) -> KubectlProvider:
    return runtime.kubectl.with_kubeconfig(kubeconfig_path(runtime.config, environment))


def _component_context(runtime: RuntimeContext, environment: Environment) -> ComponentContext:
    return ComponentContext(
        config=runtime.config,
        environment=environment,
        terraform=runtime.terraform,
        kubectl=_bound_kubectl(runtime, environment),
        backend=runtime.backend,
    )


def _backup_manager(runtime: RuntimeContext) -> BackupManager:
    return BackupManager(
        runtime.config,
        registry=runtime.backups,
        components=runtime.components,
        runner=runtime.runner,
        confirm=_confirm,
    )


def _hook_session(
    runtime: RuntimeContext,
    environment: Environment,
    template: str | None = None,
) -> HookSession:
    hooks_config = runtime.config.hooks
    context = HookContext.build(
        environment,
        runtime.config.project_root,
        template=template,
        inherit_env=hooks_config.inherit_env,
        inherit_prefixes=hooks_config.inherit_prefixes,
    )
    return HookSession(HookRunner(runtime.hooks), context)


def _run_validation(
    runtime: RuntimeContext,
    environment: Environment,
    depth: ValidationDepth,
    components: Sequence[str] | None = None,
) -> ValidationReport:
    try:
        workspace = resolve_workspace(runtime.config, environment)
    except PreconditionError:
        workspace = None
    kubeconfig = kubeconfig_path(runtime.config, environment)
    context = ValidationContext(
        config=runtime.config,
        environment=environment,
        workspace=workspace,
        terraform=runtime.terraform,
        kubectl=runtime.kubectl.with_kubeconfig(kubeconfig),
        kubeconfig=kubeconfig,
        options=ValidationOptions(depth=depth),
    )
    engine = ValidationEngine(context)
    return engine.run(collect_checks().definitions(), components=components)


def _parse_validation_components(op: OperationScope, raw: str | None) -> list[str] | None:
    if not raw:
        return None
    requested = [part.strip().lower() for part in raw.split(",") if part.strip()]
    unknown = sorted(set(requested) - set(COMPONENTS))
    if unknown:
        _command_error(
            op,
            f"Unknown validation components: {', '.join(unknown)}. "
            f"Available: {', '.join(COMPONENTS)}.",
        )
    return requested


def _parse_backup_components(
    op: OperationScope, values: Sequence[str] | None
) -> tuple[BackupComponent, ...]:
    try:
        return parse_components(values)
    except BackupError as exc:
        _command_error(op, str(exc))


def _print_step(name: str, status: str, detail: object) -> None:
    colour = _STATUS_COLOURS.get(status, "white")
    suffix = f": {detail}" if detail not in (None, "", [], {}) else ""
    console.print(f"[{colour}]{status:>9}[/{colour}] {name}{suffix}")


def _render_steps(steps: Sequence[Mapping[str, object]], *, title: str) -> None:
    table = Table(show_header=True, header_style="bold magenta", title=title)
    table.add_column("Step", style="bold")
    table.add_column("Status")
    table.add_column("Detail")
    if not steps:
        table.add_row("(none)", "", "")
    for step in steps:
        status = str(step.get("status", ""))
        colour = _STATUS_COLOURS.get(status, "white")
        detail = step.get("detail")
        if isinstance(detail, (list, dict)):
            rendered = json.dumps(detail, sort_keys=True)
        else:
            rendered = "" if detail is None else str(detail)
        table.add_row(str(step.get("name", "")), f"[{colour}]{status}[/{colour}]", rendered)
    console.print(table)


# ----------------------------------------------------------------------
# Lifecycle commands
# ----------------------------------------------------------------------
@app.command()
def setup(
    ctx: typer.Context,
    env: str = ENV_OPTION,
    template: str | None = typer.Option(
        None, "--template", "-t", help="Workspace template id to provision from."
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Plan without applying, writing artifacts or running hooks."
    ),
    auto_approve: bool = typer.Option(
        False, "--auto-approve", help="Apply without interactive confirmation."
    ),
    enable_monitoring: bool = typer.Option(
        False, "--enable-monitoring", help="Provision the monitoring stack."
    ),
    enable_ha: bool = typer.Option(
        False, "--enable-ha", help="Provision highly-available components."
    ),
    budget: float | None = typer.Option(
        None, "--budget", min=0, help="Monthly budget limit for this run."
    ),
    alert_threshold: int | None = typer.Option(
        None,
        "--alert-threshold",
        min=1,
        max=100,
        help="Warn when the estimate exceeds this percentage of the budget.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision the infrastructure phase, then the application phase."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup",
        args={
            "env": env,
            "template": template,
            "dry_run": dry_run,
            "auto_approve": auto_approve,
            "enable_monitoring": enable_monitoring,
            "enable_ha": enable_ha,
            "budget": budget,
            "alert_threshold": alert_threshold,
        },
        target={"kind": "environment", "environment": env},
    ) as op:
        environment = _parse_environment(op, env)
        config = runtime.config
        _preflight(
            runtime,
            op,
            [config.tools.terraform_bin, config.tools.kubectl_bin, config.tools.storage_bin],
        )
        options = SetupOptions(
            template=template,
            dry_run=dry_run,
            auto_approve=auto_approve,
            enable_monitoring=enable_monitoring,
            enable_ha=enable_ha,
            budget=budget,
            alert_threshold=alert_threshold,
        )
        orchestrator = PhaseOrchestrator(
            config,
            backend=runtime.backend,
            terraform=runtime.terraform,
            kubectl=runtime.kubectl,
            confirm=_confirm,
            on_step=None if json_output else _print_step,
        )
        manager = _backup_manager(runtime)
        component_context = _component_context(runtime, environment)
        workflow = SetupWorkflow(
            orchestrator=orchestrator,
            hooks=_hook_session(runtime, environment, template),
            validate=lambda: _run_validation(runtime, environment, ValidationDepth.STANDARD),
            snapshot=lambda kind: manager.backup(component_context, kind=kind),
        )
        try:
            outcome = workflow.run(environment, options)
        except PreconditionError as exc:
            _command_error(op, str(exc))
        except HookVetoError as exc:
            _command_error(op, f"Setup vetoed: {exc}")
        except SetupCancelled as exc:
            _command_error(op, str(exc), rc=ExitCode.CANCELLED)
        except (BackendAuthError, BackendError) as exc:
            _command_error(op, f"State backend unavailable: {exc}")
        except PhaseStepError as exc:
            if exc.partial:
                message = (
                    f"Partial setup: {exc}. The cluster access artifact is kept at "
                    f"{exc.artifacts.get('kubeconfig', 'n/a')}; fix the application "
                    "phase and re-run setup."
                )
                _command_error(op, message, rc=ExitCode.PARTIAL)
            _command_error(op, f"Setup failed: {exc}")

        for step in outcome.setup.steps:
            op.add_step(
                str(step["name"]), status=str(step["status"]), detail=step.get("detail")
            )
        payload = outcome.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            _render_steps(outcome.setup.steps, title=f"setup {environment.value}")
            if outcome.setup.cost is not None and outcome.setup.cost.monthly is not None:
                console.print(f"Estimated monthly cost: {outcome.setup.cost.monthly:.2f}")
            if outcome.validation is not None:
                summary = outcome.validation.summary
                console.print(
                    f"Validation: {summary.status.value} "
                    f"({summary.passed}/{summary.total} passed)"
                )
            if outcome.backup:
                console.print(f"Post-setup backup: [bold]{outcome.backup}[/bold]")
            for warning in outcome.warnings:
                console.print(f"[yellow]{warning}[/yellow]")

        if dry_run:
            console.print("[yellow]Dry run[/yellow]: no changes were applied.")
            op.success("Dry run complete.", changed=0, context=payload)
            return
        if outcome.warnings:
            op.warning(
                "Setup completed with warnings.",
                warnings=outcome.warnings,
                changed=int(outcome.setup.changed),
                context=payload,
            )
        else:
            op.success(
                "Setup completed.",
                changed=int(outcome.setup.changed),
                backups=[outcome.backup] if outcome.backup else None,
                context=payload,
            )
        console.print(f"[green]Environment '{environment.value}' is ready.[/green]")


@app.command()
def teardown(
    ctx: typer.Context,
    env: str = ENV_OPTION,
    confirm: bool = typer.Option(
        False, "--confirm", help="Required acknowledgement that resources will be destroyed."
    ),
    force: bool = typer.Option(
        False, "--force", help="Skip the delay window and override active-workload checks."
    ),
    emergency: bool = typer.Option(
        False, "--emergency", help="Skip typed confirmations and the delay window."
    ),
    no_backup: bool = typer.Option(
        False, "--no-backup", help="Do not take a pre-destroy backup."
    ),
    preserve_data: bool = typer.Option(
        False, "--preserve-data", help="Keep data-bearing resources and namespaces."
    ),
    confirmations: list[str] | None = typer.Option(
        None,
        "--confirmation",
        help="Pre-supply a confirmation literal (repeat for each prompt).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Destroy an environment, application phase first."""
    runtime = _get_runtime(ctx)
    request_args: dict[str, object] = {
        "env": env,
        "confirm": confirm,
        "force": force,
        "emergency": emergency,
        "no_backup": no_backup,
        "preserve_data": preserve_data,
        "confirmations": len(confirmations or []),
    }
    with runtime.logger.operation(
        "teardown",
        args=request_args,
        target={"kind": "environment", "environment": env},
    ) as op:
        if not confirm:
            _command_error(op, "Refusing to tear down without --confirm.")
        environment = _parse_environment(op, env)
        config = runtime.config
        _preflight(runtime, op, [config.tools.terraform_bin, config.tools.kubectl_bin])
        try:
            workspace = resolve_workspace(config, environment)
        except PreconditionError as exc:
            _command_error(op, str(exc))

        kubectl = _bound_kubectl(runtime, environment)
        manager = _backup_manager(runtime)
        component_context = _component_context(runtime, environment)

        def _tick(remaining: int) -> None:
            if remaining % 10 == 0 or remaining <= 5:
                console.print(f"[yellow]Destroying in {remaining}s (Ctrl+C to cancel)[/yellow]")

        workflow = TeardownWorkflow(
            gate=SafetyGate(config, kubectl, prompt=_prompt, on_tick=_tick),
            destroyer=Destroyer(
                config,
                terraform=runtime.terraform,
                kubectl=kubectl,
                templates=runtime.templates,
            ),
            hooks=_hook_session(runtime, environment),
            snapshot=lambda kind: manager.backup(component_context, kind=kind),
        )
        request = DestructionRequest(
            environment=environment,
            force=force,
            emergency=emergency,
            preserve_data=preserve_data,
            backup=not no_backup,
            confirmations=tuple(confirmations or ()),
        )
        try:
            result = workflow.run(request, workspace)
        except TeardownRejected as exc:
            _command_error(op, f"Teardown rejected: {exc}")
        except TeardownCancelled as exc:
            _command_error(op, str(exc), rc=ExitCode.CANCELLED)
        except HookVetoError as exc:
            _command_error(op, f"Teardown vetoed: {exc}")
        except TeardownStepError as exc:
            _command_error(op, f"Teardown failed: {exc}")

        for step in result.steps:
            op.add_step(str(step["name"]), status=str(step["status"]), detail=step.get("detail"))
        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            _render_steps(result.steps, title=f"teardown {environment.value}")
            if result.archive_dir is not None:
                console.print(f"Teardown archive: {result.archive_dir}")
            for address in result.preserved:
                console.print(f"[cyan]preserved[/cyan] {address}")

        if result.state is TeardownState.INCOMPLETE:
            for address in result.remaining:
                console.print(f"[red]remaining[/red] {address}")
            _command_error(
                op,
                f"TEARDOWN_INCOMPLETE: {len(result.remaining)} resources remain in "
                f"'{environment.value}'; manual cleanup required.",
                rc=ExitCode.INCOMPLETE,
                errors=result.remaining,
            )
        op.success(
            "Teardown completed.",
            changed=len(result.steps),
            backups=[result.backup] if result.backup else None,
            context=payload,
        )
        console.print(f"[green]Environment '{environment.value}' destroyed.[/green]")


@app.command()
def validate(
    ctx: typer.Context,
    env: str = ENV_OPTION,
    quick: bool = typer.Option(False, "--quick", help="Connectivity checks only."),
    comprehensive: bool = typer.Option(
        False, "--comprehensive", help="Include measurement checks."
    ),
    components: str | None = typer.Option(
        None,
        "--components",
        help=f"Comma-separated components ({', '.join(COMPONENTS)}).",
    ),
    output: Path | None = typer.Option(
        None, "--output", "-o", dir_okay=False, help="Write the JSON report to this file."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Check an environment's health component by component."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "validate",
        args={
            "env": env,
            "quick": quick,
            "comprehensive": comprehensive,
            "components": components,
            "output": str(output) if output else None,
            "json": json_output,
        },
        target={"kind": "environment", "environment": env},
    ) as op:
        if quick and comprehensive:
            _command_error(op, "--quick and --comprehensive are mutually exclusive.")
        environment = _parse_environment(op, env)
        selected = _parse_validation_components(op, components)
        if quick:
            depth = ValidationDepth.QUICK
        elif comprehensive:
            depth = ValidationDepth.COMPREHENSIVE
        else:
            depth = ValidationDepth.STANDARD

        report = _run_validation(runtime, environment, depth, selected)
        payload = serialize_report(report)
        if output is not None:
            try:
                write_report(output, report)
            except OSError as exc:
                _command_error(op, f"Failed to write report to {output}: {exc}")
            op.add_step("write-report", detail=str(output))

        if json_output:
            console.print_json(data=payload)
        else:
            render_report(console, report)

        summary = report.summary
        context = {"summary": payload["summary"]}
        if summary.status is ValidationStatus.FAIL:
            op.error(
                f"Validation failed ({summary.failed} checks).",
                errors=[
                    f"{result.component}/{result.check}: {result.message}"
                    for result in report.results
                    if result.status is ValidationStatus.FAIL
                ],
                rc=int(ExitCode.FAILURE),
            )
            raise typer.Exit(code=ExitCode.FAILURE)
        if summary.status is ValidationStatus.WARN:
            op.warning(
                "Validation passed with warnings.",
                warnings=[
                    f"{result.component}/{result.check}: {result.message}"
                    for result in report.results
                    if result.status is ValidationStatus.WARN
                ],
                context=context,
            )
            return
        op.success("Validation passed.", changed=0, context=context)


@app.command()
def backup(
    ctx: typer.Context,
    env: str = ENV_OPTION,
    backup_name: str | None = typer.Option(
        None, "--backup-name", "-n", help="Archive name (defaults to a timestamped name)."
    ),
    component: list[str] | None = COMPONENT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Capture an environment into a named archive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup",
        args={"env": env, "backup_name": backup_name, "component": component, "json": json_output},
        target={"kind": "backup", "environment": env, "name": backup_name},
    ) as op:
        environment = _parse_environment(op, env)
        selected = _parse_backup_components(op, component)
        manager = _backup_manager(runtime)
        try:
            archive = manager.backup(
                _component_context(runtime, environment),
                components=selected,
                name=backup_name,
            )
        except (BackupError, BackupRegistryError, OSError) as exc:
            _command_error(op, f"Backup failed: {exc}")

        manifest = archive.manifest
        payload = archive.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=True, header_style="bold magenta", title=manifest.name)
            table.add_column("Component", style="bold")
            table.add_column("Status")
            table.add_column("Size")
            table.add_column("Message")
            for item, record in manifest.components.items():
                colour = {"captured": "green", "failed": "red"}.get(record.status.value, "yellow")
                table.add_row(
                    item.value,
                    f"[{colour}]{record.status.value}[/{colour}]",
                    str(record.size_bytes),
                    record.message or "",
                )
            console.print(table)
            console.print(f"Archive: {archive.location}")

        failed = [item.value for item in manifest.failed()]
        captured = manifest.captured()
        if failed and not captured:
            _command_error(
                op,
                f"Backup '{manifest.name}' captured nothing; failed: {', '.join(failed)}.",
                errors=failed,
            )
        if failed:
            op.warning(
                f"Backup '{manifest.name}' is partial.",
                warnings=[f"{name} failed" for name in failed],
                backups=[manifest.name],
                context=payload,
            )
            console.print(f"[yellow]Partial backup; failed: {', '.join(failed)}[/yellow]")
            return
        op.success(
            f"Backup '{manifest.name}' created.",
            changed=len(captured),
            backups=[manifest.name],
            context=payload,
        )


@app.command()
def restore(
    ctx: typer.Context,
    env: str = ENV_OPTION,
    backup_name: str = typer.Option(..., "--backup-name", "-n", help="Archive to restore."),
    component: list[str] | None = COMPONENT_OPTION,
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be restored."),
    auto: bool = typer.Option(False, "--auto", help="Answer yes to restore confirmations."),
    force: bool = typer.Option(
        False, "--force", help="Overwrite an existing infrastructure workspace."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Replay a backup archive into an environment."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restore",
        args={
            "env": env,
            "backup_name": backup_name,
            "component": component,
            "dry_run": dry_run,
            "auto": auto,
            "force": force,
        },
        target={"kind": "backup", "environment": env, "name": backup_name},
    ) as op:
        environment = _parse_environment(op, env)
        selected = _parse_backup_components(op, component)
        manager = _backup_manager(runtime)
        try:
            result = manager.restore(
                _component_context(runtime, environment),
                backup_name,
                components=selected,
                dry_run=dry_run,
                auto=auto,
                force=force,
            )
        except RestoreCancelled as exc:
            _command_error(op, str(exc), rc=ExitCode.CANCELLED)
        except (RestoreError, BackupError, BackupRegistryError) as exc:
            _command_error(op, f"Restore failed: {exc}")

        payload = result.to_dict()
        for outcome in result.outcomes:
            op.add_step(
                outcome.component.value, status=outcome.status.value, detail=outcome.message
            )
        if json_output:
            console.print_json(data=payload)
        else:
            colours = {"restored": "green", "planned": "yellow", "skipped": "yellow"}
            for outcome in result.outcomes:
                colour = colours.get(outcome.status.value, "red")
                console.print(
                    f"[{colour}]{outcome.status.value:>8}[/{colour}] "
                    f"{outcome.component.value}: {outcome.message}"
                )

        if not result.ok:
            _command_error(
                op,
                f"Restore of '{backup_name}' into '{environment.value}' did not complete.",
                errors=[
                    f"{outcome.component.value}: {outcome.message}"
                    for outcome in result.outcomes
                    if outcome.status.value in {"failed", "aborted"}
                ],
            )
        if dry_run:
            console.print("[yellow]Dry run[/yellow]: nothing was restored.")
            op.success("Dry run complete.", changed=0, context=payload)
            return
        op.success(
            f"Restored '{backup_name}' into '{environment.value}'.",
            changed=sum(1 for outcome in result.outcomes if outcome.status.value == "restored"),
            context=payload,
        )


# ----------------------------------------------------------------------
# Sub-command groups
# ----------------------------------------------------------------------
backups_app = typer.Typer(help="Inspect and prune backup archives.")
hooks_app = typer.Typer(help="Inspect lifecycle hooks.")
backend_app = typer.Typer(help="Manage the remote state backend.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(backups_app, name="backups")
app.add_typer(hooks_app, name="hooks")
app.add_typer(backend_app, name="backend")
app.add_typer(config_app, name="config")


@backups_app.command("list")
def backups_list(
    ctx: typer.Context,
    env: str | None = typer.Option(None, "--env", "-e", help="Filter by environment."),
    include_removed: bool = typer.Option(
        False, "--all", help="Include archives already removed by prune."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List archives recorded in the backup index."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups list",
        args={"env": env, "all": include_removed, "json": json_output},
        target={"kind": "backup", "scope": "registry"},
    ) as op:
        try:
            if env:
                entries = runtime.backups.entries_for_environment(
                    _parse_environment(op, env).value
                )
            else:
                entries = runtime.backups.list_entries()
        except BackupRegistryError as exc:
            _command_error(op, f"Failed to read backup index: {exc}")

        if not include_removed:
            entries = [entry for entry in entries if entry.get("status") != "removed"]
        entries.sort(key=lambda item: str(item.get("created_at", "")), reverse=True)

        if json_output:
            console.print_json(data={"backups": entries})
            op.success("Reported backup list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Environment")
        table.add_column("Kind")
        table.add_column("Created At")
        table.add_column("Size")
        table.add_column("Status")

        if not entries:
            table.add_row("(none)", "", "", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry.get("name", "")),
                str(entry.get("environment", "")),
                str(entry.get("kind", "")),
                str(entry.get("created_at", "")),
                str(entry.get("size_bytes", "")),
                str(entry.get("status", "")),
            )
        console.print(table)
        op.success("Reported backup list.", changed=0)


@backups_app.command("show")
def backups_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Archive name to inspect."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show an archive's index entry and component breakdown."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups show",
        args={"name": name, "json": json_output},
        target={"kind": "backup", "name": name},
    ) as op:
        try:
            entry = runtime.backups.find(name)
        except BackupRegistryError as exc:
            _command_error(op, str(exc))
        if entry is None:
            _command_error(op, f"Backup '{name}' not found.")

        if json_output:
            console.print_json(data={"backup": entry})
            op.success("Reported backup details (JSON).", changed=0)
            return

        table = Table(show_header=False)
        for key in ["name", "environment", "kind", "created_at", "status", "path", "size_bytes"]:
            value = entry.get(key)
            if value is not None:
                table.add_row(key.replace("_", " ").title(), str(value))
        checksum = entry.get("checksum")
        if isinstance(checksum, Mapping):
            algorithm = checksum.get("algorithm", "")
            table.add_row("Checksum", f"{algorithm}:{checksum.get('value', '')}")
        components = entry.get("components")
        if isinstance(components, Mapping):
            for item in RESTORE_ORDER:
                if item.value in components:
                    table.add_row(f"Component {item.value}", str(components[item.value]))
        console.print(table)
        op.success("Reported backup details.", changed=0)


@backups_app.command("prune")
def backups_prune(
    ctx: typer.Context,
    older_than: int | None = typer.Option(
        None,
        "--older-than",
        min=0,
        help="Remove archives older than this many days (defaults to the retention setting).",
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Preview the prune actions without deleting archives."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove archives older than the retention window."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups prune",
        args={"older_than": older_than, "dry_run": dry_run, "json": json_output},
        target={"kind": "backup", "scope": "prune"},
    ) as op:
        manager = _backup_manager(runtime)
        try:
            results = manager.prune(retention_days=older_than, dry_run=dry_run)
        except BackupRegistryError as exc:
            _command_error(op, str(exc))

        if json_output:
            console.print_json(data={"results": results})
        elif not results:
            console.print("[yellow]No backups matched prune criteria.[/yellow]")
        else:
            for result in results:
                status = str(result.get("status"))
                colour = {"removed": "green", "planned": "yellow"}.get(status, "red")
                console.print(f"[{colour}]{status}[/{colour}] {result.get('name')}")

        errors: list[str] = []
        for result in results:
            if result.get("status") != "error":
                continue
            details = result.get("errors")
            reasons = [str(item) for item in details] if isinstance(details, list) else []
            errors.append(f"{result.get('name')}: {'; '.join(reasons)}")
        if errors:
            op.error("Some backups could not be pruned.", errors=errors, rc=int(ExitCode.FAILURE))
            raise typer.Exit(code=ExitCode.FAILURE)
        if dry_run:
            op.success("Dry run complete.", changed=0, context={"results": results})
            return
        op.success(
            f"Pruned {len(results)} backups.",
            changed=len(results),
            context={"results": results},
        )


@hooks_app.command("list")
def hooks_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show which lifecycle slots have a hook."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "hooks list",
        args={"json": json_output},
        target={"kind": "hooks", "dir": str(runtime.config.hooks.dir)},
    ) as op:
        slots = [
            {
                "event": event.value,
                "when": when.value,
                "hook": hook.name if hook is not None else None,
            }
            for event, when, hook in runtime.hooks.slots()
        ]
        if json_output:
            console.print_json(data={"dir": str(runtime.config.hooks.dir), "hooks": slots})
            op.success("Reported hooks (JSON).", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Event", style="bold")
        table.add_column("When")
        table.add_column("Hook")
        for slot in slots:
            table.add_row(
                str(slot["event"]), str(slot["when"]), str(slot["hook"] or "[dim](none)[/dim]")
            )
        console.print(table)
        op.success("Reported hooks.", changed=0)


@backend_app.command("ensure")
def backend_ensure(
    ctx: typer.Context,
    env: str = ENV_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Create (if needed) the state container and write backend config files."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backend ensure",
        args={"env": env, "json": json_output},
        target={"kind": "backend", "environment": env},
    ) as op:
        environment = _parse_environment(op, env)
        _preflight(runtime, op, [runtime.config.tools.storage_bin])
        try:
            workspace = resolve_workspace(runtime.config, environment)
        except PreconditionError as exc:
            _command_error(op, str(exc))

        pointers: list[dict[str, object]] = []
        changed = 0
        try:
            for phase in workspace.phases:
                pointer = runtime.backend.ensure(
                    environment, phase, preferred_layout=workspace.layout
                )
                path, written = runtime.backend.write_backend_config(
                    pointer, workspace.phase_dir(phase)
                )
                changed += int(written)
                pointers.append({**pointer.to_dict(), "config_file": str(path)})
                op.add_step(f"ensure-{phase.value}", detail=f"s3://{pointer.bucket}/{pointer.key}")
        except (BackendAuthError, BackendError) as exc:
            _command_error(op, f"State backend unavailable: {exc}")
        except OSError as exc:
            _command_error(op, f"Failed to write backend configuration: {exc}")

        if json_output:
            console.print_json(data={"backends": pointers})
        else:
            for pointer_data in pointers:
                console.print(
                    f"[green]{pointer_data['phase']}[/green]: "
                    f"s3://{pointer_data['bucket']}/{pointer_data['key']} "
                    f"({pointer_data['layout']}) -> {pointer_data['config_file']}"
                )
        op.success("State backend ready.", changed=changed, context={"backends": pointers})


@backend_app.command("show")
def backend_show(
    ctx: typer.Context,
    env: str = ENV_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report the state container and which state keys exist."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backend show",
        args={"env": env, "json": json_output},
        target={"kind": "backend", "environment": env},
    ) as op:
        environment = _parse_environment(op, env)
        try:
            data = runtime.backend.describe(environment)
        except (BackendAuthError, BackendError) as exc:
            _command_error(op, f"State backend unavailable: {exc}")

        if json_output:
            console.print_json(data=data)
            op.success("Reported backend (JSON).", changed=0)
            return
        table = Table(show_header=False)
        for key in ("environment", "bucket", "status", "endpoint", "region"):
            table.add_row(key.title(), str(data.get(key, "")))
        keys = data.get("keys")
        if isinstance(keys, Mapping):
            for key, present in keys.items():
                label = "unknown" if present is None else ("present" if present else "absent")
                table.add_row(f"Key {key}", label)
        console.print(table)
        op.success("Reported backend.", changed=0)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
