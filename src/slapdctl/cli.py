"""Typer-powered command line for ``slapdctl``.

Usage::

    slapdctl VERSION ACTION [VARIANT] [--reset] [--detach]

Every invocation is recorded in the structured operations log. All failures,
including usage errors, exit with status 1.
"""
from __future__ import annotations

import signal
import sys
import textwrap
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import click
import typer
from rich.console import Console
from rich.table import Table

from . import get_version
from .bootstrap import BootstrapError, BootstrapReport, StepResult
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .layout import InstancePaths, LayoutError, resolve
from .logging import OperationScope, StructuredLogger
from .ports import PortAllocationError
from .providers.slapd import AdminOutcome, SlapdToolError
from .state import StateRegistry, StateRegistryError, StateStore
from .supervisor import (
    ProcessState,
    ProcessSupervisor,
    StartResult,
    StatusReport,
    SupervisorError,
)
from .templates import TemplateEngine, TemplateRenderError
from .tls import CertificateError, FindingSeverity

console = Console()

ACTIONS = ("start", "stop", "restart", "status", "clean", "test", "reset")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to slapdctl's YAML config file.",
)

ROOT_DIR_OPTION = typer.Option(
    None,
    "--root-dir",
    file_okay=False,
    help="Directory holding data/, etc/, run/ and the registry (default: current directory).",
)

# Errors that end a command with a red message and exit code 1.
ACTION_ERRORS = (
    SupervisorError,
    BootstrapError,
    CertificateError,
    PortAllocationError,
    SlapdToolError,
    TemplateRenderError,
    StateRegistryError,
    OSError,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage isolated OpenLDAP slapd test instances.

        Each instance is identified by an OpenLDAP version and a crypto
        library variant (e.g. 30 for OpenSSL 3.0) and lives under the root
        directory in data/, etc/ and run/.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by actions."""

    config: AppConfig
    registry: StateRegistry
    store: StateStore
    logger: StructuredLogger
    templates: TemplateEngine


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"slapdctl {get_version()}")
        raise typer.Exit(code=ExitCode.OK)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    root_dir: Path | None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if root_dir is not None:
        overrides["root_dir"] = str(root_dir)

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    registry = StateRegistry(config.registry_dir)
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        store=StateStore(),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
    )
    ctx.obj = runtime
    return runtime


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: list[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=errors or [message], rc=rc)
    raise typer.Exit(code=rc)


@contextmanager
def _cancel_on_sigterm(event: threading.Event) -> Iterator[None]:
    """Turn SIGTERM into a cancellation of bounded waits."""
    try:
        previous = signal.signal(signal.SIGTERM, lambda *_: event.set())
    except ValueError:
        # Not the main thread; leave signal handling alone.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def _step_reporter(op: OperationScope) -> Callable[[StepResult], None]:
    def report(step: StepResult) -> None:
        op.add_step(f"bootstrap.{step.name}", status=step.outcome.value, detail=step.detail or None)
        if step.outcome is AdminOutcome.SUCCESS:
            console.print(f"  [green]✓[/green] {step.name}")
        elif step.outcome is AdminOutcome.ALREADY_EXISTS:
            console.print(f"  [cyan]=[/cyan] {step.name} (already present)")
        else:
            console.print(f"  [yellow]![/yellow] {step.name}: {step.detail or 'failed'}")

    return report


def _build_supervisor(
    runtime: RuntimeContext,
    paths: InstancePaths,
    op: OperationScope,
    cancel: threading.Event,
) -> ProcessSupervisor:
    return ProcessSupervisor(
        config=runtime.config,
        paths=paths,
        engine=runtime.templates,
        store=runtime.store,
        registry=runtime.registry,
        cancel=cancel,
        on_step=_step_reporter(op),
    )


# Actions ---------------------------------------------------------------
def _report_start(result: StartResult) -> None:
    context = result.context
    ports = context.ports
    console.print(f"Instance: [bold]{context.name}[/bold]")
    console.print(f"  LDAP:  {ports.ldap_uri}")
    console.print(f"  LDAPS: {ports.ldaps_uri}")
    console.print(f"  LDAPI: {ports.ldapi_url}")
    if ports.alternate:
        console.print("  [yellow]Standard ports are busy; using alternate ports.[/yellow]")
    if result.certificate_generated:
        console.print(f"  Generated certificate in {context.paths.ssl_dir}")
    if result.bootstrap is not None:
        _report_bootstrap(result.bootstrap)
    console.print(f"  Environment: source {context.paths.env_script}")


def _report_bootstrap(report: BootstrapReport) -> None:
    source = report.runtime_config.value if report.runtime_config else "unknown"
    console.print(f"  Bootstrap complete (runtime config: {source}, database: {report.database_dn})")
    if report.failures:
        console.print(
            f"  [yellow]{len(report.failures)} bootstrap step(s) failed; "
            "the instance may lack optional features.[/yellow]"
        )


def _finish_start(op: OperationScope, result: StartResult) -> StartResult | None:
    context_payload: dict[str, object] = {
        "pid": result.pid,
        "ldap_port": result.context.ports.ldap_port,
        "ldaps_port": result.context.ports.ldaps_port,
        "detached": result.detached,
    }
    if result.bootstrap is not None:
        context_payload["bootstrap"] = result.bootstrap.to_dict()
    warnings = list(result.warnings)
    if result.bootstrap is not None:
        warnings.extend(f"{step.name}: {step.detail}" for step in result.bootstrap.failures)

    if result.detached:
        console.print(f"[green]slapd running in the background (pid {result.pid}).[/green]")
        message = "Started detached daemon."
    else:
        console.print(
            f"[green]Starting slapd in the foreground (pid {result.pid}); "
            "press Ctrl-C to stop.[/green]"
        )
        message = "Launching foreground daemon."
    if warnings:
        op.warning(message, warnings=warnings, changed=1, context=context_payload)
    else:
        op.success(message, changed=1, context=context_payload)
    return result if result.foreground_pending else None


def _action_start(
    supervisor: ProcessSupervisor,
    op: OperationScope,
    *,
    reset: bool,
    detach: bool,
) -> StartResult | None:
    if reset:
        console.print(f"Resetting instance {supervisor.name}...")
    result = supervisor.start(reset=reset, detach=detach)
    if result.already_running:
        console.print(f"Instance {supervisor.name} is already running (pid {result.pid}).")
        op.success("Instance already running.", changed=0, context={"pid": result.pid})
        return None
    _report_start(result)
    return _finish_start(op, result)


def _action_stop(
    supervisor: ProcessSupervisor,
    op: OperationScope,
    *,
    reset: bool,
    detach: bool,
) -> StartResult | None:
    result = supervisor.stop()
    if not result.was_running:
        console.print(f"Instance {supervisor.name} is not running.")
        op.success("Instance not running.", changed=0)
        return None
    suffix = " (forced with SIGKILL)" if result.forced else ""
    console.print(f"[green]Stopped {supervisor.name} (pid {result.pid}){suffix}.[/green]")
    op.success("Stopped instance.", changed=1, context={"pid": result.pid, "forced": result.forced})
    return None


def _action_restart(
    supervisor: ProcessSupervisor,
    op: OperationScope,
    *,
    reset: bool,
    detach: bool,
) -> StartResult | None:
    stopped, started = supervisor.restart(detach=detach)
    if stopped.was_running:
        console.print(f"Stopped {supervisor.name} (pid {stopped.pid}).")
    op.add_step("restart.stop", status="stopped" if stopped.was_running else "not-running")
    _report_start(started)
    return _finish_start(op, started)


def _action_reset(
    supervisor: ProcessSupervisor,
    op: OperationScope,
    *,
    reset: bool,
    detach: bool,
) -> StartResult | None:
    return _action_start(supervisor, op, reset=True, detach=detach)


def _action_clean(
    supervisor: ProcessSupervisor,
    op: OperationScope,
    *,
    reset: bool,
    detach: bool,
) -> StartResult | None:
    result = supervisor.clean()
    if result.stop.was_running:
        console.print(f"Stopped {supervisor.name} (pid {result.stop.pid}).")
    for path in result.removed:
        console.print(f"Removed {path}")
    if not result.removed:
        console.print(f"Nothing to remove for {supervisor.name}.")
    op.success(
        "Cleaned instance.",
        changed=len(result.removed),
        context={
            "removed": [str(path) for path in result.removed],
            "unregistered": result.unregistered,
        },
    )
    return None


def _format_severity(severity: FindingSeverity) -> str:
    if severity is FindingSeverity.OK:
        return "[green]OK[/green]"
    if severity is FindingSeverity.WARNING:
        return "[yellow]WARN[/yellow]"
    return "[red]ERROR[/red]"


def _render_status(report: StatusReport) -> None:
    context = report.context
    paths = context.paths
    state = report.liveness.state
    colour = "green" if state is ProcessState.RUNNING else "yellow"

    table = Table("Field", "Value", title=f"Instance {context.name}")
    table.add_row("State", f"[{colour}]{state.value}[/{colour}]")
    table.add_row("PID", str(report.liveness.pid) if report.liveness.pid else "-")
    table.add_row(
        "Installation",
        f"{context.prefix}" + ("" if report.installed else " [red](missing)[/red]"),
    )
    table.add_row("Registered", "yes" if report.registered else "no")
    table.add_row("Data", str(paths.data_dir))
    table.add_row("Config", str(paths.config_dir))
    table.add_row("Run", str(paths.run_dir))
    table.add_row("LDAP", context.ports.ldap_uri)
    table.add_row("LDAPS", context.ports.ldaps_uri)
    table.add_row("LDAPI socket", str(context.ports.ldapi_socket))
    table.add_row("LDAPI URL", context.ports.ldapi_url)
    table.add_row(
        "Last start",
        report.recorded.started_at.isoformat(timespec="seconds") if report.recorded else "-",
    )
    env_note = "" if paths.env_script.exists() else " (not generated yet)"
    table.add_row("Env script", f"{paths.env_script}{env_note}")
    console.print(table)

    certificate = report.certificate
    if certificate is None:
        console.print("Certificate: not generated yet.")
        return
    console.print(f"Certificate: {_format_severity(certificate.status)} {certificate.material.certificate}")
    if certificate.subject:
        console.print(f"  Subject: {certificate.subject}")
    if certificate.not_valid_after is not None:
        console.print(f"  Valid until: {certificate.not_valid_after.isoformat()}")
    if certificate.alt_names:
        console.print(f"  SAN: {', '.join(certificate.alt_names)}")
    for finding in certificate.findings:
        if finding.severity is not FindingSeverity.OK:
            console.print(f"  {_format_severity(finding.severity)} {finding.scope}: {finding.message}")


def _action_status(
    supervisor: ProcessSupervisor,
    op: OperationScope,
    *,
    reset: bool,
    detach: bool,
) -> StartResult | None:
    report = supervisor.status()
    _render_status(report)
    op.success("Reported instance status.", changed=0, context=report.to_dict())
    return None


def _action_test(
    supervisor: ProcessSupervisor,
    op: OperationScope,
    *,
    reset: bool,
    detach: bool,
) -> StartResult | None:
    report = supervisor.smoke_test()
    for check in report.checks:
        marker = "[green]PASS[/green]" if check.ok else "[red]FAIL[/red]"
        console.print(f"{marker} {check.name} search via {check.uri}")
        if check.output:
            console.print(textwrap.indent(check.output, "    "), markup=False)
        op.add_step(f"test.{check.name}", status="ok" if check.ok else "failed")

    console.print("\nEnvironment for binding test suites:")
    for key, value in report.environment.items():
        console.print(f"  {key}={value}", markup=False)

    failed = [check.name for check in report.checks if not check.ok]
    if failed:
        _command_error(op, f"Smoke test failed: {', '.join(failed)}.")
    op.success("Smoke test passed.", changed=0)
    return None


ActionHandler = Callable[..., "StartResult | None"]

ACTION_HANDLERS: dict[str, ActionHandler] = {
    "start": _action_start,
    "stop": _action_stop,
    "restart": _action_restart,
    "status": _action_status,
    "clean": _action_clean,
    "test": _action_test,
    "reset": _action_reset,
}


@app.command()
def run(
    ctx: typer.Context,
    software_version: str = typer.Argument(
        ...,
        metavar="VERSION",
        help="OpenLDAP build name, e.g. openldap-2.6.",
    ),
    action: str = typer.Argument(
        ...,
        metavar="ACTION",
        help=f"One of: {', '.join(ACTIONS)}.",
    ),
    variant: str | None = typer.Argument(
        None,
        metavar="[VARIANT]",
        help="Crypto library variant, e.g. 30 or ssl30 (default from config).",
    ),
    reset: bool = typer.Option(
        False,
        "--reset",
        help="Wipe data, configuration and certificate before starting.",
    ),
    detach: bool = typer.Option(
        False,
        "--detach",
        help="Run slapd in the background instead of replacing this process.",
    ),
    root_dir: Path | None = ROOT_DIR_OPTION,
    config_file: Path | None = CONFIG_FILE_OPTION,
    show_version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show the slapdctl version and exit.",
    ),
) -> None:
    """Run ACTION against the slapd instance for VERSION and VARIANT."""
    runtime = _ensure_runtime(ctx, config_file, root_dir)
    action_name = action.strip().lower()
    variant_value = variant if variant is not None else runtime.config.default_variant
    cancel = threading.Event()
    pending: StartResult | None = None
    supervisor: ProcessSupervisor | None = None

    with runtime.logger.operation(
        action_name or "unknown",
        args={
            "version": software_version,
            "variant": variant_value,
            "reset": reset,
            "detach": detach,
        },
        target={"kind": "instance", "root": str(runtime.config.root_dir)},
    ) as op:
        handler = ACTION_HANDLERS.get(action_name)
        if handler is None:
            _command_error(
                op,
                f"Unknown action '{action}'. Expected one of: {', '.join(ACTIONS)}.",
            )
        try:
            paths = resolve(software_version, variant_value, runtime.config.root_dir)
        except LayoutError as exc:
            _command_error(op, str(exc))

        supervisor = _build_supervisor(runtime, paths, op, cancel)
        try:
            with _cancel_on_sigterm(cancel):
                pending = handler(supervisor, op, reset=reset, detach=detach)
        except ACTION_ERRORS as exc:
            _command_error(op, str(exc))

    if pending is not None and supervisor is not None:
        sys.stdout.flush()
        sys.stderr.flush()
        supervisor.exec_foreground(pending)


def main() -> None:
    """Console script entry point.

    Click reports usage errors with status 2; every click error is folded
    into the single failure status here.
    """
    try:
        code = app(standalone_mode=False)
    except click.ClickException as exc:
        exc.show()
        raise SystemExit(ExitCode.FAILURE) from exc
    except click.Abort as exc:
        console.print("[red]Aborted.[/red]")
        raise SystemExit(ExitCode.FAILURE) from exc
    raise SystemExit(code if isinstance(code, int) else ExitCode.OK)


__all__ = ["ACTIONS", "app", "main", "run"]
