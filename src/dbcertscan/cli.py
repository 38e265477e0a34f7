"""Typer-powered command line interface for ``dbcertscan``."""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .assembler import COLUMN_TITLES, DEFAULT_COLUMNS, project
from .config import (
    ALLOWED_TRANSPORTS,
    PASSWORD_ENV_VAR,
    USERNAME_ENV_VAR,
    AppConfig,
    ConfigError,
    load_config,
)
from .exit_codes import ExitCode
from .logging import StructuredLogger
from .models import Credentials, ScanReport
from .procedure import CorrelationProcedure
from .providers import LocalProvider, ProviderSelector
from .scanner import CorrelationScanner

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to dbcertscan's YAML config file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Inventory the certificates SQL Server instances are configured to use.

        For every database engine instance found on the given hosts, the
        configured TLS certificate thumbprint is read from the instance's
        registry root and matched against the host's certificate stores.
        """
    ).strip(),
)

config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger


def _fail(message: str, code: ExitCode) -> NoReturn:
    err_console.print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(code=int(code))


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        _fail(f"Configuration error: {exc}", ExitCode.VALIDATION)
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
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
        help="Show the dbcertscan version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"dbcertscan {__version__}")
        raise typer.Exit(code=int(ExitCode.OK))

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=int(ExitCode.OK))


def _resolve_credentials(username: str | None, password: str | None) -> Credentials | None:
    if not username:
        return None
    if password is None:
        password = typer.prompt(f"Password for {username}", hide_input=True)
    return Credentials(username=username, password=password or "")


def _render_cell(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _render_report(report: ScanReport, columns: Sequence[str]) -> None:
    if report.results:
        table = Table(show_header=True, header_style="bold magenta")
        for column in columns:
            table.add_column(COLUMN_TITLES[column], overflow="fold")
        for row in project(report.results, columns):
            table.add_row(*(_render_cell(row[column]) for column in columns))
        console.print(table)
    else:
        console.print("No configured certificates found.")

    for message in report.warnings:
        console.print(f"[yellow]warning:[/yellow] {escape(message)}")
    for failure in report.failures:
        console.print(f"[red]failed:[/red] {escape(failure.describe())}")


@app.command("scan")
def scan(
    ctx: typer.Context,
    hosts: list[str] = typer.Argument(..., help="Hosts to scan."),
    username: str | None = typer.Option(
        None,
        "--username",
        "-u",
        envvar=USERNAME_ENV_VAR,
        help="Account used to reach the hosts (defaults to the current identity).",
    ),
    password: str | None = typer.Option(
        None,
        "--password",
        envvar=PASSWORD_ENV_VAR,
        help="Password for --username; prompted for when omitted.",
    ),
    transport: str | None = typer.Option(
        None,
        "--transport",
        help="Override the configured transport (auto, winrm or local).",
    ),
    instances: list[str] | None = typer.Option(
        None,
        "--instance",
        help="Only report this instance name (repeatable, case-insensitive).",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the scan report as JSON instead of a table.",
    ),
    include_certificate: bool = typer.Option(
        False,
        "--include-certificate",
        help="Include the PEM-encoded certificate with each result.",
    ),
) -> None:
    """Correlate database engine instances on HOSTS with their certificates."""
    runtime = _get_runtime(ctx)
    config = runtime.config

    if transport is not None:
        selected = transport.strip().lower()
        if selected not in ALLOWED_TRANSPORTS:
            allowed = ", ".join(sorted(ALLOWED_TRANSPORTS))
            _fail(f"--transport must be one of: {allowed}.", ExitCode.VALIDATION)
        config = replace(config, transport=selected)

    if config.transport == "local" and not LocalProvider.available():
        _fail("The local transport is only available on Windows.", ExitCode.ENVIRONMENT)

    credentials = _resolve_credentials(username, password)

    with runtime.logger.operation(
        "scan",
        args={
            "hosts": list(hosts),
            "username": username,
            "transport": config.transport,
            "instances": list(instances or []),
            "json": json_output,
            "include_certificate": include_certificate,
        },
        target={"kind": "hosts", "hosts": list(hosts)},
    ) as op:
        scanner = CorrelationScanner(
            ProviderSelector(config),
            services=config.services,
            procedure=CorrelationProcedure(
                network_subkey=config.registry.network_subkey,
                value_name=config.registry.certificate_value,
            ),
            instance_filter=instances,
        )
        report = scanner.scan(hosts, credentials)
        op.add_step(
            "scan.complete",
            detail=f"{len(report.results)} result(s), {len(report.failures)} failure(s)",
        )

        if json_output:
            console.print_json(data=report.to_dict(include_certificate=include_certificate))
        else:
            _render_report(report, DEFAULT_COLUMNS)
            if include_certificate:
                for result in report.results:
                    pem = result.to_dict(include_certificate=True)["certificate"]
                    if pem:
                        console.print(f"# {result.host} {result.instance_name}")
                        console.print(pem, markup=False, highlight=False)

        context = {
            "results": len(report.results),
            "failures": [failure.to_dict() for failure in report.failures],
        }
        if report.has_failures:
            op.error(
                "Scan completed with failures.",
                rc=int(ExitCode.PROVIDER),
                errors=[failure.describe() for failure in report.failures],
                warnings=report.warnings,
                context=context,
            )
        elif report.warnings:
            op.warning("Scan completed with warnings.", warnings=report.warnings, context=context)
        else:
            op.success("Scan completed.", context=context)

    if report.has_failures:
        raise typer.Exit(code=int(ExitCode.PROVIDER))


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
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
            op.success("Rendered configuration as JSON.")
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
        op.success("Rendered configuration table.")


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
