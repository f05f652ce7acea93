"""Typer-powered command line interface for ``bampctl``.

Every command builds an :class:`~bampctl.orchestrator.Orchestrator` from the
resolved configuration and the invocation policy, runs one operation under the
process lock and forwards the action journal to the structured operations log.
Prompting and terminal formatting live here only.
"""
from __future__ import annotations

import textwrap
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import BackupRegistryError, BackupsRegistry
from .config import AppConfig, ConfigError, load_config
from .errors import BampError
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .orchestrator import OperationReport, Orchestrator
from .policy import JournalStep, ReconciliationPolicy, StepStatus
from .providers import CommandRunner
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to bampctl's YAML config file.",
)
FORCE_OPTION = typer.Option(
    False,
    "--force",
    "-f",
    help="Skip confirmation prompts.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON instead of a table.",
)
SUFFIX_OPTION = typer.Option(
    None,
    "--suffix",
    help="Domain suffix for the site (defaults to the configured suffix).",
)

_STATUS_STYLES = {
    StepStatus.SUCCESS: "green",
    StepStatus.NOOP: "dim",
    StepStatus.SKIPPED: "yellow",
    StepStatus.FAILED: "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Local Apache, MySQL and PHP development stack manager.

        Provisions Homebrew packages, patches httpd.conf idempotently, issues
        mkcert certificates for *.test sites and manages their services.
        """
    ).strip(),
)
db_app = typer.Typer(help="Manage MySQL databases.")
app.add_typer(db_app, name="db")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    backups: BackupsRegistry
    runner: CommandRunner
    policy: ReconciliationPolicy = field(default_factory=ReconciliationPolicy)
    sleep: Callable[[float], None] = time.sleep


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        backups=BackupsRegistry(config.backups.root, config.backups.index),
        runner=CommandRunner(default_timeout=config.services.command_timeout),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the bampctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Report intended changes without applying any of them.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print every journalled step, including no-ops.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    runtime.policy = replace(runtime.policy, dry_run=dry_run, verbose=verbose)

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"bampctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _confirm(message: str) -> bool:
    return typer.confirm(message, default=False)


def _orchestrator(runtime: RuntimeContext, *, force: bool = False) -> Orchestrator:
    policy = replace(runtime.policy, force=force) if force else runtime.policy
    return Orchestrator(
        runtime.config,
        policy,
        runner=runtime.runner,
        templates=runtime.templates,
        backups=runtime.backups,
        confirm=_confirm,
        sleep=runtime.sleep,
    )


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _bamp_error(op: OperationScope, exc: BampError) -> NoReturn:
    """Report *exc* once, with remediation and backup hints, and exit with its code."""
    rc = int(exc.exit_code)
    console.print(f"[red]{escape(exc.message)}[/red]")
    if exc.remediation:
        console.print(f"[yellow]{escape(exc.remediation)}[/yellow]")
    if exc.backup is not None:
        console.print(f"Pre-change backup preserved at: [bold]{exc.backup}[/bold]")
    op.error(exc.message, errors=exc.summary(), backups=[exc.backup] if exc.backup else None, rc=rc)
    raise typer.Exit(code=rc)


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _forward_steps(op: OperationScope, steps: Sequence[JournalStep]) -> None:
    for step in steps:
        op.add_step(step.name, status=step.status.value, detail=step.detail)


def _render_steps(runtime: RuntimeContext, steps: Sequence[JournalStep]) -> None:
    for step in steps:
        if step.status is StepStatus.NOOP and not runtime.policy.verbose:
            continue
        style = _STATUS_STYLES[step.status]
        detail = f" {escape(step.detail)}" if step.detail else ""
        console.print(f"  [{style}]{step.status.value:<7}[/{style}] {step.name}{detail}")


def _run_operation(
    runtime: RuntimeContext,
    command: str,
    action: Callable[[Orchestrator], OperationReport],
    *,
    summary: Callable[[OperationReport], str],
    args: Mapping[str, object] | None = None,
    target: Mapping[str, object] | None = None,
    force: bool = False,
) -> OperationReport:
    """Run one mutating orchestrator operation under the process lock."""
    call_args = {**dict(args or {}), "dry_run": runtime.policy.dry_run, "force": force}
    with runtime.logger.operation(command, args=call_args, target=target) as op:
        orchestrator = _orchestrator(runtime, force=force)
        try:
            with runtime.locks.mutate() as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                report = action(orchestrator)
        except BampError as exc:
            _forward_steps(op, orchestrator.journal.steps)
            _render_steps(runtime, orchestrator.journal.steps)
            _bamp_error(op, exc)

        _forward_steps(op, report.steps)
        _render_steps(runtime, report.steps)
        message = summary(report)
        if runtime.policy.dry_run:
            _dry_run_complete(op, f"{message} (nothing was changed)", context=report.to_dict())
            return report
        backups = [str(path) for path in report.backups]
        if report.warnings:
            for warning in report.warnings:
                console.print(f"[yellow]warning:[/yellow] {warning}")
            console.print(f"[yellow]{message}[/yellow]")
            op.warning(
                message,
                warnings=report.warnings,
                changed=report.changed,
                backups=backups,
                context=report.data,
            )
            return report
        console.print(f"[green]{message}[/green]")
        op.success(message, changed=report.changed, backups=backups, context=report.data)
        return report


# ---------------------------------------------------------------------------
# Stack lifecycle
# ---------------------------------------------------------------------------
@app.command()
def install(
    ctx: typer.Context,
    php_version: str | None = typer.Argument(
        None,
        metavar="VERSION",
        help="PHP version to install and activate (defaults to php.default).",
    ),
) -> None:
    """Install and configure httpd, MySQL, PHP, dnsmasq and mkcert."""
    runtime = _get_runtime(ctx)
    _run_operation(
        runtime,
        "install",
        lambda orchestrator: orchestrator.install(php_version),
        summary=lambda report: (
            f"Stack installed with PHP {report.data['php_version']}; "
            f"visit {report.data['url']}."
        ),
        args={"php_version": php_version},
        target={"kind": "stack"},
    )


@app.command("switch-version")
def switch_version(
    ctx: typer.Context,
    php_version: str = typer.Argument(..., metavar="VERSION", help="PHP version to activate."),
) -> None:
    """Switch the PHP module loaded by httpd."""
    runtime = _get_runtime(ctx)
    _run_operation(
        runtime,
        "switch-version",
        lambda orchestrator: orchestrator.switch_version(php_version),
        summary=lambda report: f"PHP {php_version} is active.",
        args={"php_version": php_version},
        target={"kind": "php", "version": php_version},
    )


@app.command("php-versions")
def php_versions(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List supported PHP versions and which one is active."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "php-versions",
        args={"json": json_output},
        target={"kind": "php"},
    ) as op:
        try:
            versions = _orchestrator(runtime).php_versions()
        except BampError as exc:
            _bamp_error(op, exc)

        if json_output:
            console.print_json(data={"versions": versions})
            op.success("Reported PHP versions as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Version", style="bold")
        table.add_column("Installed")
        table.add_column("Active")
        for entry in versions:
            version = str(entry["version"])
            if entry["default"]:
                version = f"{version} (default)"
            table.add_row(
                version,
                "yes" if entry["installed"] else "no",
                "[green]active[/green]" if entry["active"] else "",
            )
        console.print(table)
        op.success("Reported PHP versions.", changed=0)


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show service states, active PHP version and MySQL reachability."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "stack"},
    ) as op:
        try:
            report = _orchestrator(runtime).status()
        except BampError as exc:
            _bamp_error(op, exc)

        if json_output:
            console.print_json(data=report)
            op.success("Reported status as JSON.", changed=0, context=report)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Service", style="bold")
        table.add_column("Package")
        table.add_column("State")
        services = report["services"]
        assert isinstance(services, dict)
        for name, info in services.items():
            state = str(info["state"])
            style = {"running": "green", "stopped": "red"}.get(state, "yellow")
            table.add_row(name, str(info["package"] or ""), f"[{style}]{state}[/{style}]")
        console.print(table)

        mysql = report["mysql"]
        assert isinstance(mysql, dict)
        console.print(f"PHP version: {report['php_version'] or 'none loaded'}")
        if mysql["reachable"]:
            console.print(f"MySQL: reachable ({mysql['version']})")
        else:
            console.print("MySQL: [red]unreachable[/red]")
        console.print(f"Sites: {report['sites']}")
        wildcard = report["wildcard_certificate"]
        if isinstance(wildcard, dict):
            console.print(
                f"Wildcard certificate: {wildcard['subject']} "
                f"(expires {wildcard['not_valid_after'] or 'unknown'})"
            )
        else:
            console.print("Wildcard certificate: [yellow]missing[/yellow]")
        op.success("Reported status.", changed=0, context=report)


@app.command("restart-all")
def restart_all(ctx: typer.Context) -> None:
    """Restart httpd, MySQL and dnsmasq."""
    runtime = _get_runtime(ctx)
    _run_operation(
        runtime,
        "restart-all",
        lambda orchestrator: orchestrator.restart_all(),
        summary=lambda report: "Services restarted.",
        target={"kind": "services"},
    )


@app.command("stop-all")
def stop_all(ctx: typer.Context) -> None:
    """Stop httpd and MySQL."""
    runtime = _get_runtime(ctx)
    _run_operation(
        runtime,
        "stop-all",
        lambda orchestrator: orchestrator.stop_all(),
        summary=lambda report: "Services stopped.",
        target={"kind": "services"},
    )


@app.command()
def uninstall(
    ctx: typer.Context,
    keep_data: bool = typer.Option(
        False,
        "--keep-data",
        help="Keep the MySQL data directory and client credentials.",
    ),
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip the configuration and database backup.",
    ),
    force: bool = FORCE_OPTION,
) -> None:
    """Back up, stop and remove the whole stack."""
    runtime = _get_runtime(ctx)

    def summarise(report: OperationReport) -> str:
        if not report.data.get("uninstalled") and not runtime.policy.dry_run:
            return "Uninstall cancelled."
        backup_dir = report.data.get("backup_dir")
        suffix = f" Backup stored in {backup_dir}." if backup_dir else ""
        return f"Stack uninstalled.{suffix}"

    _run_operation(
        runtime,
        "uninstall",
        lambda orchestrator: orchestrator.uninstall(keep_data=keep_data, backup=not no_backup),
        summary=summarise,
        args={"keep_data": keep_data, "backup": not no_backup},
        target={"kind": "stack"},
        force=force,
    )


# ---------------------------------------------------------------------------
# Sites
# ---------------------------------------------------------------------------
@app.command("create-site")
def create_site(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Project name; the site is served at <name>.<suffix>."),
    document_root: Path | None = typer.Argument(
        None,
        metavar="[DOCROOT]",
        help="Document root (defaults to <webroot>/<name>).",
    ),
    suffix: str | None = SUFFIX_OPTION,
) -> None:
    """Create a TLS-enabled virtual host."""
    runtime = _get_runtime(ctx)
    _run_operation(
        runtime,
        "create-site",
        lambda orchestrator: orchestrator.create_site(name, document_root, suffix=suffix),
        summary=lambda report: f"Site ready: {report.data['url']}",
        args={"name": name, "document_root": document_root, "suffix": suffix},
        target={"kind": "site", "name": name},
    )


@app.command("list-sites")
def list_sites(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List configured virtual hosts."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list-sites",
        args={"json": json_output},
        target={"kind": "site", "scope": "vhosts"},
    ) as op:
        entries = _orchestrator(runtime).list_sites()
        if json_output:
            console.print_json(data={"sites": [entry.to_dict() for entry in entries]})
            op.success("Reported sites as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Domain", style="bold")
        table.add_column("Document Root")
        table.add_column("Ports")
        table.add_column("Certificate")
        if not entries:
            table.add_row("(none)", "", "", "")
        for entry in entries:
            ports = "/".join(str(port) for port in (entry.http_port, entry.https_port) if port)
            table.add_row(
                entry.domain,
                str(entry.document_root or ""),
                ports,
                entry.certificate.name if entry.certificate else "",
            )
        console.print(table)
        op.success("Reported sites.", changed=0, context={"count": len(entries)})


@app.command("remove-site")
def remove_site(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Project name of the site to remove."),
    suffix: str | None = SUFFIX_OPTION,
    force: bool = FORCE_OPTION,
) -> None:
    """Remove a virtual host and restart httpd."""
    runtime = _get_runtime(ctx)

    def summarise(report: OperationReport) -> str:
        if not report.data.get("removed") and not runtime.policy.dry_run:
            return f"Kept site {report.data['domain']}."
        return f"Removed site {report.data['domain']}."

    _run_operation(
        runtime,
        "remove-site",
        lambda orchestrator: orchestrator.remove_site(name, suffix=suffix),
        summary=summarise,
        args={"name": name, "suffix": suffix},
        target={"kind": "site", "name": name},
        force=force,
    )


# ---------------------------------------------------------------------------
# Databases
# ---------------------------------------------------------------------------
@db_app.command("list")
def db_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List user databases with size and table count."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "db list",
        args={"json": json_output},
        target={"kind": "database"},
    ) as op:
        try:
            databases = _orchestrator(runtime).db_list()
        except BampError as exc:
            _bamp_error(op, exc)

        if json_output:
            console.print_json(data={"databases": [item.to_dict() for item in databases]})
            op.success("Reported databases as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Database", style="bold")
        table.add_column("Size (MB)", justify="right")
        table.add_column("Tables", justify="right")
        if not databases:
            table.add_row("(none)", "", "")
        for item in databases:
            table.add_row(item.name, f"{item.size_mb:.2f}", str(item.tables))
        console.print(table)
        op.success("Reported databases.", changed=0)


@db_app.command("create")
def db_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Database name."),
) -> None:
    """Create a database (utf8mb4)."""
    runtime = _get_runtime(ctx)
    _run_operation(
        runtime,
        "db create",
        lambda orchestrator: orchestrator.db_create(name),
        summary=lambda report: f"Database '{name}' created.",
        args={"name": name},
        target={"kind": "database", "name": name},
    )


@db_app.command("drop")
def db_drop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Database name."),
    force: bool = FORCE_OPTION,
) -> None:
    """Drop a database after confirmation."""
    runtime = _get_runtime(ctx)

    def summarise(report: OperationReport) -> str:
        if not report.data.get("dropped") and not runtime.policy.dry_run:
            return f"Kept database '{name}'."
        return f"Database '{name}' dropped."

    _run_operation(
        runtime,
        "db drop",
        lambda orchestrator: orchestrator.db_drop(name),
        summary=summarise,
        args={"name": name},
        target={"kind": "database", "name": name},
        force=force,
    )


@db_app.command("dump")
def db_dump(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Database name."),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        dir_okay=False,
        help="Destination file (defaults to <name>_<timestamp>.sql[.gz]).",
    ),
    compress: bool = typer.Option(False, "--gzip", "-z", help="Compress the dump with gzip."),
) -> None:
    """Dump a database to a SQL file."""
    runtime = _get_runtime(ctx)
    _run_operation(
        runtime,
        "db dump",
        lambda orchestrator: orchestrator.db_dump(name, output, compress=compress),
        summary=lambda report: f"Database '{name}' dumped to {report.data['path']}.",
        args={"name": name, "output": output, "gzip": compress},
        target={"kind": "database", "name": name},
    )


@db_app.command("dump-all")
def db_dump_all(
    ctx: typer.Context,
    output_dir: Path | None = typer.Argument(
        None,
        file_okay=False,
        help="Directory for the dumps (defaults to ./mysql_backups_<timestamp>).",
    ),
    compress: bool = typer.Option(
        True,
        "--gzip/--no-gzip",
        help="Compress each dump with gzip.",
    ),
) -> None:
    """Dump every user database into one directory."""
    runtime = _get_runtime(ctx)

    def summarise(report: OperationReport) -> str:
        files = report.data.get("files") or []
        return f"Dumped {len(files)} database(s) to {report.data['directory']}."

    _run_operation(
        runtime,
        "db dump-all",
        lambda orchestrator: orchestrator.db_dump_all(output_dir, compress=compress),
        summary=summarise,
        args={"output_dir": output_dir, "gzip": compress},
        target={"kind": "database", "scope": "all"},
    )


@db_app.command("import")
def db_import(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Database name (created when missing)."),
    source: Path = typer.Argument(
        ...,
        dir_okay=False,
        help="SQL file to import; gzip files (.sql.gz) are decompressed.",
    ),
) -> None:
    """Import a SQL file into a database."""
    runtime = _get_runtime(ctx)
    _run_operation(
        runtime,
        "db import",
        lambda orchestrator: orchestrator.db_import(name, source),
        summary=lambda report: f"Imported {source} into '{name}'.",
        args={"name": name, "source": source},
        target={"kind": "database", "name": name},
    )


@db_app.command("reset-password")
def db_reset_password(
    ctx: typer.Context,
    password: str | None = typer.Option(
        None,
        "--password",
        help="New password (prompted for when omitted).",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Use the configured default password without prompting.",
    ),
) -> None:
    """Change the MySQL root password and update the credentials file."""
    runtime = _get_runtime(ctx)
    if password is None and not force and not runtime.policy.dry_run:
        password = typer.prompt("New MySQL password", hide_input=True, confirmation_prompt=True)
    _run_operation(
        runtime,
        "db reset-password",
        lambda orchestrator: orchestrator.db_reset_password(password),
        summary=lambda report: f"Password updated for {report.data['account']}.",
        args={"password": "***" if password else None},
        target={"kind": "database", "scope": "account"},
        force=force,
    )


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------
@app.command()
def backups(
    ctx: typer.Context,
    source: Path | None = typer.Option(
        None,
        "--source",
        help="Only show backups of this file or directory.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List recorded configuration backups and uninstall archives."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups",
        args={"source": source, "json": json_output},
        target={"kind": "backup", "scope": "registry"},
    ) as op:
        try:
            if source is not None:
                entries = runtime.backups.entries_for_source(source.expanduser())
            else:
                entries = runtime.backups.list_entries()
        except BackupRegistryError as exc:
            _command_error(op, f"Failed to read backup index: {exc}", rc=int(ExitCode.PROVIDER))

        entries.sort(key=lambda item: str(item.get("created_at", "")), reverse=True)
        if json_output:
            console.print_json(data={"backups": entries})
            op.success("Reported backup list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Kind")
        table.add_column("Source")
        table.add_column("Backup")
        table.add_column("Created At")
        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry.get("id", "")),
                str(entry.get("kind", "")),
                str(entry.get("source", "")),
                str(entry.get("path", "")),
                str(entry.get("created_at", "")),
            )
        console.print(table)
        op.success("Reported backup list.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
