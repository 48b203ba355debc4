"""Typer-powered command line for ``hostctl``.

``provision`` converges the host towards the configured state, ``plan`` shows
what a provision run would change, ``automount`` wires a LUKS partition into
crypttab and fstab, and ``config show`` prints the merged configuration.
"""
from __future__ import annotations

import json
import os
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .catalog import automount_steps, provision_steps
from .config import AppConfig, ConfigError, load_config
from .context import HostContext, build_context
from .devices import DeviceResolver
from .errors import HostctlError, PrivilegeError
from .fetch import Fetcher
from .logging import OperationScope, StructuredLogger
from .providers import CommandRunner
from .steps import RunReport, StepOutcome, StepRunner, StepStatus, select_steps
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to hostctl's YAML config file.",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Run probes only and report what would change.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

_STATUS_STYLES = {
    StepStatus.SATISFIED: "green",
    StepStatus.APPLIED: "cyan",
    StepStatus.PLANNED: "yellow",
    StepStatus.WARNING: "yellow",
    StepStatus.FAILED: "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Single-board host provisioning CLI.

        Converges a Debian based host towards its declared state: packages,
        accounts, services, firewall rules, Samba share and an automounted
        LUKS drive. Every change is preceded by a side-effect-free probe, so
        running a command twice changes nothing the second time.
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
    templates: TemplateEngine

    def host_context(self, *, dry_run: bool) -> HostContext:
        """Wire providers against the real host."""
        return build_context(
            self.config,
            runner=CommandRunner(timeout=self.config.commands.timeout),
            fetcher=Fetcher(timeout=self.config.commands.download_timeout),
            templates=self.templates,
            dry_run=dry_run,
        )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=int(exc.exit_code)) from exc
    logger = StructuredLogger(
        config.logs_dir,
        level=config.logging.level,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
    )
    ctx.call_on_close(logger.close)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    runtime = RuntimeContext(config=config, logger=logger, templates=templates)
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
        help="Show the hostctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"hostctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _require_root(op: OperationScope, command: str) -> None:
    if os.geteuid() == 0:
        return
    error = PrivilegeError(
        f"{command} changes system files and must run as root (try sudo, or --dry-run)."
    )
    _command_error(op, str(error), rc=int(error.exit_code))


def _split_selectors(values: Sequence[str] | None) -> list[str]:
    selectors: list[str] = []
    for value in values or []:
        selectors.extend(part.strip() for part in value.split(",") if part.strip())
    return selectors


def _print_outcome(outcome: StepOutcome) -> None:
    style = _STATUS_STYLES[outcome.status]
    label = f"[{style}]{outcome.status.value:>9}[/{style}]"
    console.print(f"{label}  {outcome.step_id}  {escape(outcome.message)}")
    if outcome.status in {StepStatus.APPLIED, StepStatus.PLANNED}:
        for detail in outcome.details:
            console.print(f"           - {escape(detail)}")


def _print_summary(report: RunReport) -> None:
    counts = report.counts()
    summary = ", ".join(f"{count} {status}" for status, count in counts.items() if count)
    console.print(f"[bold]Summary:[/bold] {summary or 'no steps'}")
    if report.aborted:
        console.print(
            f"[red]Aborted at {report.aborted_by}[/red]; not run: "
            + (", ".join(report.pending) or "none")
        )
        console.print("Changes made by earlier steps remain in place.")


def _finish(op: OperationScope, report: RunReport, *, label: str) -> None:
    context = {"totals": report.counts(), "dry_run": report.dry_run}
    changed = len(report.by_status(StepStatus.APPLIED))
    if report.aborted:
        failed = report.by_status(StepStatus.FAILED)
        message = f"{label} aborted at {report.aborted_by}."
        op.error(
            message,
            rc=report.exit_code,
            errors=[f"{outcome.step_id}: {outcome.message}" for outcome in failed],
            warnings=[
                f"{outcome.step_id}: {outcome.message}"
                for outcome in report.by_status(StepStatus.WARNING)
            ],
            context={**context, "pending": list(report.pending)},
        )
        raise typer.Exit(code=report.exit_code)
    warnings = report.by_status(StepStatus.WARNING)
    if warnings:
        op.warning(
            f"{label} completed with warnings.",
            changed=changed,
            warnings=[f"{outcome.step_id}: {outcome.message}" for outcome in warnings],
            context=context,
        )
        return
    op.success(f"{label} completed.", changed=changed, context=context)


@app.command()
def provision(
    ctx: typer.Context,
    only: list[str] | None = typer.Option(
        None,
        "--only",
        help="Run only these step ids or prefixes (repeatable, comma separated).",
    ),
    skip: list[str] | None = typer.Option(
        None,
        "--skip",
        help="Skip these step ids or prefixes (repeatable, comma separated).",
    ),
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation before changing the host.",
    ),
) -> None:
    """Converge the host towards the configured state."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    only_ids = _split_selectors(only)
    skip_ids = _split_selectors(skip)

    with runtime.logger.operation(
        "provision",
        args={"only": only_ids, "skip": skip_ids, "dry_run": dry_run},
        target={"kind": "host", "hostname": config.hostname},
    ) as op:
        try:
            steps = select_steps(provision_steps(config), only=only_ids, skip=skip_ids)
        except HostctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        if not dry_run:
            _require_root(op, "provision")
            if not yes and not typer.confirm(
                f"Provision {config.hostname} with {len(steps)} steps?", default=False
            ):
                console.print("[yellow]Aborted by operator.[/yellow]")
                op.warning("Provision cancelled by operator.", changed=0)
                raise typer.Exit(code=1)

        host = runtime.host_context(dry_run=dry_run)
        runner = StepRunner(host, scope=op, on_outcome=_print_outcome)
        report = runner.run(steps)
        _print_summary(report)
        if not dry_run and not report.aborted:
            console.print(f"Cockpit:   https://{config.hostname}.local:9090")
            if config.docker.enabled and config.portainer.enabled:
                console.print(f"Portainer: https://{config.hostname}.local:9443")
        _finish(op, report, label="Provision")


@app.command()
def plan(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Run every probe and report which steps would change the host."""
    runtime = _get_runtime(ctx)
    config = runtime.config

    with runtime.logger.operation(
        "plan",
        args={"json": json_output},
        target={"kind": "host", "hostname": config.hostname},
    ) as op:
        host = runtime.host_context(dry_run=True)
        report = StepRunner(host, scope=op).run(provision_steps(config))
        pending = report.by_status(StepStatus.PLANNED)

        if json_output:
            console.print_json(data=report.to_dict())
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Step", style="bold")
            table.add_column("Status")
            table.add_column("Detail")
            for outcome in report.outcomes:
                style = _STATUS_STYLES[outcome.status]
                detail = "; ".join(outcome.details) if outcome.details else outcome.message
                table.add_row(
                    outcome.step_id,
                    f"[{style}]{outcome.status.value}[/{style}]",
                    escape(detail),
                )
            console.print(table)
            console.print(f"{len(pending)} of {len(report.outcomes)} steps would change the host.")
        op.success(
            "Planned provision run.",
            changed=0,
            context={"would_change": [outcome.step_id for outcome in pending]},
        )


@app.command()
def automount(
    ctx: typer.Context,
    device: str | None = typer.Argument(None, help="LUKS partition (default /dev/sda1)."),
    mapper: str | None = typer.Argument(None, help="Mapper name (default 4tb_hdd_crypt)."),
    mountpoint: Path | None = typer.Argument(
        None, help="Mountpoint directory (default /mnt/4TB_HDD)."
    ),
    fs_type: str | None = typer.Argument(None, help="Filesystem type (default ext4)."),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Unlock a LUKS partition and configure it to mount automatically."""
    runtime = _get_runtime(ctx)
    defaults = runtime.config.automount
    device_path = device or defaults.device
    mapper_name = mapper or defaults.mapper_name
    mount_path = mountpoint or defaults.mountpoint
    filesystem = fs_type or defaults.fs_type

    with runtime.logger.operation(
        "automount",
        args={
            "device": device_path,
            "mapper": mapper_name,
            "mountpoint": mount_path,
            "fs_type": filesystem,
            "dry_run": dry_run,
        },
        target={"kind": "device", "device": device_path},
    ) as op:
        if not dry_run:
            _require_root(op, "automount")
        host = runtime.host_context(dry_run=dry_run)
        resolver = DeviceResolver(
            host,
            device=device_path,
            mapper_name=mapper_name,
            mountpoint=mount_path,
            fs_type=filesystem,
            credential=host.credential("luks"),
        )
        try:
            resolver.validate_device()
        except HostctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        report = StepRunner(host, scope=op, on_outcome=_print_outcome).run(
            automount_steps(resolver)
        )
        listing = next(
            (o for o in report.outcomes if o.step_id == "automount.list" and o.details),
            None,
        )
        if listing is not None:
            console.print(escape("\n".join(listing.details)))
        _print_summary(report)
        if resolver.mapping is not None:
            console.print(f"crypttab: {escape(resolver.mapping.crypttab_line())}")
            console.print(f"fstab:    {escape(resolver.mapping.fstab_line())}")
        _finish(op, report, label="Automount")


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


__all__ = ["app", "main"]

if __name__ == "__main__":  # pragma: no cover
    main()
