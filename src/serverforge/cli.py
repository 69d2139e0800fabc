"""Typer-powered command line interface for ``serverforge``.

``provision`` runs every provisioning phase against the local host,
rolling back all recorded changes when a phase fails. ``init`` writes a
configuration file interactively, ``plan`` lists the phases a run would
execute and ``config show`` prints the merged configuration.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .commands import CommandRunner
from .config import (
    AppConfig,
    AppKind,
    BackupFrequency,
    ConfigError,
    Distro,
    SecurityLevel,
    ServerConfig,
    ServerRole,
    UpdateSchedule,
    load_config,
    parse_server_config,
)
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .phases import PhaseRunner, RunResult, Toolbox, default_phases
from .providers import PackageProvider, SystemdProvider
from .report import ReportError, generate_report, save_config
from .rollback import RollbackManager
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config",
    "--config-file",
    dir_okay=False,
    help="Override the path to serverforge's YAML config file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Automated Linux server provisioning.

        Brings a fresh Ubuntu, CentOS or Fedora host to a hardened, monitored,
        backed-up baseline and rolls every recorded change back when a step
        fails.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    root = ctx.find_root()
    runtime = _ensure_runtime(root, root.params.get("config_file"))
    ctx.obj = runtime
    return runtime


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the serverforge version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"serverforge {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _server_table(server: ServerConfig) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for key, value in server.to_dict().items():
        if isinstance(value, list):
            rendered = ", ".join(str(item) for item in value) or "(none)"
        else:
            rendered = str(value)
        table.add_row(key, rendered)
    return table


def _report_failure(op: OperationScope, result: RunResult) -> NoReturn:
    """Print the failed phase and the rollback outcome, then exit."""
    console.print(
        f"[red]Phase '{result.failed_phase}' failed:[/red] {result.error}"
    )
    report = result.rollback_report
    undone = len(report.undone) if report is not None else 0
    if result.rollback_error is None:
        console.print(f"[yellow]Rolled back {undone} recorded change(s).[/yellow]")
        _command_error(
            op,
            f"Provisioning failed in phase '{result.failed_phase}'; changes were rolled back.",
            rc=ExitCode.PROVIDER,
            errors=[str(result.error)],
        )

    failures = result.rollback_error.failures
    console.print(f"[red]Rollback incomplete: {len(failures)} undo step(s) failed.[/red]")
    for failure in failures:
        console.print(f"  - {failure.action.describe()}: {failure.error}")
    _command_error(
        op,
        f"Provisioning failed in phase '{result.failed_phase}' and rollback was incomplete.",
        rc=ExitCode.ROLLBACK,
        errors=[str(result.error), *(str(failure.error) for failure in failures)],
    )


@app.command()
def provision(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Print the commands that would run without changing the host.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation before provisioning.",
    ),
) -> None:
    """Provision this host according to the configuration."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    server = config.server

    with runtime.logger.operation(
        "provision",
        args={"dry_run": dry_run, "yes": yes},
        target={"kind": "host", "distro": server.linux_distro.value, "role": server.server_role.value},
    ) as op:
        console.print(_server_table(server))
        if not (yes or dry_run) and not typer.confirm("Provision this host?", default=False):
            console.print("Aborted.")
            op.warning("Provisioning aborted by operator.", warnings=["aborted"])
            raise typer.Exit(code=ExitCode.OK)

        runner = CommandRunner(dry_run=dry_run)
        packages = PackageProvider(runner)
        tools = Toolbox(
            runner=runner,
            packages=packages,
            systemd=SystemdProvider(runner),
            templates=runtime.templates,
            dry_run=dry_run,
        )

        def _on_phase(phase: str, status: str) -> None:
            op.add_step(f"phase.{phase}", status=status)
            if status == "started":
                console.print(f"[bold]==>[/bold] {phase}")
            elif status == "skipped":
                console.print(f"[dim]--> {phase} skipped[/dim]")

        phase_runner = PhaseRunner(
            default_phases(server),
            RollbackManager(packages),
            tools,
            listener=_on_phase,
        )
        try:
            with runtime.locks.run_lock():
                result = phase_runner.run(config)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except OSError as exc:
            _command_error(op, f"Unable to take the provisioning lock: {exc}", rc=ExitCode.ENVIRONMENT)

        if not result.ok:
            _report_failure(op, result)

        if dry_run:
            console.print(f"[yellow]Dry run[/yellow]: {len(runner.history)} command(s) planned.")
            op.success("Dry run complete.", changed=0, context=result.to_dict())
            return

        warnings: list[str] = []
        try:
            save_config(server, config.config_snapshot)
            generate_report(
                server,
                config.report_path,
                runner,
                runtime.templates,
                phases=result.completed,
            )
        except ReportError as exc:
            console.print(f"[yellow]Warning:[/yellow] {exc}")
            warnings.append(str(exc))

        console.print("[green]Server setup completed successfully.[/green]")
        if warnings:
            op.warning(
                "Provisioning complete; report not written.",
                warnings=warnings,
                changed=len(result.completed),
                context=result.to_dict(),
            )
        else:
            console.print(f"Report: {config.report_path}")
            op.success(
                "Provisioning complete.",
                changed=len(result.completed),
                context=result.to_dict(),
            )


@app.command()
def plan(ctx: typer.Context) -> None:
    """List the phases a provisioning run would execute, in order."""
    runtime = _get_runtime(ctx)
    server = runtime.config.server
    with runtime.logger.operation("plan", target={"kind": "host"}) as op:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", justify="right")
        table.add_column("Phase", style="bold")
        table.add_column("Runs")
        phases = default_phases(server)
        for index, phase in enumerate(phases, start=1):
            table.add_row(str(index), phase.name, "yes" if phase.enabled else "skipped")
        console.print(table)
        op.success(
            "Rendered phase plan.",
            context={"phases": [phase.name for phase in phases if phase.enabled]},
        )


def _prompt_choice(label: str, choices: Sequence[str], default: str) -> str:
    return typer.prompt(f"{label} ({', '.join(choices)})", default=default).strip().lower()


def _prompt_list(label: str) -> list[str]:
    raw = typer.prompt(f"{label} (comma separated, blank for none)", default="", show_default=False)
    return [item.strip() for item in raw.split(",") if item.strip()]


@app.command()
def init(
    ctx: typer.Context,
    output: Path = typer.Option(
        Path("serverforge.yml"),
        "--output",
        "-o",
        dir_okay=False,
        help="Where to write the generated configuration.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite an existing file.",
    ),
) -> None:
    """Create a configuration file by answering a few questions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "init",
        args={"output": str(output), "force": force},
        target={"kind": "config", "path": str(output)},
    ) as op:
        if output.exists() and not force:
            _command_error(op, f"{output} already exists; pass --force to overwrite it.")

        raw: dict[str, object] = {
            "linux_distro": _prompt_choice(
                "Linux distribution", [item.value for item in Distro], Distro.UBUNTU.value
            ),
            "server_role": _prompt_choice(
                "Server role", [item.value for item in ServerRole], ServerRole.WEB.value
            ),
            "security_level": _prompt_choice(
                "Security level", [item.value for item in SecurityLevel], SecurityLevel.BASIC.value
            ),
            "monitoring": typer.confirm("Enable monitoring?", default=False),
            "backup_frequency": _prompt_choice(
                "Backup frequency",
                [item.value for item in BackupFrequency],
                BackupFrequency.DAILY.value,
            ),
            "update_schedule": _prompt_choice(
                "Update schedule",
                [item.value for item in UpdateSchedule],
                UpdateSchedule.WEEKLY.value,
            ),
        }
        use_containers = typer.confirm("Use containers?", default=False)
        raw["use_containers"] = use_containers
        raw["use_kubernetes"] = use_containers and typer.confirm("Use Kubernetes?", default=False)
        raw["deployed_apps"] = _prompt_list(
            f"Applications to deploy [{', '.join(item.value for item in AppKind)}]"
        )
        raw["custom_firewall_rules"] = _prompt_list("Custom firewall rules (e.g. 8080/tcp)")

        try:
            server = parse_server_config(raw)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        payload = yaml.safe_dump({"server": server.to_dict()}, sort_keys=False)
        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(payload, encoding="utf-8")
        except OSError as exc:
            _command_error(op, f"Unable to write {output}: {exc}", rc=ExitCode.ENVIRONMENT)

        console.print(f"[green]Configuration written to {output}.[/green]")
        op.success("Wrote configuration.", changed=1, context={"path": str(output)})


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


__all__ = ["app"]
