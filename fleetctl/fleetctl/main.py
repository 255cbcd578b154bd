"""Main CLI entry point for update-fleet.

This module defines the Typer application and its commands. Operation
commands run the engine in-process against the configured targets and
print its live output as it arrives.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from fleet import (
    ConfigError,
    ConfigManager,
    DoneEvent,
    DuckDBHistoryStore,
    ErrorEvent,
    FleetError,
    HistoryStatus,
    InMemoryTargetStore,
    JobStatus,
    OperationKind,
    OutputEvent,
    PeriodicChecker,
    PhaseEvent,
    ReprobeState,
    SSHConnector,
    StartedEvent,
    UpdateOrchestrator,
    WarningEvent,
    get_default_db_path,
)
from pkgmgr import PackageManagerAdapter

from . import __version__

if TYPE_CHECKING:
    from fleet import (
        CacheView,
        FleetConfig,
        HistoryStore,
        Job,
        StreamEvent,
        Subscription,
        SystemInfo,
        Target,
    )

# Create the main Typer app
app = typer.Typer(
    name="update-fleet",
    help="Update orchestrator for a fleet of remote Linux hosts.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Create console for rich output
console = Console()

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(log_level: str) -> None:
    """Configure structlog and standard logging with the specified level.

    Log lines go to stderr so command output stays on stdout.

    Args:
        log_level: Log level string (debug, info, warning, error).
    """
    level = LOG_LEVELS.get(log_level.lower(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        level=level,
        stream=sys.stderr,
        force=True,
    )
    # asyncssh logs every channel at info
    logging.getLogger("asyncssh").setLevel(max(level, logging.WARNING))

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        # The level can change after the config file is read
        cache_logger_on_first_use=False,
    )


@dataclass
class CliState:
    """Global options shared by every command."""

    config_path: Path | None = None
    log_level: str | None = None


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]update-fleet[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Configuration file (default: $XDG_CONFIG_HOME/update-fleet/config.yaml).",
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            help="Log level: debug, info, warning or error (default: from config).",
        ),
    ] = None,
) -> None:
    """Update-Fleet: check, upgrade and reboot remote Linux hosts over SSH.

    Supports apt, dnf, yum, pacman, flatpak and snap.
    """
    if log_level is not None and log_level.lower() not in LOG_LEVELS:
        raise typer.BadParameter(f"must be one of {', '.join(LOG_LEVELS)}", param_hint="--log-level")
    ctx.obj = CliState(config_path=config, log_level=log_level)


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj if isinstance(ctx.obj, CliState) else CliState()


def _get_config_manager(ctx: typer.Context) -> ConfigManager:
    """Get the configuration manager."""
    return ConfigManager(_state(ctx).config_path)


def _load_config(ctx: typer.Context) -> FleetConfig:
    """Load the configuration and configure logging from it.

    Exits with status 2 if the configuration is invalid.
    """
    state = _state(ctx)
    configure_logging(state.log_level or "warning")
    try:
        config = _get_config_manager(ctx).load()
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(2) from e
    configure_logging(state.log_level or config.engine.log_level)
    return config


def _open_history(config: FleetConfig) -> DuckDBHistoryStore:
    return DuckDBHistoryStore(config.engine.history_db or get_default_db_path())


def build_engine(
    config: FleetConfig,
    targets: InMemoryTargetStore | None = None,
    history: HistoryStore | None = None,
) -> UpdateOrchestrator:
    """Wire an orchestrator for the configured targets.

    Args:
        config: Loaded configuration.
        targets: Target store. Built from the configuration when omitted.
        history: History store. The DuckDB file when omitted.

    Raises:
        ConfigError: If the configured targets are inconsistent.
    """
    engine = config.engine
    return UpdateOrchestrator(
        targets or InMemoryTargetStore(config.build_targets()),
        SSHConnector(connect_timeout=engine.connect_timeout, command_timeout=engine.command_timeout),
        PackageManagerAdapter(),
        config=engine,
        history=history or _open_history(config),
    )


def _close(orchestrator: UpdateOrchestrator) -> None:
    if isinstance(orchestrator.history_store, DuckDBHistoryStore):
        orchestrator.history_store.close()


def _find_target(config: FleetConfig, ref: str) -> tuple[InMemoryTargetStore, Target]:
    """Resolve a target by name or id.

    Exits with status 1 if it is not configured.
    """
    try:
        store = InMemoryTargetStore(config.build_targets())
        return store, store.find(ref)
    except FleetError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from e


# =============================================================================
# Live output
# =============================================================================


def render_event(event: StreamEvent) -> None:
    """Print one live output event."""
    if isinstance(event, OutputEvent):
        style = "red" if event.stream == "stderr" else None
        console.print(event.data, end="", style=style, markup=False, highlight=False)
    elif isinstance(event, StartedEvent):
        console.print(f"[dim]$ ({escape(event.manager)}) {escape(event.command)}[/dim]")
    elif isinstance(event, PhaseEvent):
        console.print(f"[cyan]» {escape(event.phase)}[/cyan]")
    elif isinstance(event, WarningEvent):
        console.print(f"[yellow]! {escape(event.message)}[/yellow]")
    elif isinstance(event, ErrorEvent):
        console.print(f"[red]✗ {escape(event.message)}[/red]")


async def _print_stream(subscription: Subscription) -> None:
    async for event in subscription:
        render_event(event)
        if isinstance(event, DoneEvent):
            break


async def _run_streamed(
    orchestrator: UpdateOrchestrator,
    target: Target,
    kind: OperationKind,
    package: str | None = None,
    manager: str | None = None,
) -> Job:
    """Submit an operation, print its output live and wait for it to end."""
    job_id = orchestrator.submit(target.id, kind, package, manager=manager)
    subscription = orchestrator.subscribe(target.id)
    printer = asyncio.create_task(_print_stream(subscription))
    try:
        return await orchestrator.join(job_id)
    finally:
        subscription.close()
        await printer


def _print_job(job: Job) -> None:
    """Print the final line for a job."""
    if job.status == JobStatus.FAILED:
        console.print(f"[red]✗ Failed:[/red] {escape(job.error or 'unknown error')}")
        return
    result = job.result
    if result is None:
        return
    message = escape(result.message)
    if result.outcome == HistoryStatus.WARNING:
        console.print(f"[yellow]⚠ {message}[/yellow]")
        if result.reprobe == ReprobeState.UNREACHABLE:
            console.print("[yellow]System did not come back online; check it manually.[/yellow]")
    else:
        console.print(f"[green]✓ {message}[/green]")


def _print_system_info(view: CacheView) -> None:
    info = view.entry.system_info if view.entry else None
    if info is None:
        return
    facts = [info.os_name, f"kernel {info.kernel}" if info.kernel else "", info.arch, info.uptime]
    console.print(f"[dim]{escape(' · '.join(fact for fact in facts if fact))}[/dim]")
    if info.needs_reboot:
        console.print("[yellow]⟳ Reboot required[/yellow]")


def _print_updates(view: CacheView, title: str) -> None:
    entry = view.entry
    if entry is None:
        console.print("[dim]No check results.[/dim]")
        return
    if not entry.updates:
        console.print("[green]Up to date.[/green]")
        return

    table = Table(title=title, show_header=True)
    table.add_column("Package", style="cyan")
    table.add_column("Current")
    table.add_column("Available", style="bold")
    table.add_column("Manager")
    table.add_column("Repository")
    table.add_column("Security", justify="center")
    for update in entry.updates:
        table.add_row(
            update.package_name,
            update.current_version or "[dim]?[/dim]",
            update.available_version,
            update.manager,
            update.repository or "",
            "[red]✓[/red]" if update.is_security else "",
        )
    console.print(table)
    console.print(
        f"[bold]{len(entry.updates)}[/bold] updates, "
        f"[red]{entry.security_count}[/red] security"
    )


# =============================================================================
# Commands
# =============================================================================


@app.command()
def targets(
    ctx: typer.Context,
    inspect: Annotated[
        bool,
        typer.Option("--inspect", "-i", help="Check every target and show its OS, kernel and reboot state."),
    ] = False,
) -> None:
    """List configured targets."""
    config = _load_config(ctx)
    try:
        configured = config.build_targets()
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(2) from e

    if not configured:
        console.print("[dim]No targets configured.[/dim]")
        console.print(f"Add targets to: {_get_config_manager(ctx).config_path}")
        return

    facts = asyncio.run(_inspect_targets(config)) if inspect else {}

    table = Table(title="Targets", show_header=True)
    table.add_column("ID", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Host")
    table.add_column("User")
    table.add_column("Port", justify="right")
    table.add_column("Managers")
    table.add_column("Disabled", style="dim")
    if inspect:
        table.add_column("OS")
        table.add_column("Kernel")
        table.add_column("Reboot")

    for target in configured:
        managers = (
            ", ".join(target.detected_managers)
            if target.detected_managers is not None
            else "[dim]auto-detect[/dim]"
        )
        row = [
            str(target.id),
            target.name,
            target.hostname,
            target.username,
            str(target.port),
            managers,
            ", ".join(target.disabled_managers),
        ]
        if inspect:
            info = facts.get(target.id)
            if info is None:
                row += ["[dim]unknown[/dim]", "", ""]
            else:
                row += [
                    escape(info.os_name),
                    escape(info.kernel),
                    "[yellow]required[/yellow]" if info.needs_reboot else "[green]no[/green]",
                ]
        table.add_row(*row)

    console.print(table)


async def _inspect_targets(config: FleetConfig) -> dict[int, SystemInfo]:
    """Check every target and return the host facts gathered on the way."""
    orchestrator = build_engine(config)
    try:
        facts: dict[int, SystemInfo] = {}
        for target_id, job_or_error in orchestrator.check_all().items():
            if isinstance(job_or_error, FleetError):
                continue
            await orchestrator.join(job_or_error)
            entry = orchestrator.cache.get(target_id)
            if entry is not None and entry.system_info is not None:
                facts[target_id] = entry.system_info
        return facts
    finally:
        _close(orchestrator)


@app.command()
def check(
    ctx: typer.Context,
    target: Annotated[str | None, typer.Argument(help="Target name or id.")] = None,
    all_targets: Annotated[
        bool,
        typer.Option("--all", "-a", help="Check every configured target."),
    ] = False,
) -> None:
    """Check for available updates.

    With a single target the remote output is shown live. With --all the
    targets are checked concurrently and summarized in a table.
    """
    if (target is None) == (not all_targets):
        console.print("[red]Specify a target or --all, not both.[/red]")
        raise typer.Exit(2)

    config = _load_config(ctx)
    if all_targets:
        ok = asyncio.run(_check_all(config))
    else:
        store, resolved = _find_target(config, target or "")
        ok = asyncio.run(_check_one(config, store, resolved))
    if not ok:
        raise typer.Exit(1)


async def _check_one(config: FleetConfig, store: InMemoryTargetStore, target: Target) -> bool:
    orchestrator = build_engine(config, store)
    try:
        console.print(f"[bold]Checking {escape(target.name)}...[/bold]")
        job = await _run_streamed(orchestrator, target, OperationKind.CHECK)
        console.print()
        _print_job(job)
        if job.status == JobStatus.DONE:
            view = orchestrator.cache_view(target.id)
            _print_system_info(view)
            _print_updates(view, f"Updates on {target.name}")
        return job.status == JobStatus.DONE
    finally:
        _close(orchestrator)


async def _check_all(config: FleetConfig) -> bool:
    try:
        orchestrator = build_engine(config)
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        return False

    try:
        configured = orchestrator.targets.list()
        if not configured:
            console.print("[dim]No targets configured.[/dim]")
            return True

        console.print(f"[bold]Checking {len(configured)} target(s)...[/bold]")
        submitted = orchestrator.check_all()
        jobs: dict[int, Job | FleetError] = {}
        for target_id, job_or_error in submitted.items():
            if isinstance(job_or_error, FleetError):
                jobs[target_id] = job_or_error
            else:
                jobs[target_id] = await orchestrator.join(job_or_error)

        table = Table(title="Update Check", show_header=True)
        table.add_column("Target", style="cyan")
        table.add_column("Status", style="bold")
        table.add_column("Updates", justify="right")
        table.add_column("Security", justify="right")
        table.add_column("Reboot")
        table.add_column("Message")

        ok = True
        for target in configured:
            job_or_error = jobs[target.id]
            entry = orchestrator.cache.get(target.id)
            if isinstance(job_or_error, FleetError) or job_or_error.status == JobStatus.FAILED:
                ok = False
                message = (
                    str(job_or_error)
                    if isinstance(job_or_error, FleetError)
                    else job_or_error.error or ""
                )
                table.add_row(target.name, "[red]✗ Failed[/red]", "", "", "", escape(message))
                continue
            result = job_or_error.result
            status = (
                "[yellow]⚠ Partial[/yellow]"
                if result and result.outcome == HistoryStatus.WARNING
                else "[green]✓ OK[/green]"
            )
            table.add_row(
                target.name,
                status,
                str(len(entry.updates)) if entry else "0",
                str(entry.security_count) if entry else "0",
                "[yellow]required[/yellow]" if entry and entry.needs_reboot else "",
                escape(result.message) if result else "",
            )

        console.print(table)
        return ok
    finally:
        _close(orchestrator)


@app.command()
def upgrade(
    ctx: typer.Context,
    target: Annotated[str, typer.Argument(help="Target name or id.")],
    full: Annotated[
        bool,
        typer.Option(
            "--full",
            "-f",
            help="Full upgrade (apt full-upgrade, dnf distro-sync); may add or remove packages.",
        ),
    ] = False,
    package: Annotated[
        str | None,
        typer.Option("--package", "-p", help="Upgrade a single package."),
    ] = None,
    manager: Annotated[
        str | None,
        typer.Option(
            "--manager",
            "-m",
            help="Package manager of --package, when the target has several.",
        ),
    ] = None,
) -> None:
    """Upgrade packages on a target.

    Upgrades run detached on the target, so a dropped connection (for
    example a kernel update rebooting the machine) does not interrupt
    them. In that case the outcome is reported as a warning and the target
    is re-checked once it is reachable again.
    """
    if full and package:
        console.print("[red]--full and --package cannot be combined.[/red]")
        raise typer.Exit(2)
    if manager and not package:
        console.print("[red]--manager requires --package.[/red]")
        raise typer.Exit(2)

    if package:
        kind = OperationKind.UPGRADE_PACKAGE
    elif full:
        kind = OperationKind.FULL_UPGRADE_ALL
    else:
        kind = OperationKind.UPGRADE_ALL

    config = _load_config(ctx)
    store, resolved = _find_target(config, target)
    if not asyncio.run(_run_command(config, store, resolved, kind, package, manager)):
        raise typer.Exit(1)


@app.command()
def reboot(
    ctx: typer.Context,
    target: Annotated[str, typer.Argument(help="Target name or id.")],
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation."),
    ] = False,
) -> None:
    """Reboot a target."""
    config = _load_config(ctx)
    store, resolved = _find_target(config, target)
    if not yes:
        typer.confirm(f"Reboot {resolved.name} ({resolved.hostname})?", abort=True)
    if not asyncio.run(_run_command(config, store, resolved, OperationKind.REBOOT)):
        raise typer.Exit(1)


async def _run_command(
    config: FleetConfig,
    store: InMemoryTargetStore,
    target: Target,
    kind: OperationKind,
    package: str | None = None,
    manager: str | None = None,
) -> bool:
    orchestrator = build_engine(config, store)
    try:
        try:
            job = await _run_streamed(orchestrator, target, kind, package, manager)
        except FleetError as e:
            console.print(f"[red]{escape(str(e))}[/red]")
            return False
        console.print()
        _print_job(job)
        return job.status == JobStatus.DONE
    finally:
        _close(orchestrator)


@app.command()
def history(
    ctx: typer.Context,
    target: Annotated[str, typer.Argument(help="Target name or id.")],
    limit: Annotated[
        int,
        typer.Option(
            "--limit",
            "-l",
            help="Maximum number of entries to show.",
        ),
    ] = 20,
) -> None:
    """Show operation history for a target, newest first."""
    config = _load_config(ctx)
    _, resolved = _find_target(config, target)

    store = _open_history(config)
    try:
        entries = store.list(resolved.id, limit)
    finally:
        store.close()

    if not entries:
        console.print("[dim]No history available yet.[/dim]")
        return

    status_style = {
        HistoryStatus.SUCCESS: "[green]✓ success[/green]",
        HistoryStatus.WARNING: "[yellow]⚠ warning[/yellow]",
        HistoryStatus.FAILED: "[red]✗ failed[/red]",
        HistoryStatus.STARTED: "[blue]… started[/blue]",
    }

    table = Table(title=f"History of {resolved.name}", show_header=True)
    table.add_column("ID", justify="right")
    table.add_column("Started")
    table.add_column("Action", style="cyan")
    table.add_column("Manager")
    table.add_column("Status")
    table.add_column("Packages", justify="right")
    table.add_column("Error")

    for entry in entries:
        table.add_row(
            str(entry.id),
            entry.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.action.value,
            entry.manager,
            status_style.get(entry.status, entry.status.value),
            "" if entry.package_count is None else str(entry.package_count),
            escape((entry.error or "").splitlines()[0] if entry.error else ""),
        )

    console.print(table)


@app.command("init-config")
def init_config(
    ctx: typer.Context,
    force: Annotated[
        bool,
        typer.Option(
            "--force",
            "-f",
            help="Overwrite existing configuration.",
        ),
    ] = False,
) -> None:
    """Initialize the configuration file with defaults."""
    configure_logging(_state(ctx).log_level or "warning")
    config_manager = _get_config_manager(ctx)

    if config_manager.init_config(force=force):
        console.print(f"[green]Configuration initialized: {config_manager.config_path}[/green]")
    else:
        console.print(
            f"[yellow]Configuration already exists: {config_manager.config_path}[/yellow]"
        )
        console.print("Use --force to overwrite.")


@app.command()
def watch(
    ctx: typer.Context,
    interval: Annotated[
        float | None,
        typer.Option(
            "--interval",
            "-i",
            help="Minutes between wake-ups (default: check_interval_minutes).",
        ),
    ] = None,
    once: Annotated[
        bool,
        typer.Option("--once", help="Check stale targets once and exit."),
    ] = False,
) -> None:
    """Check stale targets periodically in the foreground.

    Each wake-up checks every target whose last check is older than the
    cache TTL. Press Ctrl+C to stop.
    """
    config = _load_config(ctx)
    minutes = interval if interval is not None else config.engine.check_interval_minutes
    try:
        asyncio.run(_watch(config, minutes * 60, once))
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


async def _watch(config: FleetConfig, interval: float, once: bool) -> None:
    try:
        orchestrator = build_engine(config)
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(2) from e

    names = {target.id: target.name for target in orchestrator.targets.list()}

    def report(job: Job) -> None:
        name = escape(names.get(job.target_id, str(job.target_id)))
        if job.status == JobStatus.FAILED:
            console.print(f"[red]✗ {name}:[/red] {escape(job.error or 'failed')}")
        elif job.result is not None:
            console.print(f"[green]✓ {name}:[/green] {escape(job.result.message)}")

    orchestrator.add_listener(report)
    checker = PeriodicChecker(orchestrator, interval=interval)
    try:
        if once:
            for job_id in checker.run_once():
                await orchestrator.join(job_id)
            return

        console.print(
            f"[bold]Watching {len(names)} target(s), every {interval / 60:g} min.[/bold] "
            "Press Ctrl+C to stop."
        )
        checker.start()
        await asyncio.Event().wait()
    finally:
        await checker.stop()
        await orchestrator.shutdown()
        _close(orchestrator)


if __name__ == "__main__":
    app()
