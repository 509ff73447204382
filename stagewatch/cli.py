"""
CLI commands for stagewatch.

Provides the `stagewatch` command-line interface for inspecting products,
starting and stopping stages, running whole pipelines and watching for
completions.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from config.loader import ConfigurationLoader
from core.client.backend import AuthenticationError, BackendError
from core.models.config import GlobalSettings, MonitorConfig
from core.models.entities import STAGE_COUNT, STAGE_NAMES, StageStatus
from core.models.notifications import Notification, NotificationKind
from stagewatch.monitor import PipelineMonitor

console = Console()

STATUS_STYLES = {
    StageStatus.PENDING: "dim",
    StageStatus.RUNNING: "yellow",
    StageStatus.COMPLETED: "green",
    StageStatus.ERROR: "red",
}

KIND_STYLES = {
    NotificationKind.NEW: "cyan",
    NotificationKind.CHANGED: "magenta",
    NotificationKind.COMPLETED: "green",
    NotificationKind.FAILED: "red",
    NotificationKind.INFO: "blue",
}


def configure_logging(settings: GlobalSettings, level: Optional[str] = None) -> None:
    """Configure root logging once for the process"""
    handlers = [logging.StreamHandler(sys.stderr)]
    log_file = settings.get_log_file()
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )


def _load_config(config_path: Optional[str], tenant: Optional[str]) -> MonitorConfig:
    loader = ConfigurationLoader()
    config = loader.load(config_path)
    if tenant:
        config = config.model_copy(update={'tenant_id': tenant})
    return config


def _create_monitor(config: MonitorConfig) -> PipelineMonitor:
    return PipelineMonitor(config)


@click.group()
@click.version_option(version="1.0.0", prog_name="stagewatch")
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), help='Path to config.json')
@click.option('--tenant', help='Tenant (client) id, overrides the configured one')
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    help='Log level (default from STAGEWATCH_LOG_LEVEL)'
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], tenant: Optional[str], log_level: Optional[str]):
    """
    stagewatch CLI.

    Drive and monitor the five-stage product analysis pipeline.
    """
    settings = GlobalSettings()
    configure_logging(settings, log_level)
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['tenant'] = tenant


def _config_from_ctx(ctx: click.Context) -> MonitorConfig:
    try:
        return _load_config(ctx.obj.get('config_path'), ctx.obj.get('tenant'))
    except ValueError as e:
        console.print(f"[red]❌ Invalid configuration: {e}[/red]")
        sys.exit(1)


def _run(coro) -> None:
    """Run a command coroutine, mapping backend errors to exit codes"""
    try:
        ok = asyncio.run(coro)
    except AuthenticationError:
        console.print("[red]❌ Authentication expired or invalid. Check your API key and user token.[/red]")
        sys.exit(1)
    except BackendError as e:
        console.print(f"[red]❌ Backend error: {e.detail}[/red]")
        sys.exit(1)
    except KeyError as e:
        console.print(f"[red]❌ {e.args[0] if e.args else e}[/red]")
        sys.exit(1)
    if ok is False:
        sys.exit(1)


@main.command()
@click.option('--all', 'show_all', is_flag=True, help='Include hidden products')
@click.pass_context
def status(ctx: click.Context, show_all: bool):
    """Show stage status of every product."""
    _run(_status(_config_from_ctx(ctx), show_all))


async def _status(config: MonitorConfig, show_all: bool) -> bool:
    monitor = _create_monitor(config)
    try:
        if not await monitor.refresh(foreground=True):
            console.print(f"[red]❌ Could not load products: {monitor.refresher.last_error}[/red]")
            return False
        entities = monitor.store.entities() if show_all else monitor.entities()
    finally:
        await monitor.close()

    table = Table(title=f"Products ({config.tenant_id})")
    table.add_column("Product", style="cyan", no_wrap=True)
    table.add_column("ID", style="dim")
    for stage in range(STAGE_COUNT):
        table.add_column(f"{stage}", justify="center")

    for entity in entities:
        cells = []
        for state in entity.stages:
            style = STATUS_STYLES[state.status]
            label = state.status.value
            if state.status == StageStatus.RUNNING and state.progress:
                label = f"{label} {state.progress.percentage:.0f}%"
            cells.append(f"[{style}]{label}[/{style}]")
        table.add_row(entity.display_name, entity.id, *cells)

    console.print(table)
    console.print("[dim]" + "  ".join(f"{i}: {name}" for i, name in STAGE_NAMES.items()) + "[/dim]")
    return True


@main.command()
@click.argument('entity_id')
@click.argument('stage', type=click.IntRange(0, STAGE_COUNT - 1))
@click.pass_context
def start(ctx: click.Context, entity_id: str, stage: int):
    """Start STAGE (0-4) of a product."""
    _run(_start(_config_from_ctx(ctx), entity_id, stage))


async def _start(config: MonitorConfig, entity_id: str, stage: int) -> bool:
    monitor = _create_monitor(config)
    try:
        await monitor.refresh(foreground=True)
        task = monitor.start_stage(entity_id, stage)
        if task is None:
            console.print(f"[yellow]⚠️  Stage {stage} of {entity_id} is already running[/yellow]")
            return False
        started = await task
    finally:
        await monitor.close()

    if started:
        console.print(f"[green]✅ Started stage {stage} ({STAGE_NAMES[stage]}) for {entity_id}[/green]")
    else:
        console.print(f"[red]❌ Stage {stage} failed to start for {entity_id}[/red]")
    return bool(started)


@main.command()
@click.argument('entity_id')
@click.argument('stage', type=click.IntRange(0, STAGE_COUNT - 1))
@click.pass_context
def stop(ctx: click.Context, entity_id: str, stage: int):
    """Stop a running STAGE of a product."""
    _run(_stop(_config_from_ctx(ctx), entity_id, stage))


async def _stop(config: MonitorConfig, entity_id: str, stage: int) -> bool:
    monitor = _create_monitor(config)
    try:
        await monitor.refresh(foreground=True)
        task = monitor.stop_stage(entity_id, stage)
        if task is None:
            console.print(f"[yellow]⚠️  Stage {stage} of {entity_id} is not running[/yellow]")
            return False
        stopped = await task
    finally:
        await monitor.close()

    if stopped:
        console.print(f"[green]✅ Stop requested for stage {stage} of {entity_id}[/green]")
    return bool(stopped)


@main.command(name='continue')
@click.argument('entity_id')
@click.pass_context
def continue_(ctx: click.Context, entity_id: str):
    """Start the next runnable stage of a product."""
    _run(_continue(_config_from_ctx(ctx), entity_id))


async def _continue(config: MonitorConfig, entity_id: str) -> bool:
    monitor = _create_monitor(config)
    try:
        await monitor.refresh(foreground=True)
        task = monitor.continue_entity(entity_id)
        if task is None:
            console.print(f"[yellow]⚠️  Nothing to continue for {entity_id}[/yellow]")
            return True
        started = await task
    finally:
        await monitor.close()

    if started:
        console.print(f"[green]✅ Continued {entity_id}[/green]")
    return bool(started)


@main.command()
@click.argument('entity_id')
@click.option('--rerun-completed', is_flag=True, help='Re-run stages that already completed')
@click.pass_context
def run(ctx: click.Context, entity_id: str, rerun_completed: bool):
    """Run every stage of a product in order."""
    config = _config_from_ctx(ctx)
    if rerun_completed:
        orchestrator = config.orchestrator.model_copy(update={'skip_completed': False})
        config = config.model_copy(update={'orchestrator': orchestrator})
    _run(_run_all(config, entity_id))


async def _run_all(config: MonitorConfig, entity_id: str) -> bool:
    monitor = _create_monitor(config)
    try:
        await monitor.refresh(foreground=True)
        with console.status(f"[blue]Running pipeline for {entity_id}...[/blue]"):
            report = await monitor.run_all(entity_id)
    finally:
        await monitor.close()

    table = Table(title=f"Run for {entity_id}")
    table.add_column("Stage", style="cyan")
    table.add_column("Outcome")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="dim")
    for step in report.steps:
        table.add_row(STAGE_NAMES[step.stage], step.outcome.value, str(step.attempts), step.error or "")
    console.print(table)

    if report.success:
        console.print("[green]🎉 All stages completed[/green]")
    elif report.rejected:
        console.print("[yellow]⚠️  A run is already in progress for this product[/yellow]")
    else:
        console.print("[red]❌ Run stopped[/red]")
    return report.success


@main.command()
@click.argument('entity_id')
@click.pass_context
def hide(ctx: click.Context, entity_id: str):
    """Hide a product from listings."""
    _run(_hide(_config_from_ctx(ctx), entity_id))


async def _hide(config: MonitorConfig, entity_id: str) -> bool:
    monitor = _create_monitor(config)
    try:
        await monitor.refresh(foreground=True)
        await monitor.hide(entity_id)
    finally:
        await monitor.close()
    console.print(f"[green]✅ Hidden {entity_id}[/green]")
    return True


@main.command()
@click.argument('entity_id')
@click.pass_context
def unhide(ctx: click.Context, entity_id: str):
    """Show a hidden product in listings again."""
    _run(_unhide(_config_from_ctx(ctx), entity_id))


async def _unhide(config: MonitorConfig, entity_id: str) -> bool:
    monitor = _create_monitor(config)
    try:
        await monitor.refresh(foreground=True)
        await monitor.unhide(entity_id)
    finally:
        await monitor.close()
    console.print(f"[green]✅ Unhidden {entity_id}[/green]")
    return True


@main.command()
@click.option('--refresh', 'force', is_flag=True, help='Bypass the cache')
@click.pass_context
def summary(ctx: click.Context, force: bool):
    """Show the dashboard summary and tenant details."""
    _run(_summary(_config_from_ctx(ctx), force))


async def _summary(config: MonitorConfig, force: bool) -> bool:
    monitor = _create_monitor(config)
    try:
        info = await monitor.tenant_info(force=force)
        data = await monitor.summary(force=force)
    finally:
        await monitor.close()

    if info:
        console.print(f"[blue]🏢 {info.get('client_name', config.tenant_id)}[/blue]")
    if data is None:
        console.print("[red]❌ Summary unavailable[/red]")
        return False
    for key, value in data.items():
        console.print(f"[cyan]{key}[/cyan]: {value}")
    return True


@main.command()
@click.option('--duration', type=float, default=None, help='Stop after this many seconds')
@click.pass_context
def watch(ctx: click.Context, duration: Optional[float]):
    """Poll while stages run and print notifications as they arrive."""
    _run(_watch(_config_from_ctx(ctx), duration))


def _print_notification(notification: Notification) -> None:
    event = notification.event
    style = KIND_STYLES[event.kind]
    console.print(f"[{style}]{event.kind.value.upper():>9}[/{style}] {event.title} - {event.message}")


async def _watch(config: MonitorConfig, duration: Optional[float]) -> bool:
    monitor = _create_monitor(config)
    done = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []

    for signame in ('SIGINT', 'SIGTERM'):
        sig = getattr(signal, signame, None)
        if sig is not None:
            try:
                loop.add_signal_handler(sig, done.set)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                pass

    # Resumed after suspension: treat as regaining the foreground
    sigcont = getattr(signal, 'SIGCONT', None)
    if sigcont is not None:
        try:
            loop.add_signal_handler(sigcont, monitor.scheduler.notify_foreground)
            installed.append(sigcont)
        except (NotImplementedError, RuntimeError):
            pass

    unsubscribe = monitor.notifications.subscribe(_print_notification)
    try:
        await monitor.open(poll=True)
        console.print(f"[blue]👀 Watching {config.tenant_id} (Ctrl-C to stop)[/blue]")
        try:
            await asyncio.wait_for(done.wait(), timeout=duration)
        except asyncio.TimeoutError:
            pass
    finally:
        unsubscribe()
        for sig in installed:
            loop.remove_signal_handler(sig)
        await monitor.close()

    console.print(f"[dim]{monitor.notifications.unread_count} notifications received[/dim]")
    return True


if __name__ == '__main__':
    main()
