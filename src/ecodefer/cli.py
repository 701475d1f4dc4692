"""CLI entry point for EcoDefer."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ecodefer import __version__
from ecodefer.errors import EcoDeferError

if TYPE_CHECKING:
    from ecodefer.engine.service import DeferralService

console = Console()
err_console = Console(stderr=True)

VERDICT_STYLE = {"approved": "green", "deferred": "yellow", "denied": "red"}
STATUS_STYLE = {
    "queued": "cyan",
    "deferred": "yellow",
    "executing": "blue",
    "completed": "green",
    "failed": "red",
    "denied": "red",
}

CONFIG_TEMPLATE = """\
# EcoDefer configuration. Read once at startup; edit and restart to apply.
# ECODEFER_<SETTING> environment variables override values set here.

# allowed_tasks = ["database-cleanup", "index-optimization", "cache-warming"]
# off_peak_hours = [2, 3, 4, 5]
# weekend_off_peak_hours = []
# cpu_threshold_percent = 60.0
# memory_threshold_percent = 70.0
# max_task_duration_s = 3600.0
# max_memory_mb = 500
# max_concurrency = 2
# poll_interval_s = 30.0
# feedback_enabled = true
# learning_enabled = true
# audit_enabled = true
# delegation_idle_minutes = 5.0

# [base_power_w]
# database-cleanup = 50
"""


def configure_logging(level: str = "WARNING") -> None:
    """Route log records through rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(version=__version__, prog_name="ecodefer")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="ECODEFER_DATA_DIR",
    default=None,
    help="Data directory (default: ~/.ecodefer)",
)
@click.option(
    "--log-level",
    envvar="ECODEFER_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
@click.pass_context
def main(ctx: click.Context, data_dir: Path | None, log_level: str) -> None:
    """EcoDefer - defer, delegate or run background tasks when energy is cheapest."""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir


def _service(ctx: click.Context) -> DeferralService:
    """Build the service once per invocation and close it on exit."""
    from ecodefer.config import load_config
    from ecodefer.engine.service import DeferralService
    from ecodefer.errors import ValidationError

    root = ctx.find_root()
    service = root.obj.get("service")
    if service is None:
        try:
            config = load_config(root.obj.get("data_dir"))
        except ValidationError as e:
            raise click.ClickException(f"Invalid configuration: {e}") from e
        service = DeferralService(config)
        root.obj["service"] = service
        root.call_on_close(service.close)
    return service


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create the data directory, database and a commented config.toml."""
    service = _service(ctx)
    config_path = service.config.config_path
    if not config_path.exists():
        config_path.write_text(CONFIG_TEMPLATE)
    console.print(f"[green]EcoDefer initialized at {service.config.data_dir}[/green]")
    console.print(f"  Database: {service.db.db_path}")
    console.print(f"  Config:   {config_path}")


@main.command()
@click.argument("task_name")
@click.option(
    "--urgency",
    default="normal",
    show_default=True,
    type=click.Choice(["critical", "high", "normal", "low", "eco", "solar_only"]),
)
@click.option("--payload", default=None, help="Task payload as a JSON object")
@click.option("--data-size-mb", type=float, default=None, help="Declared data size hint")
@click.pass_context
def submit(
    ctx: click.Context,
    task_name: str,
    urgency: str,
    payload: str | None,
    data_size_mb: float | None,
) -> None:
    """Submit a task and show the verdict."""
    try:
        body: Any = json.loads(payload) if payload else {}
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--payload") from e
    if data_size_mb is not None and isinstance(body, dict):
        body["data_size_mb"] = data_size_mb

    service = _service(ctx)
    try:
        result = service.submit(task_name, body, urgency)
    except EcoDeferError as e:
        raise click.ClickException(e.message) from e

    style = VERDICT_STYLE.get(result.verdict, "dim")
    console.print(f"[{style}]{result.verdict.upper()}[/{style}] {task_name}")
    console.print(f"Task ID: {result.task_id}")
    if result.reason:
        console.print(f"Reason:  {result.reason}")
    if result.scheduled_for:
        console.print(f"Scheduled for: {result.scheduled_for}")
    if result.estimated_power_w is not None:
        console.print(f"Estimated power: {result.estimated_power_w}W")
    for line in result.reasoning:
        console.print(f"  - {line}")
    if not result.persisted:
        console.print("[red]Task was not stored; see the log for the write failure[/red]")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show queue counts, whitelist and scheduling state."""
    info = _service(ctx).get_status()

    table = Table(title="Queue")
    table.add_column("State", style="cyan")
    table.add_column("Count", justify="right")
    for state, count in info["queue_counts"].items():
        table.add_row(state, str(count))
    console.print(table)

    window = "[green]off-peak[/green]" if info["is_off_peak"] else "[yellow]peak[/yellow]"
    console.print(f"Now: {window} | next off-peak: {info['next_off_peak']}")
    console.print(f"Peers online: {info['peers_online']}")
    console.print(f"Persistence failures: {info['persistence_failures']}")
    console.print(f"Whitelist: {', '.join(info['whitelist']) or '(empty)'}")


@main.command()
@click.argument("task_id")
@click.pass_context
def task(ctx: click.Context, task_id: str) -> None:
    """Show one task."""
    try:
        record = _service(ctx).get_task(task_id)
    except EcoDeferError as e:
        raise click.ClickException(e.message) from e

    style = STATUS_STYLE.get(record.status, "dim")
    console.print(f"[bold]{record.name}[/bold] [{style}]{record.status}[/{style}]")
    for key, value in record.to_dict().items():
        if key in ("name", "status") or value in (None, {}, ""):
            continue
        console.print(f"  {key}: {value}")


@main.command()
@click.option("--limit", default=20, help="Number of entries to show")
@click.pass_context
def history(ctx: click.Context, limit: int) -> None:
    """Show recent tasks, newest first."""
    tasks = _service(ctx).get_history(limit)
    if not tasks:
        console.print("[dim]No tasks yet. Submit one with `ecodefer submit`.[/dim]")
        return

    table = Table(title="Task History")
    table.add_column("Task ID", style="cyan")
    table.add_column("Name")
    table.add_column("Urgency")
    table.add_column("Status")
    table.add_column("Power", justify="right")
    table.add_column("Created")

    for t in tasks:
        style = STATUS_STYLE.get(t.status, "dim")
        table.add_row(
            t.id[:8],
            t.name,
            t.urgency,
            f"[{style}]{t.status}[/{style}]",
            f"{t.estimated_power_w:.0f}W" if t.estimated_power_w is not None else "-",
            t.created_at[:16],
        )
    console.print(table)


@main.command()
@click.argument("task_id")
@click.argument("kind", type=click.Choice(["necessary", "avoidable", "optimizable"]))
@click.option("--note", default="", help="Free-text note")
@click.pass_context
def feedback(ctx: click.Context, task_id: str, kind: str, note: str) -> None:
    """Record whether a task was necessary, avoidable or optimizable."""
    try:
        _service(ctx).record_feedback(task_id, kind, note)
    except EcoDeferError as e:
        raise click.ClickException(e.message) from e
    console.print(f"[green]Feedback recorded:[/green] {kind}")


@main.command()
@click.argument("task_id")
@click.pass_context
def decisions(ctx: click.Context, task_id: str) -> None:
    """Show the decision trail for a task."""
    try:
        records = _service(ctx).get_decisions(task_id)
    except EcoDeferError as e:
        raise click.ClickException(e.message) from e
    if not records:
        console.print("[dim]No decisions recorded (auditing may be disabled).[/dim]")
        return

    for record in records:
        style = VERDICT_STYLE.get(record.verdict, "dim")
        chained = f" (after {record.parent_id[:8]})" if record.parent_id else ""
        console.print(f"[{style}]{record.verdict}[/{style}] {record.timestamp}{chained}")
        for line in record.reasoning:
            console.print(f"  - {line}")


@main.group()
def whitelist() -> None:
    """Inspect or change which task names may run."""


@whitelist.command("list")
@click.pass_context
def whitelist_list(ctx: click.Context) -> None:
    """List whitelisted task names."""
    for name in _service(ctx).decisions.get_whitelist():
        console.print(name)


@whitelist.command("add")
@click.argument("task_name")
@click.option("--session-only", is_flag=True, help="Do not persist the change")
@click.pass_context
def whitelist_add(ctx: click.Context, task_name: str, session_only: bool) -> None:
    """Allow a task name."""
    _service(ctx).add_to_whitelist(task_name, persist=not session_only)
    console.print(f"[green]Whitelisted:[/green] {task_name}")


@whitelist.command("remove")
@click.argument("task_name")
@click.option("--session-only", is_flag=True, help="Do not persist the change")
@click.pass_context
def whitelist_remove(ctx: click.Context, task_name: str, session_only: bool) -> None:
    """Disallow a task name."""
    _service(ctx).remove_from_whitelist(task_name, persist=not session_only)
    console.print(f"[yellow]Removed from whitelist:[/yellow] {task_name}")


@main.command()
@click.option("--wait/--no-wait", default=True, help="Wait for dispatched tasks to finish")
@click.pass_context
def tick(ctx: click.Context, wait: bool) -> None:
    """Run one scheduling pass."""
    service = _service(ctx)
    summary = service.tick()
    if wait:
        service.wait_idle()
    for key, value in summary.items():
        console.print(f"{key}: {value}")


@main.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run the scheduler in the foreground until interrupted."""
    service = _service(ctx)
    service.start()
    console.print(
        f"[green]EcoDefer running[/green] (poll every {service.config.poll_interval_s:g}s). "
        "Press Ctrl+C to stop."
    )
    try:
        while service.running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopping...[/dim]")
    finally:
        service.stop()


@main.command()
@click.option("--sweep", is_flag=True, help="Mark peers with stale heartbeats offline first")
@click.pass_context
def peers(ctx: click.Context, sweep: bool) -> None:
    """List mesh peers."""
    service = _service(ctx)
    if sweep:
        service.peers.sweep()
    known = service.peers.list()
    if not known:
        console.print("[dim]No peers announced.[/dim]")
        return

    table = Table(title="Mesh Peers")
    table.add_column("Peer", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Energy")
    table.add_column("Clean", justify="right")
    table.add_column("Last seen")
    for peer in known:
        table.add_row(
            peer.id,
            peer.name,
            peer.status,
            peer.energy.type,
            f"{peer.energy.percent_clean:.0f}%",
            peer.last_seen[:19],
        )
    console.print(table)


@main.command()
@click.pass_context
def carbon(ctx: click.Context) -> None:
    """Show carbon accounting totals."""
    summary = _service(ctx).carbon.summary()
    console.print(f"Tasks accounted: {summary['tasks']}")
    console.print(f"Energy used:     {summary['energy_used_wh']:.3f} Wh")
    console.print(f"CO2 emitted:     {summary['carbon_emitted_kg']:.6f} kg")
    console.print(f"CO2 avoided:     {summary['carbon_avoided_kg']:.6f} kg")
