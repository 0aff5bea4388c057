"""vigil CLI.

`vigil run` supervises the workers and streams violations to the console.
`vigil permissions`, `vigil request`, `vigil workers` inspect the setup.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from vigil.config import settings
from vigil.events.bus import Event
from vigil.exceptions import UnknownPermissionError, UnknownWorkerError
from vigil.logs import configure_logging
from vigil.permissions.definitions import PermissionStatus
from vigil.workers.concerns import CONCERNS, get_concern

console = Console()

app = typer.Typer(
    name="vigil",
    help="vigil -- supervised session monitoring.",
    no_args_is_help=True,
)

_SEVERITY_STYLE = {
    "CRITICAL": "bold red",
    "HIGH": "red",
    "MEDIUM": "yellow",
    "LOW": "dim",
}

_STATUS_STYLE = {
    PermissionStatus.GRANTED: "green",
    PermissionStatus.DENIED: "red",
    PermissionStatus.CHECKING: "yellow",
    PermissionStatus.UNKNOWN: "dim",
}


@app.command("run")
def run(
    export: Optional[Path] = typer.Option(None, "--export", "-e", help="Write the violation export here on exit"),
    worker: Optional[list[str]] = typer.Option(None, "--worker", "-w", help="Only run these workers"),
):
    """Start every worker and stream violations until Ctrl+C."""
    from vigil.cli.context import VigilContext, run_async

    run_settings = settings
    if worker:
        for key in worker:
            try:
                get_concern(key)
            except UnknownWorkerError as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(2)
        run_settings = settings.model_copy(update={"workers": list(worker)})

    configure_logging(run_settings.log_level, run_settings.log_json)
    ctx = VigilContext.get(run_settings)

    async def _print_violation(event: Event) -> None:
        data = event.data
        style = _SEVERITY_STYLE.get(data.get("severity", ""), "white")
        console.print(
            f"[{style}]{data.get('severity')}[/{style}] "
            f"[cyan]{data.get('worker')}[/cyan] {data.get('reason')}"
            + (f" [dim]({data['evidence']})[/dim]" if data.get("evidence") else "")
        )

    async def _run() -> int:
        ctx.event_bus.subscribe("violation.detected", _print_violation)
        report = await ctx.supervisor.start_all()
        if not report.ok:
            console.print(f"[red]Cannot start: {report.error}[/red]")
            console.print("[dim]Run `vigil permissions` to see what is missing.[/dim]")
            return 1
        console.print(f"[green]Monitoring[/green] {len(report.started)} worker(s). Press Ctrl+C to stop.")
        try:
            await asyncio.Event().wait()
        finally:
            await ctx.supervisor.shutdown()
        return 0

    code = 0
    try:
        code = run_async(_run())
    except KeyboardInterrupt:
        console.print("\n[dim]Workers stopped.[/dim]")
    if export is not None:
        path = ctx.aggregator.write_export(export)
        console.print(f"[green]Exported[/green] {len(ctx.aggregator.history())} violation(s) to {path}")
    if code:
        raise typer.Exit(code)


@app.command("permissions")
def permissions():
    """Check every required permission."""
    from vigil.cli.context import VigilContext, run_async

    configure_logging(settings.log_level, settings.log_json)
    ctx = VigilContext.get()
    snapshot = run_async(ctx.gate.check_all())

    table = Table(title="Permissions")
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Workers", style="dim")
    table.add_column("Error", style="dim")
    for key, p in snapshot.permissions.items():
        style = _STATUS_STYLE[p.status]
        table.add_row(
            key,
            f"[{style}]{p.status.value}[/{style}]",
            ", ".join(sorted(p.dependent_workers)),
            p.last_error or "",
        )
    console.print(table)

    if snapshot.all_granted:
        console.print("[green]All permissions granted.[/green]")
    else:
        console.print(f"[yellow]Missing:[/yellow] {', '.join(snapshot.missing())}")


@app.command("request")
def request(
    key: str = typer.Argument(help="Permission key, e.g. screenRecording"),
):
    """Request one permission from the OS."""
    from vigil.cli.context import VigilContext, run_async

    configure_logging(settings.log_level, settings.log_json)
    ctx = VigilContext.get()
    try:
        granted = run_async(ctx.gate.request(key))
    except UnknownPermissionError as e:
        console.print(f"[red]{e}[/red]")
        console.print(f"[dim]Known permissions: {', '.join(ctx.gate.keys())}[/dim]")
        raise typer.Exit(2)

    if granted:
        console.print(f"[green]{key} granted.[/green]")
    else:
        console.print(f"[yellow]{key} not granted yet.[/yellow] Enable it in system settings and re-run.")
        raise typer.Exit(1)


@app.command("workers")
def workers():
    """List the monitoring workers."""
    table = Table(title="Workers")
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Every", justify="right", no_wrap=True)
    table.add_column("Enabled", no_wrap=True)
    for key, spec in CONCERNS.items():
        enabled = key in settings.workers
        table.add_row(
            key,
            spec.display_name,
            f"{spec.interval:g}s",
            "[green]yes[/green]" if enabled else "[dim]no[/dim]",
        )
    console.print(table)


@app.command("version")
def version_cmd():
    """Show vigil version."""
    from vigil import __version__
    console.print(f"vigil v{__version__}")
