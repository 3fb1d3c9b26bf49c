"""
Sync CLI Commands
=================

CLI commands for running and monitoring supplier catalog syncs.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from catalog_sync.core.enums import STAGE_ORDER, SessionStatus, Stage
from catalog_sync.core.schema import SessionSnapshot
from catalog_sync.db.engine import get_session_factory
from catalog_sync.ingestion.jobs import enqueue_scheduled_syncs, enqueue_supplier_sync, request_stop, run_sync_local
from catalog_sync.ingestion.registry import get_default_registry
from catalog_sync.ingestion.session_tracker import SessionTracker

console = Console()
sync_app = typer.Typer(help="Sync pipeline commands")
suppliers_app = typer.Typer(help="Supplier management commands")

STATUS_COLORS = {
    "completed": "green",
    "running": "blue",
    "pending": "yellow",
    "skipped": "dim",
    "stopped": "yellow",
    "failed": "red",
}


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


@sync_app.command("run")
def run_sync(
    supplier: Optional[str] = typer.Option(None, "--supplier", "-s", help="Supplier code to sync"),
    all_suppliers: bool = typer.Option(False, "--all", help="Queue a scheduled sync for every enabled supplier"),
    sync: bool = typer.Option(False, "--sync", help="Run all stages in-process (blocking)"),
) -> None:
    """
    Start a catalog sync for a supplier.

    Examples:
        catalog-sync sync run --supplier A113 --sync
        catalog-sync sync run -s A113
        catalog-sync sync run --all
    """
    if all_suppliers:
        if supplier or sync:
            rprint("[red]Error:[/red] --all cannot be combined with --supplier or --sync")
            raise typer.Exit(1)
        _run_all()
        return
    if not supplier:
        rprint("[red]Error:[/red] Pass --supplier CODE or --all")
        raise typer.Exit(1)

    registry = get_default_registry()
    supplier_config = registry.get_supplier(supplier)

    if supplier_config is None:
        rprint(f"[red]Error:[/red] Supplier '{supplier}' not found")
        rprint("\nAvailable suppliers:")
        for s in registry.list_suppliers():
            status = "[green]enabled[/green]" if s.enabled else "[yellow]disabled[/yellow]"
            rprint(f"  • {s.code} {s.name} ({status})")
        raise typer.Exit(1)

    rprint(f"\n[bold]Starting sync for supplier:[/bold] {supplier_config.code} {supplier_config.name}")

    if sync:
        rprint("\n[dim]Running synchronously...[/dim]\n")
        with console.status("[bold blue]Syncing...[/bold blue]"):
            started, snapshot = asyncio.run(run_sync_local(supplier_config.code))

        if not started.started:
            rprint(f"[yellow]{started.message}[/yellow]")
            if started.session_id:
                rprint(f"Running session: [bold]{started.session_id}[/bold]")
            return

        if snapshot is not None:
            _display_session(snapshot)
            if snapshot.status == SessionStatus.FAILED:
                raise typer.Exit(1)
        return

    rprint("\n[dim]Enqueueing diff job for the stage workers...[/dim]")
    try:
        started = asyncio.run(enqueue_supplier_sync(supplier_config.code))
    except Exception as e:
        rprint(f"\n[red]Error:[/red] Failed to start sync: {e}")
        rprint("\nMake sure Redis is running:")
        rprint("  docker-compose up -d redis")
        raise typer.Exit(1)

    if not started.started:
        rprint(f"[yellow]{started.message}[/yellow]")
        if started.session_id:
            rprint(f"Running session: [bold]{started.session_id}[/bold]")
        return

    rprint("\n[green]Sync started![/green]")
    rprint(f"Session ID: [bold]{started.session_id}[/bold]")
    rprint("\nCheck progress with:")
    rprint(f"  catalog-sync sync session {started.session_id}")


def _run_all() -> None:
    rprint("\n[dim]Enqueueing diff jobs for every enabled supplier...[/dim]")
    try:
        results = asyncio.run(enqueue_scheduled_syncs())
    except Exception as e:
        rprint(f"\n[red]Error:[/red] Failed to start syncs: {e}")
        rprint("\nMake sure Redis is running:")
        rprint("  docker-compose up -d redis")
        raise typer.Exit(1)

    table = Table(title="Scheduled Syncs")
    table.add_column("Supplier", style="cyan")
    table.add_column("Started")
    table.add_column("Session")
    table.add_column("Message")
    for result in results:
        table.add_row(
            result.supplier_code,
            "[green]yes[/green]" if result.started else "[yellow]no[/yellow]",
            result.session_id or "-",
            escape(result.message),
        )
    console.print(table)
    rprint(f"\nQueued {sum(1 for r in results if r.started)}/{len(results)} supplier(s)")


@sync_app.command("worker")
def start_worker(
    stage: Stage = typer.Option(..., "--stage", help="Pipeline stage to consume"),
    burst: bool = typer.Option(False, "--burst", help="Run in burst mode (exit when queue empty)"),
) -> None:
    """
    Start a worker for one pipeline stage.

    Run one worker process per stage; scale a stage by running more of them.

    Examples:
        catalog-sync sync worker --stage diff
        catalog-sync sync worker --stage assets --burst
    """
    from arq import run_worker

    from catalog_sync.ingestion.jobs import WORKER_SETTINGS

    rprint(f"[bold]Starting {stage.value} worker...[/bold]")
    rprint("Press Ctrl+C to stop\n")

    try:
        run_worker(WORKER_SETTINGS[stage], burst=burst)
    except Exception as e:
        rprint(f"[red]Error:[/red] Worker failed: {e}")
        rprint("\nMake sure Redis is running:")
        rprint("  docker-compose up -d redis")
        raise typer.Exit(1)


@sync_app.command("stop")
def stop_sync(
    supplier: str = typer.Option(..., "--supplier", "-s", help="Supplier code"),
) -> None:
    """
    Ask a running sync to stop after its current batch.

    Examples:
        catalog-sync sync stop --supplier A113
    """
    try:
        requested = asyncio.run(request_stop(supplier))
    except Exception as e:
        rprint(f"[red]Error:[/red] Failed to request stop: {e}")
        raise typer.Exit(1)

    if requested:
        rprint(f"[yellow]Stop requested for supplier {supplier}[/yellow]")
    else:
        rprint(f"[dim]No sync is running for supplier {supplier}[/dim]")


@sync_app.command("sessions")
def list_sessions(
    supplier: Optional[str] = typer.Option(None, "--supplier", "-s", help="Filter by supplier code"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum sessions to show"),
) -> None:
    """
    List recent sync sessions.

    Examples:
        catalog-sync sync sessions
        catalog-sync sync sessions --supplier A113 --limit 5
    """
    tracker = SessionTracker(get_session_factory())
    sessions = tracker.list_sessions(supplier, limit=limit)

    if not sessions:
        rprint("[yellow]No sessions found[/yellow]")
        return

    table = Table(title="Sync Sessions")
    table.add_column("Session", style="bold")
    table.add_column("Supplier")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Duration")
    table.add_column("Families", justify="right")
    table.add_column("Efficiency", justify="right")
    table.add_column("Errors", justify="right")

    for session in sessions:
        started = session.started_at.strftime("%Y-%m-%d %H:%M:%S") if session.started_at else "-"
        duration = f"{session.duration_seconds:.1f}s" if session.duration_seconds is not None else "-"
        efficiency = f"{session.hash_efficiency:.1f}%" if session.hash_efficiency is not None else "-"
        table.add_row(
            session.session_id,
            session.supplier_code,
            _colored(session.status.value),
            started,
            duration,
            str(session.counters.get("families_found", 0)),
            efficiency,
            str(session.error_count),
        )

    console.print(table)


@sync_app.command("session")
def show_session(
    session_id: str = typer.Argument(..., help="Session ID"),
) -> None:
    """
    Show stage progress and counters of a session.

    Examples:
        catalog-sync sync session sess_1735689600000_A113_a1b2c3
    """
    tracker = SessionTracker(get_session_factory())
    snapshot = tracker.snapshot(session_id)

    if snapshot is None:
        rprint(f"[red]Error:[/red] Session '{session_id}' not found")
        raise typer.Exit(1)

    _display_session(snapshot)


# Suppliers subcommands


@suppliers_app.command("list")
def list_suppliers(
    all_suppliers: bool = typer.Option(False, "--all", "-a", help="Show all suppliers including disabled"),
) -> None:
    """
    List configured suppliers.

    Examples:
        catalog-sync suppliers list
        catalog-sync suppliers list --all
    """
    registry = get_default_registry()
    suppliers = registry.list_suppliers() if all_suppliers else registry.list_enabled_suppliers()

    if not suppliers:
        rprint("[yellow]No suppliers configured[/yellow]")
        rprint("\nAdd suppliers to config/suppliers.yaml")
        return

    table = Table(title="Suppliers")
    table.add_column("Code", style="bold")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Size Sort")
    table.add_column("Rate Limit")

    for supplier in suppliers:
        status = "[green]enabled[/green]" if supplier.enabled else "[yellow]disabled[/yellow]"
        rate_limit = supplier.rate_limit or registry.global_config.default_rate_limit
        rate = f"{rate_limit.requests_per_second}/s" + ("" if supplier.rate_limit else " (default)")
        table.add_row(supplier.code, supplier.name, status, "yes" if supplier.sort_sizes else "no", rate)

    console.print(table)


def _display_session(snapshot: SessionSnapshot) -> None:
    """Display a session snapshot with a per-stage table."""
    rprint(f"\n[bold]Session: {snapshot.session_id}[/bold]")
    rprint(f"  Supplier: {snapshot.supplier_code}")
    rprint(f"  Status: {_colored(snapshot.status.value)}")
    rprint(f"  Trigger: {'manual' if snapshot.manual else 'scheduled'}")
    if snapshot.duration_seconds is not None:
        rprint(f"  Duration: {snapshot.duration_seconds:.1f}s")
    if snapshot.hash_efficiency is not None:
        rprint(f"  Hash efficiency: {snapshot.hash_efficiency:.1f}%")

    table = Table(title="Stages")
    table.add_column("Stage", style="bold")
    table.add_column("Status")
    table.add_column("Total", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")

    for stage in STAGE_ORDER:
        record = snapshot.stage(stage)
        table.add_row(
            stage.value,
            _colored(record.status.value),
            str(record.total),
            str(record.processed),
            str(record.skipped),
            str(record.failed),
        )
    console.print(table)

    if snapshot.counters:
        rprint("\n[bold]Statistics:[/bold]")
        for name, value in snapshot.counters.items():
            rprint(f"  {name.replace('_', ' ').capitalize()}: {value}")

    if snapshot.errors:
        rprint(f"\n[bold red]Errors ({snapshot.error_count}):[/bold red]")
        for error in snapshot.errors[:10]:  # Show first 10
            stage = escape(f"[{error.stage.value}] ") if error.stage else ""
            rprint(f"  • {stage}{escape(error.message)}")
        if snapshot.error_count > 10:
            rprint(f"  ... and {snapshot.error_count - 10} more")
