"""CLI entry point for maintenance-safety.

Invoked as::

    maint-safety [OPTIONS] COMMAND [ARGS]...

or during development::

    python -m maintenance_safety.cli.main

Commands
--------
- status           Show stop state, active session and backup store summary
- stop raise       Raise the machine-wide emergency stop
- stop reset       Clear the emergency stop
- stop check       Exit 1 while the emergency stop is in effect
- rollback last    Reverse the N most recent operations of a session
- rollback point   Reverse a session back to a rollback point
- points           List a session's rollback points
- journal show     Display recent journal records
- backup list      List stored backups
- backup verify    Verify a backup against its manifest

Exit codes: 0 success, 1 rollback failure / emergency stop / integrity
failure, 2 session busy.
"""
from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

_DEFAULT_CONFIG = Path("safety.yaml")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_BUSY = 2


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _load_engine(ctx: click.Context):  # type: ignore[no-untyped-def]
    from maintenance_safety.config.loader import ConfigLoader
    from maintenance_safety.session.safety_session import SafetyEngine

    loader = ConfigLoader()
    cfg_path = Path(ctx.obj["config_path"])
    try:
        config = loader.load(cfg_path) if cfg_path.exists() else loader.defaults()
    except ValueError as exc:
        err_console.print(f"[red]Invalid config {cfg_path}:[/red] {exc}")
        sys.exit(EXIT_FAILURE)
    return SafetyEngine(config)


# ---------------------------------------------------------------------------
# Root command group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="maintenance-safety")
@click.option(
    "--config",
    "-c",
    "config_path",
    default=str(_DEFAULT_CONFIG),
    type=click.Path(),
    help="Path to safety.yaml.",
)
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity at INFO level.")
@click.pass_context
def cli(ctx: click.Context, config_path: str, verbose: bool) -> None:
    """Maintenance safety engine: emergency stop, rollback and backups."""
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@cli.command(name="status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """Show stop state, session lock and backup store summary."""
    engine = _load_engine(ctx)
    status = engine.status()
    stop = status["stop"]
    lock = status["lock"]
    backups = status["backups"]

    table = Table(title="Safety Engine Status", box=box.SIMPLE)
    table.add_column("Item", style="cyan")
    table.add_column("Value", style="bold")

    stopped = stop["state"] == "stopped"  # type: ignore[index]
    colour = "red" if stopped else "green"
    table.add_row("Emergency stop", f"[{colour}]{stop['state']}[/{colour}]")  # type: ignore[index]
    if stopped:
        table.add_row("Stop reason", str(stop["reason"]))  # type: ignore[index]
        table.add_row("Raised at", str(stop["raised_at"]))  # type: ignore[index]
    if lock:
        suffix = " [yellow](stale)[/yellow]" if lock["stale"] else ""  # type: ignore[index]
        table.add_row(
            "Active session",
            f"{lock['session_id']} (pid {lock['owner_pid']}){suffix}",  # type: ignore[index]
        )
        table.add_row("Heartbeat", str(lock["heartbeat_at"]))  # type: ignore[index]
    else:
        table.add_row("Active session", "[dim]none[/dim]")
    table.add_row(
        "Backups",
        f"{backups['count']} ({backups['corrupted']} corrupted)",  # type: ignore[index]
    )
    table.add_row("Journal", str(status["journal"]))
    console.print(table)


# ---------------------------------------------------------------------------
# stop
# ---------------------------------------------------------------------------


@cli.group(name="stop")
def stop_group() -> None:
    """Emergency stop commands."""


@stop_group.command(name="raise")
@click.argument("reason")
@click.pass_context
def stop_raise_command(ctx: click.Context, reason: str) -> None:
    """Raise the emergency stop with REASON."""
    engine = _load_engine(ctx)
    signal = engine.raise_emergency_stop(reason)
    engine.close()
    console.print(
        Panel(
            f"[bold red]EMERGENCY STOP[/bold red]\n{signal.reason}\n"
            f"[dim]{signal.raised_at.isoformat() if signal.raised_at else ''}[/dim]",
            title="Stop raised",
            border_style="red",
        )
    )


@stop_group.command(name="reset")
@click.pass_context
def stop_reset_command(ctx: click.Context) -> None:
    """Clear the emergency stop."""
    engine = _load_engine(ctx)
    removed = engine.reset_stop()
    if removed:
        console.print("[green]Emergency stop cleared.[/green]")
    else:
        console.print("[yellow]Emergency stop was not raised.[/yellow]")


@stop_group.command(name="check")
@click.pass_context
def stop_check_command(ctx: click.Context) -> None:
    """Exit 1 while the emergency stop is in effect, 0 otherwise."""
    engine = _load_engine(ctx)
    signal = engine.coordinator.current_signal()
    if signal.raised:
        console.print(f"[red]stopped[/red]: {signal.reason}")
        sys.exit(EXIT_FAILURE)
    console.print("[green]normal[/green]")


# ---------------------------------------------------------------------------
# rollback
# ---------------------------------------------------------------------------


@cli.group(name="rollback")
def rollback_group() -> None:
    """Reverse tracked operations of a session."""


def _resume(engine, session_id: str):  # type: ignore[no-untyped-def]
    from maintenance_safety.errors import SessionBusyError

    try:
        return engine.begin_session(session_id)
    except SessionBusyError as exc:
        err_console.print(f"[red]{exc}[/red]")
        sys.exit(EXIT_BUSY)
    except ValueError as exc:
        err_console.print(f"[red]{exc}[/red]")
        sys.exit(EXIT_FAILURE)


def _report(result) -> int:  # type: ignore[no-untyped-def]
    table = Table(title="Rollback", box=box.SIMPLE)
    table.add_column("Op", style="dim", no_wrap=True)
    table.add_column("Kind", style="cyan")
    table.add_column("Target")
    table.add_column("Status")
    for step in result.reversed:
        table.add_row(
            str(step.operation.operation_id),
            step.operation.kind.value,
            step.operation.target,
            f"[green]reversed[/green] {step.detail}",
        )
    if result.failed is not None:
        table.add_row(
            str(result.failed.operation.operation_id),
            result.failed.operation.kind.value,
            result.failed.operation.target,
            f"[red]failed[/red] {result.failed.detail}",
        )
    for op in result.pending:
        table.add_row(str(op.operation_id), op.kind.value, op.target, "[yellow]pending[/yellow]")
    console.print(table)

    if result.success:
        console.print(f"[green]Reversed {len(result.reversed)} operation(s).[/green]")
        return EXIT_OK
    console.print_json(json.dumps(result.to_report()))
    return result.exit_code


@rollback_group.command(name="last")
@click.argument("count", type=int)
@click.option("--session", "-s", "session_id", required=True, help="Session to roll back.")
@click.option("--timeout", type=float, default=None, help="Time budget in seconds.")
@click.pass_context
def rollback_last_command(
    ctx: click.Context, count: int, session_id: str, timeout: float | None
) -> None:
    """Reverse the COUNT most recent operations of a session."""
    from maintenance_safety.errors import RollbackTimeout

    engine = _load_engine(ctx)
    session = _resume(engine, session_id)
    try:
        result = session.rollback_last(count, timeout)
    except RollbackTimeout as exc:
        err_console.print(f"[red]{exc}[/red]")
        result = exc.result
    finally:
        engine.release_session(session_id)
    sys.exit(_report(result))


@rollback_group.command(name="point")
@click.argument("point")
@click.option("--session", "-s", "session_id", required=True, help="Session to roll back.")
@click.option("--timeout", type=float, default=None, help="Time budget in seconds.")
@click.pass_context
def rollback_point_command(
    ctx: click.Context, point: str, session_id: str, timeout: float | None
) -> None:
    """Reverse a session back to rollback POINT (id or name)."""
    from maintenance_safety.errors import RollbackTimeout

    engine = _load_engine(ctx)
    session = _resume(engine, session_id)
    try:
        result = session.rollback_to_point(point, timeout)
    except KeyError:
        err_console.print(f"[red]Unknown rollback point:[/red] {point}")
        sys.exit(EXIT_FAILURE)
    except RollbackTimeout as exc:
        err_console.print(f"[red]{exc}[/red]")
        result = exc.result
    finally:
        engine.release_session(session_id)
    sys.exit(_report(result))


# ---------------------------------------------------------------------------
# points
# ---------------------------------------------------------------------------


@cli.command(name="points")
@click.option("--session", "-s", "session_id", required=True, help="Session to inspect.")
@click.pass_context
def points_command(ctx: click.Context, session_id: str) -> None:
    """List the live rollback points of a session."""
    engine = _load_engine(ctx)
    session = _resume(engine, session_id)
    try:
        points = session.rollback_points()
        depth = session.undo_stack.depth
    finally:
        engine.release_session(session_id)

    if not points:
        console.print("[yellow]No rollback points.[/yellow]")
        return

    table = Table(title=f"Rollback points of {session_id}", box=box.SIMPLE)
    table.add_column("Id", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Created", style="dim", no_wrap=True)
    table.add_column("Ops after", justify="right")
    table.add_column("Backup")
    for point in points:
        table.add_row(
            point.point_id,
            point.name,
            point.created_at.isoformat()[:19].replace("T", " "),
            str(depth - point.journal_offset),
            point.backup_ref or "-",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# journal
# ---------------------------------------------------------------------------


@cli.group(name="journal")
def journal_group() -> None:
    """Operation journal commands."""


@journal_group.command(name="show")
@click.option("--last", "-n", default=20, show_default=True, type=int, help="Number of recent records to show.")
@click.option("--session", "-s", "session_id", default=None, help="Only show this session.")
@click.pass_context
def journal_show_command(ctx: click.Context, last: int, session_id: str | None) -> None:
    """Show recent journal records."""
    engine = _load_engine(ctx)
    journal = engine.journal
    records = journal.read_all()
    if session_id is not None:
        records = [r for r in records if r.get("session_id") == session_id]
    records = records[-last:] if last > 0 else []

    if not records:
        console.print("[yellow]No journal records found.[/yellow]")
        return

    table = Table(title=f"Last {last} Journal Records", box=box.SIMPLE)
    table.add_column("Timestamp", style="dim", no_wrap=True)
    table.add_column("Session", style="magenta")
    table.add_column("Record", style="cyan")
    table.add_column("Detail")

    for record in records:
        ts = str(record.get("timestamp", ""))[:19].replace("T", " ")
        session = str(record.get("session_id", ""))
        operation = record.get("operation")
        if isinstance(operation, dict):
            label = f"#{operation.get('operation_id')} {operation.get('kind')}"
            detail = str(operation.get("target", ""))
        else:
            label = str(record.get("event", ""))
            detail = ", ".join(
                f"{k}={v}"
                for k, v in record.items()
                if k not in {"record", "timestamp", "session_id", "event"}
            )
        table.add_row(ts, session, label, detail)

    console.print(table)
    console.print(f"  Total journal records: [cyan]{journal.count()}[/cyan]")


# ---------------------------------------------------------------------------
# backup
# ---------------------------------------------------------------------------


@cli.group(name="backup")
def backup_group() -> None:
    """Backup store commands."""


@backup_group.command(name="list")
@click.pass_context
def backup_list_command(ctx: click.Context) -> None:
    """List stored backups, oldest first."""
    engine = _load_engine(ctx)
    backups = engine.backup_store.list_backups()
    if not backups:
        console.print("[yellow]No backups found.[/yellow]")
        return

    table = Table(title="Backups", box=box.SIMPLE)
    table.add_column("Id", style="cyan")
    table.add_column("Kind")
    table.add_column("Created", style="dim", no_wrap=True)
    table.add_column("Files", justify="right")
    table.add_column("Base")
    table.add_column("State")
    for backup in backups:
        state = "[red]corrupted[/red]" if backup.corrupted else "[green]ok[/green]"
        table.add_row(
            backup.backup_id,
            backup.kind.value,
            backup.created_at.isoformat()[:19].replace("T", " "),
            str(len(backup.manifest)),
            backup.base_ref or "-",
            state,
        )
    console.print(table)


@backup_group.command(name="verify")
@click.argument("backup_id")
@click.pass_context
def backup_verify_command(ctx: click.Context, backup_id: str) -> None:
    """Verify BACKUP_ID against its checksum manifest."""
    engine = _load_engine(ctx)
    store = engine.backup_store
    try:
        backup = store.get(backup_id)
    except KeyError:
        err_console.print(f"[red]Backup not found:[/red] {backup_id}")
        sys.exit(EXIT_FAILURE)

    result = store.check(backup)
    if result.ok:
        console.print(f"[green]Backup {backup_id} verified ({len(backup.manifest)} file(s)).[/green]")
        return

    console.print(f"[red]Backup {backup_id} FAILED verification:[/red]")
    for path in result.mismatched_paths:
        console.print(f"  [red]x[/red] {path}")
    sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    cli()
