"""CLI for the PostgreSQL backup controller (Typer + Rich)."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pg_backuper.config import BackupConfig
from pg_backuper.controller import ALL_DATABASES, BackupController, backup_type_for
from pg_backuper.exceptions import BackuperError
from pg_backuper.storage import create_provider

app = typer.Typer(
    name="pg-backuper",
    help="PostgreSQL backup controller with local and S3-compatible storage.",
    no_args_is_help=True,
)
console = Console()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pg_backuper")


def _load_config() -> BackupConfig:
    """Load config, calling dotenv first for local runs."""
    from dotenv import load_dotenv

    load_dotenv()
    return BackupConfig.from_env()


def _controller(config: BackupConfig | None = None) -> BackupController:
    config = config or _load_config()
    try:
        provider = create_provider(config.storage)
    except BackuperError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    return BackupController(config, provider)


def _database_arg(database: str | None, all_databases: bool) -> str:
    if all_databases:
        return ALL_DATABASES
    if not database:
        console.print("[red]Error:[/] Pass a database name or --all")
        raise typer.Exit(2)
    return database


def _format_size(size_bytes: int | None) -> str:
    """Human-readable file size."""
    if size_bytes is None:
        return "-"
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    else:
        return f"{size_bytes / (1024 * 1024):.2f} MB"


def _format_age(dt: datetime | None) -> str:
    """Human-readable age from a datetime."""
    if dt is None:
        return "-"
    delta = datetime.now(UTC) - dt
    hours = delta.total_seconds() / 3600
    if hours < 1:
        return f"{int(delta.total_seconds() / 60)}m ago"
    elif hours < 24:
        return f"{hours:.1f}h ago"
    else:
        return f"{delta.days}d ago"


# ── dump ────────────────────────────────────────────────────────────────


@app.command()
def dump(
    database: Annotated[Optional[str], typer.Argument(help="Database to back up")] = None,
    all_databases: Annotated[bool, typer.Option("--all", help="Back up every database in DATABASE_LIST")] = False,
    shared: Annotated[bool, typer.Option("--shared", help="Also copy the dump to the shared directory")] = False,
) -> None:
    """Run a manual backup."""
    controller = _controller()
    summary = controller.dump(_database_arg(database, all_databases), "manual", copy_to_shared=shared)

    lines = []
    for r in summary.results:
        if not r.ok:
            lines.append(f"[red]FAIL[/] {r.database}: {r.error}")
            continue

        deleted = len(r.cleanup.deleted) if r.cleanup else 0
        suffix = f" (cleaned up {deleted})" if deleted else ""
        lines.append(f"[green]OK[/]   {r.database}: {r.filename}{suffix}")
        if r.cleanup_error:
            lines.append(f"  [yellow]WARN[/] retention skipped: {r.cleanup_error}")
        if r.cleanup:
            for name, error in r.cleanup.failures.items():
                lines.append(f"  [yellow]WARN[/] could not delete {name}: {error}")

    if not lines:
        console.print("[yellow]No databases configured.[/]")
        raise typer.Exit(1)

    title = "[green]Backup Complete[/]" if summary.ok else "[yellow]Backup Partial[/]"
    console.print(Panel("\n".join(lines), title=title))
    if not summary.ok:
        raise typer.Exit(1)


# ── list ────────────────────────────────────────────────────────────────


@app.command("list")
def list_backups(
    database: Annotated[str, typer.Argument(help="Database whose backups to list")],
) -> None:
    """List available backups, newest first."""
    controller = _controller()
    try:
        entries = controller.list(database)
    except BackuperError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    if not entries:
        console.print("[yellow]No backups found.[/]")
        return

    table = Table(title=f"Backups for {database} ({controller.provider.name})")
    table.add_column("#", style="dim", width=4)
    table.add_column("Filename")
    table.add_column("Size", justify="right")
    table.add_column("Date")
    table.add_column("Age", style="dim")

    for i, entry in enumerate(entries, 1):
        table.add_row(
            str(i),
            entry.name,
            _format_size(entry.size),
            entry.modified.strftime("%Y-%m-%d %H:%M UTC") if entry.modified else "-",
            _format_age(entry.modified),
        )

    console.print(table)


# ── restore ─────────────────────────────────────────────────────────────


@app.command()
def restore(
    database: Annotated[str, typer.Argument(help="Database to restore into")],
    filename: Annotated[str, typer.Argument(help="Backup file name as shown by `list`")],
) -> None:
    """Restore a database from a stored backup."""
    controller = _controller()
    try:
        with console.status(f"Restoring {filename}..."):
            controller.restore(database, filename)
    except BackuperError as e:
        console.print(f"[red]Restore failed:[/] {e}")
        raise typer.Exit(1)
    console.print("[green]Restore completed successfully.[/]")


@app.command("restore-from-shared")
def restore_from_shared(
    database: Annotated[Optional[str], typer.Argument(help="Database to restore")] = None,
    all_databases: Annotated[bool, typer.Option("--all", help="Restore every database in DATABASE_LIST")] = False,
) -> None:
    """Restore from the shared file.dump pointer."""
    controller = _controller()
    try:
        controller.restore_from_shared(_database_arg(database, all_databases))
    except BackuperError as e:
        console.print(f"[red]Restore failed:[/] {e}")
        raise typer.Exit(1)
    console.print("[green]Restore completed successfully.[/]")


# ── cleanup ─────────────────────────────────────────────────────────────


@app.command()
def cleanup(
    database: Annotated[Optional[str], typer.Argument(help="Database to clean up")] = None,
    all_databases: Annotated[bool, typer.Option("--all", help="Clean up every database in DATABASE_LIST")] = False,
) -> None:
    """Apply the retention policy once."""
    controller = _controller()
    try:
        reports = controller.cleanup(_database_arg(database, all_databases))
    except BackuperError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    failed = False
    for report in reports:
        console.print(
            f"[bold]{report.database}:[/] {len(report.deleted)} deleted, "
            f"{len(report.kept)} kept, {len(report.skipped)} skipped"
        )
        for name, error in report.failures.items():
            failed = True
            console.print(f"  [red]FAIL[/] {name}: {error}")
    if failed:
        raise typer.Exit(1)


# ── start ───────────────────────────────────────────────────────────────


@app.command()
def start() -> None:
    """Prepare storage and run the hourly backup scheduler."""
    from pg_backuper.cron import run_scheduler

    config = _load_config()
    controller = _controller(config)
    try:
        controller.initialize()
    except BackuperError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    console.print(f"Storage:   {controller.provider.name}")
    console.print(f"Databases: {', '.join(config.database_names) or '(none)'}")
    console.print("Program started...")

    def scheduled_dump(now: datetime) -> None:
        if not config.production:
            return
        controller.dump(ALL_DATABASES, backup_type_for(now), copy_to_shared=config.copy_to_shared, now=now)

    run_scheduler(scheduled_dump, interval_hours=config.interval_hours, dump_hour=config.dump_hour)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
