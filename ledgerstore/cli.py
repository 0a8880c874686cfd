"""
ledgerstore — operator CLI

Commands:
  migrate   Copy the SQLite store into PostgreSQL
  backup    Snapshot the SQLite store
  health    Run health checks against a backend
  config    Show the resolved database configuration

Usage:
    python -m ledgerstore migrate --source ~/budget/db.sqlite --validate
    python -m ledgerstore migrate --source ~/budget/db.sqlite --dry-run --only accounts
    python -m ledgerstore backup --source ~/budget/db.sqlite
    python -m ledgerstore health --backend sqlite --sqlite-path ~/budget/db.sqlite
    python -m ledgerstore config
"""

import argparse
import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .config import DatabaseConfig, config_summary, validate_postgres_config
from .errors import StorageError
from .health import CheckStatus, HealthMonitor, HealthStatus
from .logging_config import setup_logging
from .migration import MigrationOptions, MigrationProgress, create_sqlite_backup, migrate_sqlite_to_postgres
from .session import StorageSession

console = Console()

STATUS_STYLE = {
    CheckStatus.PASS: "green",
    CheckStatus.WARN: "yellow",
    CheckStatus.FAIL: "red",
    HealthStatus.HEALTHY: "green",
    HealthStatus.DEGRADED: "yellow",
    HealthStatus.UNHEALTHY: "red",
}


def _config(args) -> DatabaseConfig:
    config = DatabaseConfig.from_env()
    sqlite_path = getattr(args, "sqlite_path", None)
    if sqlite_path:
        config.sqlite.path = Path(sqlite_path).expanduser()
    return config


# ── commands ─────────────────────────────────────

async def cmd_migrate(args) -> int:
    config = _config(args)
    if not args.dry_run:
        problems = validate_postgres_config(config)
        if problems:
            for problem in problems:
                console.print(f"[red]{problem}[/red]")
            return 1

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total} tables"),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Starting", total=None)

        def on_progress(p: MigrationProgress) -> None:
            progress.update(
                task,
                total=p.total_tables,
                completed=p.completed_tables,
                description=f"{p.current_table} ({p.migrated_rows}/{p.total_rows} rows)",
            )

        options = MigrationOptions(
            source_path=Path(args.source).expanduser() if args.source else None,
            batch_size=args.batch_size,
            only_tables=set(args.only or []),
            skip_tables=set(args.skip or []),
            dry_run=args.dry_run,
            validate_data=args.validate,
            on_progress=on_progress,
        )
        result = await migrate_sqlite_to_postgres(options, config)

    table = Table(title="Migration" + (" (dry run)" if args.dry_run else ""))
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Success", "[green]yes[/green]" if result.success else "[red]no[/red]")
    table.add_row("Tables", ", ".join(result.migrated_tables) or "-")
    table.add_row("Rows", str(result.total_rows))
    table.add_row("Duration", f"{result.duration:.2f}s")
    table.add_row("Errors", str(len(result.errors)))
    console.print(table)

    for error in result.errors[:20]:
        console.print(f"  [red]{error}[/red]")
    if len(result.errors) > 20:
        console.print(f"  [dim]... and {len(result.errors) - 20} more[/dim]")
    return 0 if result.success else 1


async def cmd_backup(args) -> int:
    config = _config(args)
    source = Path(args.source).expanduser() if args.source else Path(config.sqlite.path)
    output = Path(args.output).expanduser() if args.output else None
    try:
        path = await create_sqlite_backup(source, output)
    except FileNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    console.print(f"[green]Backup written to {path}[/green]")
    return 0


async def cmd_health(args) -> int:
    config = _config(args)
    session = StorageSession(config, kind=args.backend or config.adapter)
    try:
        if args.backend:
            await session.open()
        else:
            await session.open_with_fallback()
    except StorageError as exc:
        console.print(f"[red]Could not open {session.kind.value}: {exc}[/red]")
        return 1

    try:
        monitor = HealthMonitor(session)
        if args.quick:
            ok = await monitor.quick_check()
            console.print("[green]OK[/green]" if ok else "[red]FAIL[/red]")
            return 0 if ok else 1

        snapshot = await monitor.full_check()
    finally:
        await session.close()

    table = Table(title=f"Health: {snapshot.adapter}")
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    table.add_column("Message")
    table.add_column("ms", justify="right")
    for check in snapshot.checks:
        style = STATUS_STYLE[check.status]
        table.add_row(check.name, f"[{style}]{check.status.value}[/{style}]", check.message, f"{check.duration_ms:.1f}")
    console.print(table)

    style = STATUS_STYLE[snapshot.overall]
    summary = snapshot.summary
    console.print(
        f"Overall: [{style}]{snapshot.overall.value}[/{style}]  "
        f"({summary['passed']} passed, {summary['warnings']} warnings, {summary['failed']} failed)"
    )
    return 1 if snapshot.overall is HealthStatus.UNHEALTHY else 0


async def cmd_config(args) -> int:
    config = _config(args)
    console.print(Panel(config_summary(config), title="ledgerstore configuration"))
    if config.adapter == "postgres":
        for problem in validate_postgres_config(config):
            console.print(f"[yellow]{problem}[/yellow]")
    return 0


# ── entry point ─────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ledgerstore", description="Budget storage operations")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("migrate", help="Copy SQLite data into PostgreSQL")
    p.add_argument("--source", help="SQLite database file (default: configured path)")
    p.add_argument("--batch-size", type=int, default=1000)
    p.add_argument("--only", nargs="+", metavar="TABLE", help="Migrate only these tables")
    p.add_argument("--skip", nargs="+", metavar="TABLE", help="Skip these tables")
    p.add_argument("--dry-run", action="store_true", help="Count rows without writing")
    p.add_argument("--validate", action="store_true", help="Compare row counts afterwards")

    p = sub.add_parser("backup", help="Snapshot the SQLite database")
    p.add_argument("--source", help="SQLite database file (default: configured path)")
    p.add_argument("--output", help="Backup file (default: db_backup_<ms>.sqlite beside the source)")

    p = sub.add_parser("health", help="Run health checks")
    p.add_argument("--backend", choices=["sqlite", "postgres"])
    p.add_argument("--sqlite-path", help="SQLite database file (default: configured path)")
    p.add_argument("--quick", action="store_true", help="Connectivity probe only")

    p = sub.add_parser("config", help="Show resolved configuration")
    p.add_argument("--sqlite-path", help="SQLite database file (default: configured path)")

    return parser


COMMANDS = {
    "migrate": cmd_migrate,
    "backup": cmd_backup,
    "health": cmd_health,
    "config": cmd_config,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging("ledgerstore", level=logging.DEBUG if args.verbose else None)
    return asyncio.run(COMMANDS[args.command](args))
