"""
Migration: embedded store (SQLite) → networked store (PostgreSQL)

One-shot, operator-triggered copy of every table:
  1. Count source rows
  2. Apply the translated CREATE TABLE on the target (skipped in dry run)
  3. Copy rows in LIMIT/OFFSET batches, one INSERT ... ON CONFLICT DO NOTHING per row
  4. Optionally compare row counts on both sides

Tables are migrated sequentially and independently: a failed table is
recorded and the run moves on. The run itself never raises; inspect
MigrationResult.errors instead.

Usage:
    result = await migrate_sqlite_to_postgres(
        MigrationOptions(source_path=Path("budget/db.sqlite"), validate_data=True)
    )
    backup = await create_sqlite_backup(Path("budget/db.sqlite"))
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import aiosqlite

from . import config as cfg
from .adapters import Adapter, BackendKind, Connection, PostgresAdapter, SQLiteAdapter
from .config import DatabaseConfig, SQLiteSettings
from .errors import (
    CircuitBreakerTripped,
    DatabaseConnectionError,
    QueryError,
    StorageError,
    ValidationMismatch,
)
from .schema import initialize_schema
from .translator import translate
from .values import coerce_for_column

log = logging.getLogger("ledgerstore.migration")

RowPairs = List[Tuple[str, Any]]


class TableState(str, Enum):
    PENDING = "pending"
    COUNTING = "counting"
    SCHEMA_APPLIED = "schema_applied"
    COPYING_BATCHES = "copying_batches"
    VALIDATING = "validating"
    DONE = "done"
    FAILED = "failed"


@dataclass
class MigrationProgress:
    """Live state of one run. Passed by reference to on_progress."""
    total_tables: int = 0
    completed_tables: int = 0
    current_table: str = ""
    table_state: TableState = TableState.PENDING
    total_rows: int = 0
    migrated_rows: int = 0
    errors: List[str] = field(default_factory=list)
    start_time: float = field(default_factory=time.monotonic)
    eta_seconds: Optional[float] = None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    def update_eta(self) -> None:
        if self.completed_tables == 0:
            self.eta_seconds = None
            return
        per_table = self.elapsed / self.completed_tables
        self.eta_seconds = per_table * (self.total_tables - self.completed_tables)


ProgressCallback = Callable[[MigrationProgress], None]


@dataclass
class MigrationOptions:
    source_path: Optional[Path] = None
    batch_size: int = cfg.MIGRATION_BATCH_SIZE
    skip_tables: Set[str] = field(default_factory=set)
    only_tables: Set[str] = field(default_factory=set)
    dry_run: bool = False
    validate_data: bool = False
    on_progress: Optional[ProgressCallback] = None
    batch_delay: float = cfg.MIGRATION_BATCH_DELAY_S
    max_row_errors: int = cfg.MIGRATION_MAX_ROW_ERRORS


@dataclass(frozen=True)
class MigrationResult:
    success: bool
    migrated_tables: Tuple[str, ...]
    total_rows: int
    duration: float
    errors: Tuple[str, ...]


@dataclass
class TableOutcome:
    table: str
    state: TableState = TableState.PENDING
    rows: int = 0
    errors: List[str] = field(default_factory=list)


def _failed(message: str, started: float) -> MigrationResult:
    log.error(message)
    return MigrationResult(False, (), 0, time.monotonic() - started, (message,))


class Migrator:
    """Copies tables from one open connection to another."""

    def __init__(
        self,
        source: Adapter,
        source_conn: Connection,
        target: Adapter,
        target_conn: Connection,
        options: Optional[MigrationOptions] = None,
    ):
        self.source = source
        self.source_conn = source_conn
        self.target = target
        self.target_conn = target_conn
        self.options = options or MigrationOptions()
        if self.options.batch_size < 1:
            raise ValueError("batch_size must be positive")

    def _report(self, progress: MigrationProgress) -> None:
        if self.options.on_progress:
            self.options.on_progress(progress)

    async def tables_to_migrate(self) -> List[str]:
        tables = await self.source.list_tables(self.source_conn)
        if self.options.only_tables:
            tables = [t for t in tables if t in self.options.only_tables]
        if self.options.skip_tables:
            tables = [t for t in tables if t not in self.options.skip_tables]
        return tables

    async def _count(self, adapter: Adapter, conn: Connection, table: str) -> int:
        rows = await adapter.query(
            conn, f"SELECT COUNT(*) AS count FROM {adapter.quote_ident(table)}", want_rows=True
        )
        return int(rows[0]["count"])

    # ── per-table steps ─────────────────────────────────────

    async def _apply_schema(self, table: str, outcome: TableOutcome) -> None:
        definition = await self.source.table_definition(self.source_conn, table)
        ddl = translate(definition) if self.target.kind is BackendKind.NETWORKED else definition
        if not ddl:
            return
        if self.target.kind is BackendKind.EMBEDDED and "IF NOT EXISTS" not in ddl.upper():
            ddl = ddl.replace("CREATE TABLE", "CREATE TABLE IF NOT EXISTS", 1)
        try:
            await self.target.query(self.target_conn, ddl)
        except QueryError as exc:
            if exc.is_already_exists:
                log.debug(f"Table {table} already exists on target")
            else:
                outcome.errors.append(f"Schema creation failed for {table}: {exc}")

    async def _insert_row(self, table: str, pairs: RowPairs, column_types: Dict[str, str]) -> None:
        q = self.target.quote_ident
        columns = ", ".join(q(name) for name, _ in pairs)
        values = [coerce_for_column(value, column_types.get(name)) for name, value in pairs]
        sql = (
            f"INSERT INTO {q(table)} ({columns}) "
            f"VALUES ({self.target.placeholders(len(values))}) ON CONFLICT DO NOTHING"
        )
        await self.target.query(self.target_conn, sql, values)

    async def _copy(self, table: str, total: int, progress: MigrationProgress, outcome: TableOutcome) -> int:
        opts = self.options
        column_types: Dict[str, str] = {}
        if not opts.dry_run and self.target.kind is BackendKind.NETWORKED:
            column_types = await self.target.describe_columns(self.target_conn, table)

        select = (
            f"SELECT * FROM {self.source.quote_ident(table)} "
            f"LIMIT {self.source.placeholder(1)} OFFSET {self.source.placeholder(2)}"
        )
        offset = 0
        copied = 0
        row_errors = 0

        while offset < total:
            if opts.dry_run:
                step = min(opts.batch_size, total - offset)
                copied += step
                offset += step
            else:
                batch = await self.source.query(
                    self.source_conn, select, [opts.batch_size, offset], want_rows=True
                )
                if not batch:
                    break
                for row in batch:
                    pairs: RowPairs = list(row.items())
                    try:
                        await self._insert_row(table, pairs, column_types)
                        copied += 1
                    except (QueryError, ValueError, TypeError) as exc:
                        row_errors += 1
                        outcome.errors.append(f"Insert failed for {table} row: {exc}")
                        if row_errors > opts.max_row_errors:
                            raise CircuitBreakerTripped(table, row_errors) from exc
                offset += len(batch)

            progress.migrated_rows = copied
            self._report(progress)
            if offset < total and opts.batch_delay > 0:
                await asyncio.sleep(opts.batch_delay)

        return copied

    async def _reset_sequences(self, table: str) -> None:
        """Move SERIAL sequences past the ids copied in explicitly."""
        rows = await self.target.query(
            self.target_conn,
            """SELECT column_name FROM information_schema.columns
               WHERE table_schema = current_schema() AND table_name = $1
               AND column_default LIKE 'nextval(%'""",
            [table],
            want_rows=True,
        )
        q = self.target.quote_ident
        for row in rows:
            column = row["column_name"]
            await self.target.query(
                self.target_conn,
                f"SELECT setval(pg_get_serial_sequence($1, $2), "
                f"COALESCE((SELECT MAX({q(column)}) FROM {q(table)}), 0) + 1, false)",
                [q(table), column],
                want_rows=True,
            )

    async def validate_table(self, table: str) -> None:
        """Raise ValidationMismatch when row counts differ."""
        source_count = await self._count(self.source, self.source_conn, table)
        target_count = await self._count(self.target, self.target_conn, table)
        if source_count != target_count:
            raise ValidationMismatch(
                f"Row count mismatch for {table}: "
                f"{self.source.kind.value}={source_count}, {self.target.kind.value}={target_count}"
            )

    async def migrate_table(self, table: str, progress: MigrationProgress) -> TableOutcome:
        outcome = TableOutcome(table)
        progress.current_table = table
        progress.migrated_rows = 0
        log.info(f"Migrating table: {table}")

        def advance(state: TableState) -> None:
            outcome.state = state
            progress.table_state = state

        try:
            advance(TableState.COUNTING)
            total = await self._count(self.source, self.source_conn, table)
            progress.total_rows = total

            if not self.options.dry_run:
                await self._apply_schema(table, outcome)
                advance(TableState.SCHEMA_APPLIED)

            if total == 0:
                log.info(f"Table {table} is empty, skipping data copy")
                advance(TableState.DONE)
                return outcome

            advance(TableState.COPYING_BATCHES)
            outcome.rows = await self._copy(table, total, progress, outcome)

            if not self.options.dry_run and self.target.kind is BackendKind.NETWORKED:
                try:
                    await self._reset_sequences(table)
                except QueryError as exc:
                    log.warning(f"Could not reset sequences for {table}: {exc}")

            if self.options.validate_data and not self.options.dry_run:
                advance(TableState.VALIDATING)
                try:
                    await self.validate_table(table)
                except ValidationMismatch as exc:
                    outcome.errors.append(str(exc))
                except StorageError as exc:
                    outcome.errors.append(f"Validation failed for {table}: {exc}")

            advance(TableState.DONE)
            log.info(f"Migrated {outcome.rows} rows from {table}")
        except CircuitBreakerTripped as exc:
            advance(TableState.FAILED)
            outcome.errors.append(str(exc))
            log.error(str(exc))
        except StorageError as exc:
            advance(TableState.FAILED)
            outcome.errors.append(f"Failed to migrate table {table}: {exc}")
            log.error(f"Failed to migrate table {table}: {exc}")

        return outcome

    async def run(self) -> MigrationResult:
        started = time.monotonic()
        try:
            tables = await self.tables_to_migrate()
        except StorageError as exc:
            return _failed(f"Could not list source tables: {exc}", started)

        log.info(f"Found {len(tables)} tables to migrate: {tables}")
        if self.options.dry_run:
            log.info("DRY RUN - target will not be modified")

        progress = MigrationProgress(total_tables=len(tables))
        migrated: List[str] = []
        total_rows = 0

        for table in tables:
            outcome = await self.migrate_table(table, progress)
            progress.errors.extend(outcome.errors)
            if outcome.state is TableState.DONE:
                migrated.append(table)
                total_rows += outcome.rows
            progress.completed_tables += 1
            progress.update_eta()
            self._report(progress)

        duration = time.monotonic() - started
        errors = tuple(progress.errors)
        for message in errors[:10]:
            log.warning(f"  {message}")
        if len(errors) > 10:
            log.warning(f"  ... and {len(errors) - 10} more errors")
        log.info(
            f"Migration finished in {duration:.2f}s: {len(migrated)}/{len(tables)} tables, "
            f"{total_rows} rows, {len(errors)} errors"
        )
        return MigrationResult(
            success=not errors,
            migrated_tables=tuple(migrated),
            total_rows=total_rows,
            duration=duration,
            errors=errors,
        )


# ── entry points ─────────────────────────────────────

async def run_migration(
    options: MigrationOptions,
    target: Adapter,
    target_config: Any,
    source_config: Optional[DatabaseConfig] = None,
) -> MigrationResult:
    """Open the SQLite source and `target`, initialize the target schema, copy."""
    started = time.monotonic()
    source_path = Path(options.source_path or (source_config or DatabaseConfig()).sqlite.path)
    if not source_path.is_file():
        return _failed(f"SQLite database not found at: {source_path}", started)

    source = SQLiteAdapter()
    try:
        source_conn = await source.open(SQLiteSettings(path=source_path))
    except DatabaseConnectionError as exc:
        return _failed(str(exc), started)

    try:
        try:
            target_conn = await target.open(target_config)
        except DatabaseConnectionError as exc:
            return _failed(str(exc), started)

        try:
            if not options.dry_run:
                await initialize_schema(target, target_conn)
                log.info(f"Target schema initialized on {target.kind.value}")
            return await Migrator(source, source_conn, target, target_conn, options).run()
        except StorageError as exc:
            return _failed(f"Migration failed: {exc}", started)
        finally:
            await target.close(target_conn)
    finally:
        await source.close(source_conn)


async def migrate_sqlite_to_postgres(
    options: Optional[MigrationOptions] = None,
    config: Optional[DatabaseConfig] = None,
) -> MigrationResult:
    options = options or MigrationOptions()
    config = config or DatabaseConfig.from_env()
    if config.postgres is None:
        return _failed("PostgreSQL configuration not found", time.monotonic())
    log.info("Starting SQLite to PostgreSQL migration")
    return await run_migration(options, PostgresAdapter(), config, source_config=config)


async def create_sqlite_backup(source_path: Path, backup_path: Optional[Path] = None) -> Path:
    """Copy the embedded store with SQLite's online backup API."""
    source_path = Path(source_path)
    if not source_path.is_file():
        raise FileNotFoundError(f"SQLite database not found at: {source_path}")
    if backup_path is None:
        backup_path = source_path.parent / f"db_backup_{int(time.time() * 1000)}.sqlite"
    backup_path = Path(backup_path)
    backup_path.parent.mkdir(parents=True, exist_ok=True)

    async with aiosqlite.connect(str(source_path)) as src:
        async with aiosqlite.connect(str(backup_path)) as dst:
            await src.backup(dst)

    log.info(f"SQLite backup created: {backup_path}")
    return backup_path
