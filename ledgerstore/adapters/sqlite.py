"""
Embedded backend — SQLite via aiosqlite.

Connections run in autocommit mode (isolation_level=None) so that
transaction_scope() owns BEGIN/COMMIT/ROLLBACK explicitly. The same custom
SQL functions the networked backend installs in PL/pgSQL are registered
here as Python callables, so application SQL behaves the same on both.
"""

import logging
import re
import sqlite3
import unicodedata
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import aiosqlite

from ..config import DatabaseConfig, SQLiteSettings
from ..errors import DatabaseConnectionError, QueryError
from .base import Adapter, BackendKind, Connection, QueryResult

log = logging.getLogger("ledgerstore.adapters.sqlite")


# ── custom functions ─────────────────────────────────────

def unicode_lower(value: Optional[str]) -> Optional[str]:
    return None if value is None else str(value).lower()


def unicode_upper(value: Optional[str]) -> Optional[str]:
    return None if value is None else str(value).upper()


def like_to_regex(pattern: str) -> str:
    """Translate a LIKE pattern (% any run, ? single char) into a regex."""
    out = []
    for ch in pattern:
        if ch == "%":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        else:
            out.append(re.escape(ch))
    return "".join(out)


def unicode_like(pattern: Optional[str], value: Optional[str]) -> int:
    if pattern is None:
        return 0
    text = "" if value is None else str(value)
    return 1 if re.search(like_to_regex(pattern), text, re.IGNORECASE) else 0


def regexp(pattern: Optional[str], value: Optional[str]) -> int:
    if pattern is None:
        return 0
    text = "" if value is None else str(value)
    return 1 if re.search(pattern, text) else 0


def normalise(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    decomposed = unicodedata.normalize("NFKD", str(value))
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


CUSTOM_FUNCTIONS = {
    "UNICODE_LOWER": (1, unicode_lower),
    "UNICODE_UPPER": (1, unicode_upper),
    "UNICODE_LIKE": (2, unicode_like),
    "REGEXP": (2, regexp),
    "NORMALISE": (1, normalise),
}


def _settings(config: Union[DatabaseConfig, SQLiteSettings, str, Path, None]) -> SQLiteSettings:
    if isinstance(config, DatabaseConfig):
        return config.sqlite
    if isinstance(config, SQLiteSettings):
        return config
    if isinstance(config, (str, Path)) and str(config):
        return SQLiteSettings(path=Path(config))
    raise DatabaseConnectionError("SQLite database path is required")


class SQLiteAdapter(Adapter):
    kind = BackendKind.EMBEDDED

    async def open(self, config) -> Connection:
        settings = _settings(config)
        path = str(settings.path)
        if not path:
            raise DatabaseConnectionError("SQLite database path is required")

        if path != ":memory:":
            db_path = Path(path)
            if db_path.is_dir():
                raise DatabaseConnectionError(f"Path points to a directory, expected file: {path}")
            try:
                db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise DatabaseConnectionError(f"Cannot create directory for {path}: {exc}") from exc

        try:
            db = await aiosqlite.connect(path, isolation_level=None)
            db.row_factory = aiosqlite.Row
            for pragma, value in settings.pragmas.items():
                await db.execute(f"PRAGMA {pragma} = {value}")
            for name, (num_params, func) in CUSTOM_FUNCTIONS.items():
                await db.create_function(name, num_params, func, deterministic=True)
        except (sqlite3.Error, OSError) as exc:
            raise DatabaseConnectionError(f"Failed to open SQLite database {path}: {exc}") from exc

        log.info(f"SQLite database opened: {path}")
        return Connection(kind=self.kind, raw=db, description=path)

    async def close(self, conn: Connection) -> None:
        if conn.closed:
            return
        conn.closed = True
        conn.in_transaction = False
        try:
            await conn.raw.close()
        except (sqlite3.Error, ValueError) as exc:
            raise DatabaseConnectionError(f"Failed to close SQLite database: {exc}") from exc
        log.info(f"SQLite database closed: {conn.description}")

    async def _execute(
        self,
        conn: Connection,
        sql: str,
        params: Sequence[Any],
        want_rows: bool,
    ) -> QueryResult:
        if conn.closed:
            raise QueryError("Connection is closed", sql)
        try:
            cursor = await conn.raw.execute(sql, tuple(params))
            try:
                if want_rows:
                    rows = await cursor.fetchall()
                    return [dict(row) for row in rows]
                return max(cursor.rowcount, 0)
            finally:
                await cursor.close()
        except (sqlite3.Error, ValueError) as exc:
            log.debug(f"SQLite query failed: {exc} | {sql} | {params}")
            raise QueryError(str(exc), sql) from exc

    async def _begin(self, conn: Connection) -> None:
        await conn.raw.execute("BEGIN")

    async def _commit(self, conn: Connection) -> None:
        await conn.raw.execute("COMMIT")

    async def _rollback(self, conn: Connection) -> None:
        await conn.raw.execute("ROLLBACK")

    def placeholder(self, index: int) -> str:
        return "?"

    async def list_tables(self, conn: Connection) -> List[str]:
        rows = await self.query(
            conn,
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'",
            want_rows=True,
        )
        return [row["name"] for row in rows]

    async def table_exists(self, conn: Connection, table: str) -> bool:
        rows = await self.query(
            conn,
            "SELECT COUNT(*) AS count FROM sqlite_master WHERE type = 'table' AND name = ?",
            [table],
            want_rows=True,
        )
        return rows[0]["count"] > 0

    async def describe_columns(self, conn: Connection, table: str) -> Dict[str, str]:
        rows = await self.query(conn, f"PRAGMA table_info({self.quote_ident(table)})", want_rows=True)
        return {row["name"]: (row["type"] or "").upper() for row in rows}

    async def table_definition(self, conn: Connection, table: str) -> str:
        rows = await self.query(
            conn,
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?",
            [table],
            want_rows=True,
        )
        return rows[0]["sql"] or "" if rows else ""

    async def server_version(self, conn: Connection) -> str:
        rows = await self.query(conn, "SELECT sqlite_version() AS version", want_rows=True)
        return rows[0]["version"]
