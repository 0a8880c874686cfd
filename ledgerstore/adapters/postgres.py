"""
Networked backend — PostgreSQL via asyncpg.

Uses a single asyncpg connection per Connection (no pool). asyncpg refuses
overlapping operations on one connection; the base adapter's per-connection
lock keeps concurrent tasks (the health monitor and ingestion) in turn.
The database itself must already exist; open() never creates it.
"""

import asyncio
import logging
from typing import Any, Dict, List, Sequence, Union

import asyncpg

from ..config import DatabaseConfig, PostgresSettings, postgres_dsn, redact_dsn
from ..errors import DatabaseConnectionError, QueryError
from .base import Adapter, BackendKind, Connection, QueryResult

log = logging.getLogger("ledgerstore.adapters.postgres")


def _dsn(config: Union[DatabaseConfig, PostgresSettings, str]) -> tuple:
    if isinstance(config, DatabaseConfig):
        if config.postgres is None:
            raise DatabaseConnectionError("PostgreSQL configuration not found")
        config = config.postgres
    if isinstance(config, PostgresSettings):
        return postgres_dsn(config), config.connection_timeout_ms / 1000
    if isinstance(config, str) and config:
        return config, 2.0
    raise DatabaseConnectionError("PostgreSQL connection string is required")


def _rowcount(status: str) -> int:
    """Affected rows from a command tag such as 'INSERT 0 3' or 'UPDATE 2'."""
    parts = (status or "").split()
    if len(parts) >= 2 and parts[-1].isdigit():
        return int(parts[-1])
    return 0


class PostgresAdapter(Adapter):
    kind = BackendKind.NETWORKED

    async def open(self, config) -> Connection:
        dsn, timeout = _dsn(config)
        safe_dsn = redact_dsn(dsn)
        try:
            raw = await asyncpg.connect(dsn, timeout=timeout)
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise DatabaseConnectionError(f"PostgreSQL unavailable ({safe_dsn}): {exc}") from exc

        log.info(f"PostgreSQL connected: {safe_dsn}")
        return Connection(kind=self.kind, raw=raw, description=safe_dsn)

    async def close(self, conn: Connection) -> None:
        if conn.closed:
            return
        conn.closed = True
        conn.in_transaction = False
        conn.extras.pop("transaction", None)
        try:
            await conn.raw.close()
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise DatabaseConnectionError(f"Failed to close PostgreSQL connection: {exc}") from exc
        log.info(f"PostgreSQL connection closed: {conn.description}")

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
            if want_rows:
                records = await conn.raw.fetch(sql, *params)
                return [dict(record) for record in records]
            if params:
                status = await conn.raw.execute(sql, *params)
            else:
                status = await conn.raw.execute(sql)
            return _rowcount(status)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TypeError, ValueError) as exc:
            log.debug(f"PostgreSQL query failed: {exc} | {sql} | {params}")
            raise QueryError(str(exc), sql) from exc

    async def _begin(self, conn: Connection) -> None:
        tr = conn.raw.transaction()
        await tr.start()
        conn.extras["transaction"] = tr

    async def _commit(self, conn: Connection) -> None:
        tr = conn.extras.pop("transaction")
        await tr.commit()

    async def _rollback(self, conn: Connection) -> None:
        tr = conn.extras.pop("transaction", None)
        if tr is not None:
            await tr.rollback()

    def placeholder(self, index: int) -> str:
        return f"${index}"

    async def list_tables(self, conn: Connection) -> List[str]:
        rows = await self.query(
            conn,
            """SELECT table_name FROM information_schema.tables
               WHERE table_schema = current_schema() AND table_type = 'BASE TABLE'
               ORDER BY table_name""",
            want_rows=True,
        )
        return [row["table_name"] for row in rows]

    async def table_exists(self, conn: Connection, table: str) -> bool:
        rows = await self.query(
            conn,
            """SELECT COUNT(*) AS count FROM information_schema.tables
               WHERE table_schema = current_schema() AND table_name = $1""",
            [table],
            want_rows=True,
        )
        return rows[0]["count"] > 0

    async def describe_columns(self, conn: Connection, table: str) -> Dict[str, str]:
        rows = await self.query(
            conn,
            """SELECT column_name, data_type FROM information_schema.columns
               WHERE table_schema = current_schema() AND table_name = $1
               ORDER BY ordinal_position""",
            [table],
            want_rows=True,
        )
        return {row["column_name"]: row["data_type"].upper() for row in rows}

    async def list_functions(self, conn: Connection) -> List[str]:
        rows = await self.query(
            conn,
            """SELECT routine_name FROM information_schema.routines
               WHERE routine_schema = current_schema() AND routine_type = 'FUNCTION'""",
            want_rows=True,
        )
        return sorted({row["routine_name"] for row in rows})

    async def server_version(self, conn: Connection) -> str:
        rows = await self.query(conn, "SELECT version() AS version", want_rows=True)
        return rows[0]["version"]
