"""
Backend abstraction layer.

One Adapter per backend kind. Adapters are stateless executors over a
Connection they hand out from open(); everything that differs between the
embedded and networked engines (placeholders, identifier quoting, catalog
queries, transaction control) lives behind this interface.

Placeholders are never rewritten: callers build SQL with the adapter's
own placeholder() style.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union

from ..errors import TransactionError

log = logging.getLogger("ledgerstore.adapters")

T = TypeVar("T")

Row = Dict[str, Any]
QueryResult = Union[List[Row], int]


class BackendKind(str, Enum):
    EMBEDDED = "sqlite"
    NETWORKED = "postgres"


@dataclass
class Connection:
    """Live handle to one backend. Owned by the adapter that opened it."""
    kind: BackendKind
    raw: Any
    description: str = ""
    closed: bool = False
    in_transaction: bool = False
    extras: Dict[str, Any] = field(default_factory=dict)
    # One statement or transaction at a time; asyncpg rejects overlapping use
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)
    owner: Optional["asyncio.Task"] = field(default=None, repr=False, compare=False)


class Adapter(ABC):
    kind: BackendKind

    @abstractmethod
    async def open(self, config) -> Connection:
        """Establish a connection. Raises DatabaseConnectionError."""

    @abstractmethod
    async def close(self, conn: Connection) -> None:
        """Release the connection. Closing twice is a no-op."""

    @abstractmethod
    async def _execute(
        self,
        conn: Connection,
        sql: str,
        params: Sequence[Any],
        want_rows: bool,
    ) -> QueryResult: ...

    @abstractmethod
    async def _begin(self, conn: Connection) -> None: ...

    @abstractmethod
    async def _commit(self, conn: Connection) -> None: ...

    @abstractmethod
    async def _rollback(self, conn: Connection) -> None: ...

    @abstractmethod
    def placeholder(self, index: int) -> str:
        """Parameter marker for the 1-based parameter `index`."""

    @abstractmethod
    async def list_tables(self, conn: Connection) -> List[str]: ...

    @abstractmethod
    async def describe_columns(self, conn: Connection, table: str) -> Dict[str, str]:
        """Ordered mapping of column name to declared type."""

    @abstractmethod
    async def server_version(self, conn: Connection) -> str: ...

    # ── shared behaviour ─────────────────────────────────────

    @asynccontextmanager
    async def _exclusive(self, conn: Connection) -> AsyncIterator[None]:
        # The task that owns an open transaction already holds the lock
        if conn.owner is not None and conn.owner is asyncio.current_task():
            yield
            return
        async with conn.lock:
            yield

    async def query(
        self,
        conn: Connection,
        sql: str,
        params: Sequence[Any] = (),
        want_rows: bool = False,
    ) -> QueryResult:
        """Run one statement. Returns rows when want_rows, else the affected row count.

        Callers on other tasks wait while a statement or transaction is in
        progress on the same connection.
        """
        async with self._exclusive(conn):
            return await self._execute(conn, sql, params, want_rows)

    def placeholders(self, count: int, start: int = 1) -> str:
        return ", ".join(self.placeholder(i) for i in range(start, start + count))

    def quote_ident(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    async def execute_script(self, conn: Connection, statements: Sequence[str]) -> None:
        for statement in statements:
            await self.query(conn, statement)

    async def table_exists(self, conn: Connection, table: str) -> bool:
        return table in await self.list_tables(conn)

    async def table_definition(self, conn: Connection, table: str) -> str:
        """CREATE TABLE text as stored by the backend, or '' if unavailable."""
        return ""

    async def status(self, conn: Optional[Connection]) -> Dict[str, Any]:
        return {
            "adapter": self.kind.value,
            "initialized": conn is not None and not conn.closed,
        }

    @asynccontextmanager
    async def transaction_scope(self, conn: Connection) -> AsyncIterator[Connection]:
        """Group statements atomically. Rolls back and re-raises on error.

        The connection stays locked for the whole scope, so statements from
        other tasks run before BEGIN or after COMMIT, never inside it.
        """
        task = asyncio.current_task()
        if conn.in_transaction and conn.owner is task:
            raise TransactionError("Nested transactions are not supported")

        async with conn.lock:
            try:
                await self._begin(conn)
            except Exception as exc:
                raise TransactionError(f"Could not begin transaction: {exc}") from exc
            conn.in_transaction, conn.owner = True, task

            try:
                yield conn
            except BaseException:
                conn.in_transaction, conn.owner = False, None
                try:
                    await self._rollback(conn)
                except Exception as exc:
                    raise TransactionError(f"Rollback failed: {exc}") from exc
                raise

            conn.in_transaction, conn.owner = False, None
            try:
                await self._commit(conn)
            except Exception as exc:
                try:
                    await self._rollback(conn)
                except Exception as rollback_exc:
                    log.debug(f"Rollback after failed commit also failed: {rollback_exc}")
                raise TransactionError(f"Commit failed: {exc}") from exc

    async def transaction(self, conn: Connection, fn: Callable[[], Awaitable[T]]) -> T:
        async with self.transaction_scope(conn):
            return await fn()
