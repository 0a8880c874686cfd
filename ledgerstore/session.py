"""
StorageSession — the active backend as an explicit object.

Holds (kind, adapter, connection) for one logical session. Switching
backends is exclusive: the triple is replaced as a unit under an
asyncio.Lock, so a reader sees either the old backend, the new one, or no
open connection, never a kind that disagrees with its connection.

Usage:
    async with StorageSession(DatabaseConfig.from_env()) as session:
        rows = await session.all("SELECT * FROM accounts WHERE tombstone = 0")

    session = StorageSession(config)
    await session.open_with_fallback()     # PostgreSQL, else SQLite
    await session.switch_backend(BackendKind.EMBEDDED)
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

from .adapters import Adapter, BackendKind, Connection, Row, create_adapter
from .config import DatabaseConfig, validate_postgres_config
from .errors import ConfigurationError, DatabaseConnectionError, StorageError
from .schema import initialize_schema, is_schema_initialized

log = logging.getLogger("ledgerstore.session")

T = TypeVar("T")


class StorageSession:
    def __init__(
        self,
        config: Optional[DatabaseConfig] = None,
        kind: Optional[Union[BackendKind, str]] = None,
    ):
        self.config = config or DatabaseConfig.from_env()
        self._kind = BackendKind(kind or self.config.adapter)
        self._adapter: Adapter = create_adapter(self._kind)
        self._conn: Optional[Connection] = None
        self._lock = asyncio.Lock()
        self.last_error: Optional[str] = None
        self.schema_valid: Optional[bool] = None

    # ── state ─────────────────────────────────────

    @property
    def kind(self) -> BackendKind:
        return self._kind

    @property
    def adapter(self) -> Adapter:
        return self._adapter

    @property
    def connection(self) -> Optional[Connection]:
        return self._conn

    @property
    def is_open(self) -> bool:
        return self._conn is not None and not self._conn.closed

    def _require(self) -> Tuple[Adapter, Connection]:
        adapter, conn = self._adapter, self._conn
        if conn is None or conn.closed:
            raise StorageError(f"No open {self._kind.value} connection")
        return adapter, conn

    # ── lifecycle ─────────────────────────────────────

    async def _open_locked(self, kind: BackendKind) -> None:
        if kind is BackendKind.NETWORKED:
            problems = validate_postgres_config(self.config)
            if problems:
                self.last_error = "; ".join(problems)
                raise ConfigurationError(self.last_error)

        adapter = create_adapter(kind)
        try:
            conn = await adapter.open(self.config)
        except DatabaseConnectionError as exc:
            self.last_error = str(exc)
            raise

        try:
            if self.config.health_checks:
                await adapter.query(conn, "SELECT 1")
            if self.config.schema_validation:
                if not await is_schema_initialized(adapter, conn):
                    log.info(f"Initializing schema on {kind.value}")
                    await initialize_schema(adapter, conn)
                self.schema_valid = True
        except StorageError as exc:
            self.last_error = str(exc)
            await adapter.close(conn)
            raise

        self._kind, self._adapter, self._conn = kind, adapter, conn
        self.last_error = None
        log.info(f"Active backend: {kind.value} ({conn.description})")

    async def _close_locked(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            await self._adapter.close(conn)

    async def open(self) -> "StorageSession":
        async with self._lock:
            if not self.is_open:
                await self._open_locked(self._kind)
        return self

    async def open_with_fallback(self) -> "StorageSession":
        """Open the configured backend; fall back to SQLite if PostgreSQL is unreachable."""
        async with self._lock:
            if self.is_open:
                return self
            try:
                await self._open_locked(self._kind)
            except (DatabaseConnectionError, ConfigurationError) as exc:
                if self._kind is not BackendKind.NETWORKED or not self.config.fallback_to_sqlite:
                    raise
                log.warning(f"PostgreSQL unavailable, falling back to SQLite: {exc}")
                await self._open_locked(BackendKind.EMBEDDED)
        return self

    async def close(self) -> None:
        async with self._lock:
            await self._close_locked()

    async def switch_backend(self, kind: Union[BackendKind, str]) -> None:
        """Close the current connection, then open `kind`."""
        kind = BackendKind(kind)
        async with self._lock:
            if kind is self._kind and self.is_open:
                return
            previous = self._kind
            await self._close_locked()
            await self._open_locked(kind)
            log.info(f"Switched backend {previous.value} -> {kind.value}")

    async def __aenter__(self) -> "StorageSession":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ── delegation ─────────────────────────────────────

    async def query(self, sql: str, params: Sequence[Any] = (), want_rows: bool = False):
        adapter, conn = self._require()
        return await adapter.query(conn, sql, params, want_rows=want_rows)

    async def all(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        return await self.query(sql, params, want_rows=True)

    async def first(self, sql: str, params: Sequence[Any] = ()) -> Optional[Row]:
        rows = await self.all(sql, params)
        return rows[0] if rows else None

    async def run(self, sql: str, params: Sequence[Any] = ()) -> int:
        return await self.query(sql, params)

    def transaction_scope(self):
        adapter, conn = self._require()
        return adapter.transaction_scope(conn)

    async def transaction(self, fn: Callable[[], Awaitable[T]]) -> T:
        adapter, conn = self._require()
        return await adapter.transaction(conn, fn)

    def placeholder(self, index: int) -> str:
        return self._adapter.placeholder(index)

    def placeholders(self, count: int, start: int = 1) -> str:
        return self._adapter.placeholders(count, start)

    def quote_ident(self, name: str) -> str:
        return self._adapter.quote_ident(name)

    async def status(self) -> Dict[str, Any]:
        info = await self._adapter.status(self._conn)
        info["error"] = self.last_error
        info["schema_valid"] = self.schema_valid
        return info
