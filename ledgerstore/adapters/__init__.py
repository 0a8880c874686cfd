"""
Backend adapters.

Usage:
    from ledgerstore.adapters import BackendKind, create_adapter

    adapter = create_adapter(BackendKind.EMBEDDED)
    conn = await adapter.open("/tmp/budget.sqlite")
    rows = await adapter.query(conn, "SELECT * FROM accounts WHERE tombstone = ?", [0], want_rows=True)
    await adapter.close(conn)
"""

from typing import Union

from .base import Adapter, BackendKind, Connection, QueryResult, Row
from .postgres import PostgresAdapter
from .sqlite import SQLiteAdapter


def create_adapter(kind: Union[BackendKind, str]) -> Adapter:
    kind = BackendKind(kind)
    if kind is BackendKind.NETWORKED:
        return PostgresAdapter()
    return SQLiteAdapter()


__all__ = [
    'Adapter',
    'BackendKind',
    'Connection',
    'PostgresAdapter',
    'QueryResult',
    'Row',
    'SQLiteAdapter',
    'create_adapter',
]
