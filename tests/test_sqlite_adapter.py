"""
Tests for the embedded backend adapter

Covers:
- open/close lifecycle and status
- Parameterized queries, row dicts and affected row counts
- Transaction commit, rollback and nesting
- Statements from other tasks wait for an open transaction
- Catalog helpers
- Custom SQL functions
"""

import asyncio

import pytest

from ledgerstore.adapters import BackendKind, SQLiteAdapter, create_adapter
from ledgerstore.adapters.sqlite import like_to_regex, normalise, unicode_like
from ledgerstore.errors import DatabaseConnectionError, QueryError, TransactionError


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_open_creates_file_and_parents(self, temp_dir):
        path = temp_dir / "nested" / "dir" / "db.sqlite"
        adapter = SQLiteAdapter()
        conn = await adapter.open(path)
        try:
            assert path.exists()
            assert conn.kind is BackendKind.EMBEDDED
            assert await adapter.status(conn) == {"adapter": "sqlite", "initialized": True}
        finally:
            await adapter.close(conn)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, db_path):
        adapter = SQLiteAdapter()
        conn = await adapter.open(db_path)
        await adapter.close(conn)
        await adapter.close(conn)
        assert conn.closed
        assert (await adapter.status(conn))["initialized"] is False

    @pytest.mark.asyncio
    async def test_open_directory_fails(self, temp_dir):
        with pytest.raises(DatabaseConnectionError):
            await SQLiteAdapter().open(temp_dir)

    @pytest.mark.asyncio
    async def test_open_empty_path_fails(self):
        with pytest.raises(DatabaseConnectionError):
            await SQLiteAdapter().open("")

    @pytest.mark.asyncio
    async def test_query_after_close_fails(self, db_path):
        adapter = SQLiteAdapter()
        conn = await adapter.open(db_path)
        await adapter.close(conn)
        with pytest.raises(QueryError):
            await adapter.query(conn, "SELECT 1")

    def test_factory(self):
        assert isinstance(create_adapter("sqlite"), SQLiteAdapter)
        assert create_adapter(BackendKind.NETWORKED).kind is BackendKind.NETWORKED


class TestQuery:
    @pytest.mark.asyncio
    async def test_rows_and_rowcount(self, sqlite_conn):
        adapter, conn = sqlite_conn
        await adapter.query(conn, "CREATE TABLE t (id TEXT PRIMARY KEY, n INTEGER)")
        assert await adapter.query(conn, "INSERT INTO t VALUES (?, ?)", ["a", 1]) == 1
        await adapter.query(conn, "INSERT INTO t VALUES (?, ?)", ["b", 2])

        rows = await adapter.query(conn, "SELECT id, n FROM t ORDER BY id", want_rows=True)
        assert rows == [{"id": "a", "n": 1}, {"id": "b", "n": 2}]
        assert list(rows[0].keys()) == ["id", "n"]

        assert await adapter.query(conn, "UPDATE t SET n = n + 1") == 2

    @pytest.mark.asyncio
    async def test_error_wrapped(self, sqlite_conn):
        adapter, conn = sqlite_conn
        with pytest.raises(QueryError) as exc_info:
            await adapter.query(conn, "SELECT * FROM missing_table")
        assert exc_info.value.sql == "SELECT * FROM missing_table"
        assert exc_info.value.__cause__ is not None

    @pytest.mark.asyncio
    async def test_placeholders(self, sqlite_conn):
        adapter, _ = sqlite_conn
        assert adapter.placeholder(3) == "?"
        assert adapter.placeholders(3) == "?, ?, ?"
        assert adapter.quote_ident('we"ird') == '"we""ird"'

    @pytest.mark.asyncio
    async def test_execute_script(self, sqlite_conn):
        adapter, conn = sqlite_conn
        await adapter.execute_script(conn, [
            "CREATE TABLE a (id TEXT)",
            "CREATE TABLE b (id TEXT)",
        ])
        assert sorted(await adapter.list_tables(conn)) == ["a", "b"]


class TestTransactions:
    @pytest.mark.asyncio
    async def test_commit(self, sqlite_conn):
        adapter, conn = sqlite_conn
        await adapter.query(conn, "CREATE TABLE t (id TEXT)")

        async def work():
            await adapter.query(conn, "INSERT INTO t VALUES (?)", ["x"])
            return "done"

        assert await adapter.transaction(conn, work) == "done"
        rows = await adapter.query(conn, "SELECT COUNT(*) AS c FROM t", want_rows=True)
        assert rows[0]["c"] == 1
        assert conn.in_transaction is False

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, sqlite_conn):
        adapter, conn = sqlite_conn
        await adapter.query(conn, "CREATE TABLE t (id TEXT)")

        with pytest.raises(ValueError):
            async with adapter.transaction_scope(conn):
                await adapter.query(conn, "INSERT INTO t VALUES (?)", ["x"])
                raise ValueError("boom")

        rows = await adapter.query(conn, "SELECT COUNT(*) AS c FROM t", want_rows=True)
        assert rows[0]["c"] == 0
        assert conn.in_transaction is False

    @pytest.mark.asyncio
    async def test_nested_transaction_rejected(self, sqlite_conn):
        adapter, conn = sqlite_conn
        await adapter.query(conn, "CREATE TABLE t (id TEXT)")

        with pytest.raises(TransactionError):
            async with adapter.transaction_scope(conn):
                await adapter.query(conn, "INSERT INTO t VALUES (?)", ["x"])
                async with adapter.transaction_scope(conn):
                    pass

        rows = await adapter.query(conn, "SELECT COUNT(*) AS c FROM t", want_rows=True)
        assert rows[0]["c"] == 0

    @pytest.mark.asyncio
    async def test_other_task_waits_for_transaction(self, sqlite_conn):
        adapter, conn = sqlite_conn
        await adapter.query(conn, "CREATE TABLE t (id TEXT)")
        inside = asyncio.Event()
        counts = []

        async def reader():
            await inside.wait()
            rows = await adapter.query(conn, "SELECT COUNT(*) AS c FROM t", want_rows=True)
            counts.append(rows[0]["c"])

        task = asyncio.create_task(reader())
        async with adapter.transaction_scope(conn):
            await adapter.query(conn, "INSERT INTO t VALUES (?)", ["x"])
            inside.set()
            await asyncio.sleep(0.05)
            assert counts == []
            await adapter.query(conn, "INSERT INTO t VALUES (?)", ["y"])
        await task
        assert counts == [2]

    @pytest.mark.asyncio
    async def test_concurrent_transactions_run_in_turn(self, sqlite_conn):
        adapter, conn = sqlite_conn
        await adapter.query(conn, "CREATE TABLE t (id TEXT)")

        async def write(value):
            async with adapter.transaction_scope(conn):
                await adapter.query(conn, "INSERT INTO t VALUES (?)", [value])
                await asyncio.sleep(0.01)

        await asyncio.gather(write("a"), write("b"), write("c"))
        rows = await adapter.query(conn, "SELECT COUNT(*) AS c FROM t", want_rows=True)
        assert rows[0]["c"] == 3
        assert conn.in_transaction is False

    @pytest.mark.asyncio
    async def test_usable_after_rollback(self, sqlite_conn):
        adapter, conn = sqlite_conn
        await adapter.query(conn, "CREATE TABLE t (id TEXT PRIMARY KEY)")
        with pytest.raises(QueryError):
            async with adapter.transaction_scope(conn):
                await adapter.query(conn, "INSERT INTO t VALUES (?)", ["x"])
                await adapter.query(conn, "INSERT INTO t VALUES (?)", ["x"])

        async with adapter.transaction_scope(conn):
            await adapter.query(conn, "INSERT INTO t VALUES (?)", ["y"])
        rows = await adapter.query(conn, "SELECT id FROM t", want_rows=True)
        assert rows == [{"id": "y"}]


class TestCatalog:
    @pytest.mark.asyncio
    async def test_describe_and_definition(self, sqlite_conn):
        adapter, conn = sqlite_conn
        await adapter.query(conn, "CREATE TABLE t (id TEXT PRIMARY KEY, amount integer, data BLOB)")
        assert await adapter.table_exists(conn, "t")
        assert not await adapter.table_exists(conn, "nope")
        assert await adapter.describe_columns(conn, "t") == {
            "id": "TEXT",
            "amount": "INTEGER",
            "data": "BLOB",
        }
        assert (await adapter.table_definition(conn, "t")).startswith("CREATE TABLE t")
        assert await adapter.table_definition(conn, "nope") == ""

    @pytest.mark.asyncio
    async def test_internal_tables_hidden(self, sqlite_conn):
        adapter, conn = sqlite_conn
        await adapter.query(conn, "CREATE TABLE t (id INTEGER PRIMARY KEY AUTOINCREMENT, v TEXT)")
        await adapter.query(conn, "INSERT INTO t (v) VALUES (?)", ["x"])
        assert await adapter.list_tables(conn) == ["t"]

    @pytest.mark.asyncio
    async def test_server_version(self, sqlite_conn):
        adapter, conn = sqlite_conn
        version = await adapter.server_version(conn)
        assert version.startswith("3.")


class TestCustomFunctions:
    def test_like_to_regex(self):
        assert like_to_regex("a%b?c.") == r"a.*b.c\."

    def test_python_helpers(self):
        assert normalise("Crème Brûlée") == "creme brulee"
        assert normalise(None) is None
        assert unicode_like("test%", "Testing") == 1
        assert unicode_like(None, "x") == 0

    @pytest.mark.asyncio
    async def test_registered_in_sql(self, sqlite_conn):
        adapter, conn = sqlite_conn
        rows = await adapter.query(
            conn,
            "SELECT NORMALISE(?) AS n, UNICODE_LOWER(?) AS lo, UNICODE_UPPER(?) AS up, "
            "UNICODE_LIKE(?, ?) AS l, REGEXP(?, ?) AS r",
            ["Tëst", "ÀB", "straße", "caf%", "CAFÉ au lait", "t.*t", "test"],
            want_rows=True,
        )
        assert rows[0] == {"n": "test", "lo": "àb", "up": "STRASSE", "l": 1, "r": 1}

    @pytest.mark.asyncio
    async def test_regexp_operator(self, sqlite_conn):
        adapter, conn = sqlite_conn
        await adapter.query(conn, "CREATE TABLE t (name TEXT)")
        for name in ("alpha", "beta", "alphabet"):
            await adapter.query(conn, "INSERT INTO t VALUES (?)", [name])
        rows = await adapter.query(conn, "SELECT name FROM t WHERE name REGEXP ? ORDER BY name", ["^alpha"], want_rows=True)
        assert [r["name"] for r in rows] == ["alpha", "alphabet"]
