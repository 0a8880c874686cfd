"""
Schema definitions for the budget store.

Tables are described once as Table/Column records and emitted per dialect,
rather than hand-maintaining two DDL files that drift apart:

- accounts, payees, category_groups, categories, transactions
      Mutable entities. Every row carries a tombstone flag (0 alive, 1 deleted).
- messages_crdt
      Every replicated edit ever applied, keyed by its unique timestamp.
      The newest timestamp per (dataset, row, column) is the cell's current version.
- messages_clock
      Persisted hybrid logical clock of this device.
- db_version
      Schema version marker.

Identifiers are always emitted double-quoted so mixed-case column names
(isParent) survive on PostgreSQL exactly as they are spelled on SQLite.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from .adapters.base import Adapter, BackendKind, Connection
from .errors import QueryError

log = logging.getLogger("ledgerstore.schema")

SCHEMA_VERSION = 1

# Logical type → dialect type
_TYPES = {
    BackendKind.EMBEDDED: {"SERIAL": "INTEGER", "BLOB": "BLOB", "TIMESTAMP": "DATETIME"},
    BackendKind.NETWORKED: {"SERIAL": "SERIAL", "BLOB": "BYTEA", "TIMESTAMP": "TIMESTAMP"},
}


def quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


@dataclass
class Column:
    name: str
    type: str = "TEXT"
    primary_key: bool = False
    not_null: bool = False
    unique: bool = False
    default: Optional[str] = None

    def ddl(self, kind: BackendKind) -> str:
        sql_type = _TYPES[kind].get(self.type, self.type)
        parts = [quote(self.name), sql_type]
        if self.primary_key:
            parts.append("PRIMARY KEY")
            if self.type == "SERIAL" and kind is BackendKind.EMBEDDED:
                parts.append("AUTOINCREMENT")
        if self.not_null:
            parts.append("NOT NULL")
        if self.unique:
            parts.append("UNIQUE")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        return " ".join(parts)


@dataclass
class Table:
    name: str
    columns: List[Column] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def ddl(self, kind: BackendKind) -> str:
        body = ",\n    ".join(c.ddl(kind) for c in self.columns)
        return f"CREATE TABLE IF NOT EXISTS {quote(self.name)} (\n    {body}\n)"


@dataclass
class Index:
    name: str
    table: str
    columns: Sequence[str]
    where: Optional[str] = None

    def ddl(self, kind: BackendKind) -> str:
        cols = ", ".join(quote(c) for c in self.columns)
        sql = f"CREATE INDEX IF NOT EXISTS {quote(self.name)} ON {quote(self.table)} ({cols})"
        if self.where:
            sql += f" WHERE {self.where}"
        return sql


def _id() -> Column:
    return Column("id", "TEXT", primary_key=True)


def _tombstone() -> Column:
    return Column("tombstone", "INTEGER", default="0")


TABLES: List[Table] = [
    Table("accounts", [
        _id(),
        Column("account_id"),
        Column("name"),
        Column("balance_current", "INTEGER"),
        Column("mask"),
        Column("official_name"),
        Column("type"),
        Column("subtype"),
        Column("bank"),
        Column("offbudget", "INTEGER", default="0"),
        Column("closed", "INTEGER", default="0"),
        Column("sort_order", "REAL"),
        _tombstone(),
        Column("last_reconciled"),
    ]),
    Table("payees", [
        _id(),
        Column("name"),
        Column("category"),
        Column("transfer_acct"),
        _tombstone(),
        Column("favorite", "INTEGER", default="0"),
        Column("learn_categories", "INTEGER", default="1"),
    ]),
    Table("category_groups", [
        _id(),
        Column("name"),
        Column("is_income", "INTEGER", default="0"),
        Column("sort_order", "REAL"),
        Column("hidden", "INTEGER", default="0"),
        _tombstone(),
    ]),
    Table("categories", [
        _id(),
        Column("name"),
        Column("is_income", "INTEGER", default="0"),
        Column("hidden", "INTEGER", default="0"),
        Column("cat_group"),
        Column("goal_def"),
        Column("sort_order", "REAL"),
        _tombstone(),
    ]),
    Table("transactions", [
        _id(),
        Column("isParent", "INTEGER", default="0"),
        Column("isChild", "INTEGER", default="0"),
        Column("parent_id"),
        Column("acct"),
        Column("category"),
        Column("amount", "INTEGER", default="0"),
        Column("description"),
        Column("notes"),
        Column("date", "INTEGER"),
        Column("financial_id"),
        Column("imported_description"),
        Column("transferred_id"),
        Column("sort_order", "REAL"),
        Column("cleared", "INTEGER", default="1"),
        Column("reconciled", "INTEGER", default="0"),
        _tombstone(),
        Column("schedule"),
    ]),
    Table("messages_crdt", [
        Column("id", "SERIAL", primary_key=True),
        Column("timestamp", "TEXT", not_null=True, unique=True),
        Column("dataset", "TEXT", not_null=True),
        Column("row", "TEXT", not_null=True),
        Column("column", "TEXT", not_null=True),
        Column("value", "TEXT", not_null=True),
    ]),
    Table("messages_clock", [
        Column("id", "INTEGER", primary_key=True),
        Column("clock"),
    ]),
    Table("db_version", [
        Column("version", "INTEGER", primary_key=True),
        Column("applied_at"),
    ]),
]

INDEXES: List[Index] = [
    Index("idx_accounts_tombstone", "accounts", ["tombstone"], where='"tombstone" = 0'),
    Index("idx_payees_tombstone", "payees", ["tombstone"], where='"tombstone" = 0'),
    Index("idx_categories_tombstone", "categories", ["tombstone"], where='"tombstone" = 0'),
    Index("idx_transactions_tombstone", "transactions", ["tombstone"], where='"tombstone" = 0'),
    Index("idx_transactions_acct", "transactions", ["acct"]),
    Index("idx_messages_crdt_cell", "messages_crdt", ["dataset", "row", "column", "timestamp"]),
]

VIEWS = {
    "v_transactions_alive": 'SELECT * FROM "transactions" WHERE COALESCE("tombstone", 0) = 0',
}

ENTITY_TABLES = ["accounts", "payees", "category_groups", "categories", "transactions"]
CORE_TABLES = ["accounts", "transactions", "categories", "payees"]
ESSENTIAL_TABLES = [
    "accounts",
    "transactions",
    "categories",
    "category_groups",
    "payees",
    "messages_crdt",
    "messages_clock",
]
REQUIRED_FUNCTIONS = ["normalise", "regexp", "unicode_like", "unicode_lower", "unicode_upper"]

POSTGRES_FUNCTIONS = [
    """CREATE OR REPLACE FUNCTION UNICODE_LOWER(text_input TEXT)
RETURNS TEXT AS $$
BEGIN
  IF text_input IS NULL THEN
    RETURN NULL;
  END IF;
  RETURN LOWER(text_input);
END;
$$ LANGUAGE plpgsql IMMUTABLE""",
    """CREATE OR REPLACE FUNCTION UNICODE_UPPER(text_input TEXT)
RETURNS TEXT AS $$
BEGIN
  IF text_input IS NULL THEN
    RETURN NULL;
  END IF;
  RETURN UPPER(text_input);
END;
$$ LANGUAGE plpgsql IMMUTABLE""",
    """CREATE OR REPLACE FUNCTION UNICODE_LIKE(pattern TEXT, text_value TEXT)
RETURNS INTEGER AS $$
DECLARE
  regex_pattern TEXT;
BEGIN
  IF pattern IS NULL THEN
    RETURN 0;
  END IF;
  IF text_value IS NULL THEN
    text_value := '';
  END IF;
  regex_pattern := regexp_replace(pattern, '([.*+^${}()|\\[\\]\\\\])', '\\\\\\1', 'g');
  regex_pattern := replace(regex_pattern, '?', '.');
  regex_pattern := replace(regex_pattern, '%', '.*');
  RETURN CASE WHEN text_value ~* regex_pattern THEN 1 ELSE 0 END;
END;
$$ LANGUAGE plpgsql IMMUTABLE""",
    """CREATE OR REPLACE FUNCTION REGEXP(pattern TEXT, text_input TEXT)
RETURNS INTEGER AS $$
BEGIN
  IF text_input IS NULL THEN
    text_input := '';
  END IF;
  RETURN CASE WHEN text_input ~ pattern THEN 1 ELSE 0 END;
END;
$$ LANGUAGE plpgsql IMMUTABLE""",
    """CREATE OR REPLACE FUNCTION NORMALISE(text_input TEXT)
RETURNS TEXT AS $$
BEGIN
  IF text_input IS NULL THEN
    RETURN NULL;
  END IF;
  RETURN LOWER(unaccent(text_input));
END;
$$ LANGUAGE plpgsql STABLE""",
]


def get_table(name: str) -> Optional[Table]:
    for table in TABLES:
        if table.name == name:
            return table
    return None


def schema_statements(kind: BackendKind) -> List[str]:
    """All DDL for one dialect, in dependency order."""
    statements = [t.ddl(kind) for t in TABLES]
    statements += [i.ddl(kind) for i in INDEXES]
    for name, select in VIEWS.items():
        if kind is BackendKind.NETWORKED:
            statements.append(f"CREATE OR REPLACE VIEW {quote(name)} AS {select}")
        else:
            statements.append(f"CREATE VIEW IF NOT EXISTS {quote(name)} AS {select}")
    if kind is BackendKind.NETWORKED:
        statements += POSTGRES_FUNCTIONS
    return statements


async def initialize_schema(adapter: Adapter, conn: Connection) -> None:
    """Create every table, index, view and function. Safe to re-run."""
    if adapter.kind is BackendKind.NETWORKED:
        try:
            await adapter.query(conn, "CREATE EXTENSION IF NOT EXISTS unaccent")
        except QueryError as exc:
            log.warning(f"unaccent extension unavailable, NORMALISE() will fail: {exc}")

    async with adapter.transaction_scope(conn):
        for statement in schema_statements(adapter.kind):
            await adapter.query(conn, "SAVEPOINT schema_statement")
            try:
                await adapter.query(conn, statement)
            except QueryError as exc:
                await adapter.query(conn, "ROLLBACK TO SAVEPOINT schema_statement")
                if not exc.is_already_exists:
                    raise
                log.debug(f"Schema object already exists: {exc}")
            await adapter.query(conn, "RELEASE SAVEPOINT schema_statement")

        rows = await adapter.query(
            conn, 'SELECT "version" FROM "db_version" ORDER BY "version" DESC LIMIT 1', want_rows=True
        )
        if not rows:
            await adapter.query(
                conn,
                f'INSERT INTO "db_version" ("version", "applied_at") VALUES ({adapter.placeholders(2)})',
                [SCHEMA_VERSION, datetime.now(timezone.utc).isoformat()],
            )

    log.info(f"Schema v{SCHEMA_VERSION} initialized on {adapter.kind.value}")


async def is_schema_initialized(adapter: Adapter, conn: Connection) -> bool:
    """Core tables present (and, on PostgreSQL, the custom functions)."""
    for table in CORE_TABLES:
        if not await adapter.table_exists(conn, table):
            return False
    if adapter.kind is BackendKind.NETWORKED:
        existing = set(await adapter.list_functions(conn))
        if not set(REQUIRED_FUNCTIONS) <= existing:
            return False
    return True


async def drop_schema(adapter: Adapter, conn: Connection) -> None:
    """Drop everything initialize_schema() creates."""
    cascade = " CASCADE" if adapter.kind is BackendKind.NETWORKED else ""
    async with adapter.transaction_scope(conn):
        for name in VIEWS:
            await adapter.query(conn, f"DROP VIEW IF EXISTS {quote(name)}{cascade}")
        for table in reversed(TABLES):
            await adapter.query(conn, f"DROP TABLE IF EXISTS {quote(table.name)}{cascade}")
        if adapter.kind is BackendKind.NETWORKED:
            for func in REQUIRED_FUNCTIONS:
                await adapter.query(conn, f"DROP FUNCTION IF EXISTS {func} CASCADE")
    log.info(f"Schema dropped on {adapter.kind.value}")
