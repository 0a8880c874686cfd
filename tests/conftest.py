"""Shared fixtures: temporary SQLite stores, open sessions, seeded budgets."""

import os
import shutil
import tempfile
from pathlib import Path

import pytest

from ledgerstore import config as cfg
from ledgerstore.adapters import SQLiteAdapter
from ledgerstore.config import DatabaseConfig, PostgresSettings, SQLiteSettings
from ledgerstore.session import StorageSession

PG_URL = os.environ.get("LEDGERSTORE_TEST_DATABASE_URL")

requires_postgres = pytest.mark.skipif(
    not PG_URL, reason="LEDGERSTORE_TEST_DATABASE_URL not set"
)


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def temp_dir():
    """Temporary directory, removed with everything in it (WAL files included)."""
    path = tempfile.mkdtemp(prefix="ledgerstore-")
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture(autouse=True)
def log_dir(temp_dir, monkeypatch):
    """Keep rotating log files out of the home directory."""
    monkeypatch.setattr(cfg, "LOG_DIR", temp_dir / "logs")
    return temp_dir / "logs"


@pytest.fixture
def db_path(temp_dir):
    return temp_dir / "db.sqlite"


def make_config(path: Path, **overrides) -> DatabaseConfig:
    return DatabaseConfig(adapter="sqlite", sqlite=SQLiteSettings(path=path), **overrides)


@pytest.fixture
def sqlite_config(db_path):
    return make_config(db_path)


@pytest.fixture
def pg_config():
    return DatabaseConfig(
        adapter="postgres",
        postgres=PostgresSettings(connection_string=PG_URL, connection_timeout_ms=5000),
        fallback_to_sqlite=False,
    )


@pytest.fixture
async def session(sqlite_config):
    s = StorageSession(sqlite_config)
    await s.open()
    yield s
    await s.close()


@pytest.fixture
async def sqlite_conn(db_path):
    """Raw adapter + connection, no schema."""
    adapter = SQLiteAdapter()
    conn = await adapter.open(db_path)
    yield adapter, conn
    await adapter.close(conn)


ACCOUNTS = [
    ("acct-1", "Checking", 0, 1.0),
    ("acct-2", "Savings", 0, 2.0),
    ("acct-3", "Credit Card", 1, 3.0),
]
CATEGORIES = [
    ("cat-1", "Groceries", "grp-1", 0),
    ("cat-2", "Rent", "grp-1", 0),
    ("cat-3", "Salary", "grp-2", 1),
]
TRANSACTIONS = [
    ("tx-1", "acct-1", "cat-1", -4520, 20240105, "Market"),
    ("tx-2", "acct-1", "cat-2", -120000, 20240101, "Landlord"),
    ("tx-3", "acct-2", "cat-3", 350000, 20240115, "Employer"),
]


async def seed_budget(session: StorageSession) -> None:
    """3 accounts, 3 categories, 3 transactions."""
    ph = session.placeholders
    async with session.transaction_scope():
        for row in ACCOUNTS:
            await session.run(
                f'INSERT INTO "accounts" ("id", "name", "offbudget", "sort_order", "tombstone") '
                f"VALUES ({ph(4)}, 0)",
                list(row),
            )
        for row in CATEGORIES:
            await session.run(
                f'INSERT INTO "categories" ("id", "name", "cat_group", "is_income", "tombstone") '
                f"VALUES ({ph(4)}, 0)",
                list(row),
            )
        for row in TRANSACTIONS:
            await session.run(
                f'INSERT INTO "transactions" ("id", "acct", "category", "amount", "date", "description", '
                f'"isParent", "tombstone") VALUES ({ph(6)}, 0, 0)',
                list(row),
            )


@pytest.fixture
async def seeded_source(temp_dir):
    """A SQLite budget file with schema and seed data, closed and ready to migrate."""
    path = temp_dir / "source.sqlite"
    s = StorageSession(make_config(path))
    await s.open()
    await seed_budget(s)
    await s.close()
    return path
