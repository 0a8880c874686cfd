"""
Ledgerstore — Configuration

Backend selection and connection settings for the storage layer.
Reads from environment with sensible defaults.

Selection order:
  1. DATABASE_ADAPTER=sqlite|postgres (explicit override)
  2. ENABLE_POSTGRES=true
  3. SQLite (default)
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

log = logging.getLogger("ledgerstore.config")


def _flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() == "true"


def _int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning(f"Invalid integer for {name}={raw!r}, using {default}")
        return default


# ── Backend selection ─────────────────────────────────────
DATABASE_ADAPTER = os.environ.get("DATABASE_ADAPTER", "").strip().lower()
ENABLE_POSTGRES = _flag("ENABLE_POSTGRES", False)

# ── Embedded backend (SQLite) ─────────────────────────────
DATA_DIR = Path.home() / ".ledgerstore" / "data"
SQLITE_PATH = Path(os.environ.get("LEDGERSTORE_SQLITE_PATH", str(DATA_DIR / "db.sqlite")))
SQLITE_PRAGMAS: Dict[str, Union[str, int]] = {
    "journal_mode": "WAL",
    "synchronous": "NORMAL",
    "cache_size": 1000,
    "foreign_keys": 1,
    "temp_store": "MEMORY",
}

# ── Networked backend (PostgreSQL) ────────────────────────
DATABASE_URL = os.environ.get("DATABASE_URL")
POSTGRES_HOST = os.environ.get("POSTGRES_HOST", "localhost")
POSTGRES_PORT = _int("POSTGRES_PORT", 5432)
POSTGRES_DATABASE = os.environ.get("POSTGRES_DATABASE", "actual")
POSTGRES_USERNAME = os.environ.get("POSTGRES_USERNAME", "actual_user")
POSTGRES_PASSWORD = os.environ.get("POSTGRES_PASSWORD", "")
POSTGRES_SSL = _flag("POSTGRES_SSL", False)
POSTGRES_CONNECTION_TIMEOUT_MS = _int("POSTGRES_CONNECTION_TIMEOUT", 2000)

# ── Behaviour flags ───────────────────────────────────────
SCHEMA_VALIDATION = _flag("POSTGRES_SCHEMA_VALIDATION", True)
HEALTH_CHECKS_ENABLED = _flag("ENABLE_DATABASE_HEALTH_CHECKS", True)
FALLBACK_TO_SQLITE = _flag("POSTGRES_FALLBACK_TO_SQLITE", True)

# ── Migration ─────────────────────────────────────────────
MIGRATION_BATCH_SIZE = 1000
MIGRATION_BATCH_DELAY_S = 0.01
MIGRATION_MAX_ROW_ERRORS = 100

# ── Health monitor ────────────────────────────────────────
HEALTH_INTERVAL_S = _int("LEDGERSTORE_HEALTH_INTERVAL", 60)
SLOW_QUERY_WARN_MS = 5000
SLOW_QUERY_FAIL_MS = 10000

# ── Logs ──────────────────────────────────────────────────
LOG_DIR = Path(os.environ.get("LEDGERSTORE_LOG_DIR", str(Path.home() / ".ledgerstore" / "logs")))
LOG_LEVEL = os.environ.get("LEDGERSTORE_LOG_LEVEL", "INFO").upper()
LOG_CONSOLE_LEVEL = os.environ.get("LEDGERSTORE_LOG_CONSOLE_LEVEL", "WARNING").upper()
LOG_MAX_BYTES = _int("LEDGERSTORE_LOG_MAX_BYTES", 10_000_000)
LOG_BACKUP_COUNT = _int("LEDGERSTORE_LOG_BACKUPS", 5)


@dataclass
class SQLiteSettings:
    path: Path = SQLITE_PATH
    pragmas: Dict[str, Union[str, int]] = field(default_factory=lambda: dict(SQLITE_PRAGMAS))


@dataclass
class PostgresSettings:
    connection_string: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    database: str = "actual"
    username: str = "actual_user"
    password: str = ""
    ssl: bool = False
    connection_timeout_ms: int = 2000


@dataclass
class DatabaseConfig:
    """Resolved configuration for both backends."""
    adapter: str = "sqlite"
    sqlite: SQLiteSettings = field(default_factory=SQLiteSettings)
    postgres: Optional[PostgresSettings] = None
    schema_validation: bool = True
    health_checks: bool = True
    fallback_to_sqlite: bool = True

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        adapter = active_backend()
        return cls(
            adapter=adapter,
            sqlite=SQLiteSettings(),
            postgres=PostgresSettings(
                connection_string=DATABASE_URL,
                host=POSTGRES_HOST,
                port=POSTGRES_PORT,
                database=POSTGRES_DATABASE,
                username=POSTGRES_USERNAME,
                password=POSTGRES_PASSWORD,
                ssl=POSTGRES_SSL,
                connection_timeout_ms=POSTGRES_CONNECTION_TIMEOUT_MS,
            ),
            schema_validation=SCHEMA_VALIDATION,
            health_checks=HEALTH_CHECKS_ENABLED,
            fallback_to_sqlite=FALLBACK_TO_SQLITE,
        )


def active_backend() -> str:
    """Determine the active backend name ("sqlite" or "postgres") from the environment."""
    if DATABASE_ADAPTER:
        if DATABASE_ADAPTER in ("sqlite", "postgres"):
            return DATABASE_ADAPTER
        log.warning(
            f"Invalid DATABASE_ADAPTER value: {DATABASE_ADAPTER}, "
            f"falling back to feature flag detection"
        )
    if ENABLE_POSTGRES:
        return "postgres"
    return "sqlite"


def validate_postgres_config(config: DatabaseConfig) -> List[str]:
    """Return a list of configuration problems (empty when usable)."""
    errors: List[str] = []
    pg = config.postgres
    if pg is None:
        return ["PostgreSQL configuration is missing"]

    if not pg.connection_string and (not pg.host or not pg.database or not pg.username):
        errors.append("PostgreSQL connection requires either DATABASE_URL or host/database/username")
    if pg.port < 1 or pg.port > 65535:
        errors.append("PostgreSQL port must be between 1 and 65535")
    if pg.connection_timeout_ms < 1000:
        errors.append("PostgreSQL connection timeout should be at least 1000ms")
    return errors


def postgres_dsn(pg: PostgresSettings) -> str:
    """Build a DSN, preferring an explicit connection string."""
    if pg.connection_string:
        return pg.connection_string

    auth = f"{pg.username}:{pg.password}" if pg.password else pg.username
    host = f"{pg.host}:{pg.port}" if pg.port != 5432 else pg.host
    dsn = f"postgresql://{auth}@{host}/{pg.database}"
    if pg.ssl:
        dsn += "?sslmode=require"
    return dsn


def redact_dsn(dsn: str) -> str:
    """Hide the password part of a DSN for logs."""
    scheme, sep, rest = dsn.partition("://")
    if not sep or "@" not in rest:
        return dsn
    auth, _, host = rest.rpartition("@")
    user = auth.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}" if ":" in auth else f"{scheme}://{user}@{host}"


def config_summary(config: DatabaseConfig) -> str:
    """Human readable summary, safe for logging."""
    lines = [f"Database Adapter: {config.adapter}"]
    if config.adapter == "sqlite":
        lines.append(f"  Path: {config.sqlite.path}")
    elif config.postgres:
        pg = config.postgres
        if pg.connection_string:
            lines.append(f"  DSN: {redact_dsn(pg.connection_string)}")
        else:
            lines.append(f"  Host: {pg.host}:{pg.port}")
            lines.append(f"  Database: {pg.database}")
            lines.append(f"  Username: {pg.username}")
        lines.append(f"  SSL: {'enabled' if pg.ssl else 'disabled'}")
        lines.append(f"  Fallback to SQLite: {'enabled' if config.fallback_to_sqlite else 'disabled'}")
    lines.append(f"  Health Checks: {'enabled' if config.health_checks else 'disabled'}")
    lines.append(f"  Schema Validation: {'enabled' if config.schema_validation else 'disabled'}")
    return "\n".join(lines)
