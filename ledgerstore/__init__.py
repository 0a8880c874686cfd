"""
ledgerstore — dual-backend storage for a personal-finance ledger.

  adapters     uniform async interface over SQLite (aiosqlite) and PostgreSQL (asyncpg)
  session      the active backend as an explicit object
  schema       budget + sync tables, emitted per dialect
  translator   SQLite CREATE TABLE -> PostgreSQL
  migration    batched SQLite -> PostgreSQL copy, dry run, validation, backup
  crdt         per-cell last-writer-wins ingestion of replicated edits
  health       health checks and a monitoring loop
"""

from .adapters import BackendKind, create_adapter
from .config import DatabaseConfig
from .crdt import CRDTIngestor, CRDTMessage
from .errors import (
    CircuitBreakerTripped,
    ConfigurationError,
    DatabaseConnectionError,
    MalformedMessageError,
    QueryError,
    StorageError,
    TransactionError,
    ValidationMismatch,
)
from .health import HealthMonitor, HealthSnapshot, HealthStatus
from .migration import (
    MigrationOptions,
    MigrationProgress,
    MigrationResult,
    Migrator,
    create_sqlite_backup,
    migrate_sqlite_to_postgres,
)
from .session import StorageSession
from .timestamp import Clock, Timestamp

__version__ = "0.1.0"

__all__ = [
    'BackendKind',
    'CRDTIngestor',
    'CRDTMessage',
    'CircuitBreakerTripped',
    'Clock',
    'ConfigurationError',
    'DatabaseConfig',
    'DatabaseConnectionError',
    'HealthMonitor',
    'HealthSnapshot',
    'HealthStatus',
    'MalformedMessageError',
    'MigrationOptions',
    'MigrationProgress',
    'MigrationResult',
    'Migrator',
    'QueryError',
    'StorageError',
    'StorageSession',
    'Timestamp',
    'TransactionError',
    'ValidationMismatch',
    'create_adapter',
    'create_sqlite_backup',
    'migrate_sqlite_to_postgres',
]
