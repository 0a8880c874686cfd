"""
Storage error taxonomy.

Driver exceptions (sqlite3, asyncpg, socket errors) are wrapped into these
classes at the adapter boundary so callers never need to import a driver
to handle a failure.
"""

from typing import Optional


class StorageError(Exception):
    pass


class DatabaseConnectionError(StorageError):
    """Opening or closing a backend failed. Not retried automatically."""


class ConfigurationError(StorageError):
    pass


class QueryError(StorageError):
    """A single statement failed."""

    def __init__(self, message: str, sql: Optional[str] = None):
        super().__init__(message)
        self.sql = sql

    @property
    def is_already_exists(self) -> bool:
        return "already exists" in str(self).lower()


class TransactionError(StorageError):
    """Transaction could not be started, committed or rolled back."""


class ValidationMismatch(StorageError):
    pass


class CircuitBreakerTripped(StorageError):
    """Too many row-level failures while copying one table."""

    def __init__(self, table: str, error_count: int):
        super().__init__(
            f"Too many errors migrating {table} ({error_count} row failures)"
        )
        self.table = table
        self.error_count = error_count


class MalformedMessageError(StorageError):
    pass
