"""
Health Monitor — probes the session's active backend.

Checks (each produces pass / warn / fail):
  connectivity        SELECT 1
  database_version    server version; PostgreSQL older than 12 warns
  essential_tables    budget and sync tables present
  integrity           PRAGMA integrity_check (SQLite), connection stats (PostgreSQL)
  performance         a representative COUNT(*); slow warns, very slow fails
  sync_state          persisted sync clock present
  required_functions  custom SQL functions (PostgreSQL only)

Overall status: unhealthy if any check fails, degraded if any warns,
healthy otherwise. Nothing here raises; failures live in the snapshot.

Usage:
    monitor = HealthMonitor(session)
    ok = await monitor.quick_check()
    snapshot = await monitor.full_check()
    monitor.start(interval=60, observer=lambda s: print(s.overall))
    monitor.stop()
"""

import asyncio
import inspect
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from . import config as cfg
from .adapters import Adapter, BackendKind, Connection
from .errors import StorageError
from .schema import ESSENTIAL_TABLES, REQUIRED_FUNCTIONS
from .session import StorageSession

log = logging.getLogger("ledgerstore.health")


class CheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthCheckResult:
    name: str
    status: CheckStatus
    message: str
    duration_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HealthSnapshot:
    adapter: str
    overall: HealthStatus
    checks: Tuple[HealthCheckResult, ...]
    timestamp: datetime

    def check(self, name: str) -> Optional[HealthCheckResult]:
        for result in self.checks:
            if result.name == name:
                return result
        return None

    @property
    def summary(self) -> Dict[str, Any]:
        return {
            "passed": sum(1 for c in self.checks if c.status is CheckStatus.PASS),
            "failed": sum(1 for c in self.checks if c.status is CheckStatus.FAIL),
            "warnings": sum(1 for c in self.checks if c.status is CheckStatus.WARN),
            "total_duration_ms": round(sum(c.duration_ms for c in self.checks), 2),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adapter": self.adapter,
            "overall": self.overall.value,
            "timestamp": self.timestamp.isoformat(),
            "summary": self.summary,
            "checks": [
                {
                    "name": c.name,
                    "status": c.status.value,
                    "message": c.message,
                    "duration_ms": c.duration_ms,
                    "details": c.details,
                }
                for c in self.checks
            ],
        }


def overall_status(checks: List[HealthCheckResult]) -> HealthStatus:
    if any(c.status is CheckStatus.FAIL for c in checks):
        return HealthStatus.UNHEALTHY
    if any(c.status is CheckStatus.WARN for c in checks):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


CheckOutcome = Tuple[CheckStatus, str, Dict[str, Any]]
Observer = Callable[[HealthSnapshot], Union[None, Awaitable[None]]]


# ── individual checks ─────────────────────────────────────

async def check_connectivity(adapter: Adapter, conn: Connection) -> CheckOutcome:
    rows = await adapter.query(conn, "SELECT 1 AS test", want_rows=True)
    if rows and rows[0]["test"] == 1:
        return CheckStatus.PASS, "Database connection successful", {}
    return CheckStatus.FAIL, "Unexpected response to SELECT 1", {"rows": rows}


async def check_database_version(adapter: Adapter, conn: Connection) -> CheckOutcome:
    version = await adapter.server_version(conn)
    details = {"version": version}
    if adapter.kind is BackendKind.NETWORKED:
        m = re.search(r"PostgreSQL (\d+)", version)
        major = int(m.group(1)) if m else 0
        details["major"] = major
        if major < 12:
            return CheckStatus.WARN, f"PostgreSQL {major} is older than the recommended 12+", details
        return CheckStatus.PASS, f"PostgreSQL {major}", details
    return CheckStatus.PASS, f"SQLite {version}", details


async def check_essential_tables(adapter: Adapter, conn: Connection) -> CheckOutcome:
    existing = set(await adapter.list_tables(conn))
    missing = [t for t in ESSENTIAL_TABLES if t not in existing]
    details = {"missing": missing, "found": len(ESSENTIAL_TABLES) - len(missing)}
    if not missing:
        return CheckStatus.PASS, "All essential tables present", details
    if len(missing) < len(ESSENTIAL_TABLES) / 2:
        return CheckStatus.WARN, f"Missing tables: {', '.join(missing)}", details
    return CheckStatus.FAIL, f"Missing tables: {', '.join(missing)}", details


async def check_integrity(adapter: Adapter, conn: Connection) -> CheckOutcome:
    if adapter.kind is BackendKind.EMBEDDED:
        rows = await adapter.query(conn, "PRAGMA integrity_check", want_rows=True)
        results = [next(iter(r.values())) for r in rows]
        if results == ["ok"]:
            return CheckStatus.PASS, "Integrity check passed", {}
        return CheckStatus.FAIL, "Integrity check reported problems", {"problems": results[:10]}

    rows = await adapter.query(
        conn,
        "SELECT COUNT(*) AS connections FROM pg_stat_activity WHERE datname = current_database()",
        want_rows=True,
    )
    connections = rows[0]["connections"]
    return CheckStatus.PASS, f"{connections} active connections", {"connections": connections}


async def check_performance(adapter: Adapter, conn: Connection) -> CheckOutcome:
    sql = "SELECT 1 AS test"
    if await adapter.table_exists(conn, "accounts"):
        sql = 'SELECT COUNT(*) AS count FROM "accounts"'
    started = time.perf_counter()
    await adapter.query(conn, sql, want_rows=True)
    elapsed_ms = (time.perf_counter() - started) * 1000
    details = {"query_ms": round(elapsed_ms, 2)}
    if elapsed_ms > cfg.SLOW_QUERY_FAIL_MS:
        return CheckStatus.FAIL, f"Query took {elapsed_ms:.0f}ms", details
    if elapsed_ms > cfg.SLOW_QUERY_WARN_MS:
        return CheckStatus.WARN, f"Slow query: {elapsed_ms:.0f}ms", details
    return CheckStatus.PASS, f"Query took {elapsed_ms:.1f}ms", details


async def check_sync_state(adapter: Adapter, conn: Connection) -> CheckOutcome:
    clock = await adapter.query(conn, 'SELECT COUNT(*) AS count FROM "messages_clock"', want_rows=True)
    messages = await adapter.query(conn, 'SELECT COUNT(*) AS count FROM "messages_crdt"', want_rows=True)
    details = {"messages": messages[0]["count"]}
    if clock[0]["count"] == 0:
        return CheckStatus.WARN, "No sync clock recorded", details
    return CheckStatus.PASS, f"{details['messages']} sync messages recorded", details


async def check_required_functions(adapter: Adapter, conn: Connection) -> CheckOutcome:
    existing = set(await adapter.list_functions(conn))
    missing = [f for f in REQUIRED_FUNCTIONS if f not in existing]
    if missing:
        return CheckStatus.FAIL, f"Missing functions: {', '.join(missing)}", {"missing": missing}
    return CheckStatus.PASS, "All custom functions present", {}


CHECKS = [
    ("connectivity", check_connectivity),
    ("database_version", check_database_version),
    ("essential_tables", check_essential_tables),
    ("integrity", check_integrity),
    ("performance", check_performance),
    ("sync_state", check_sync_state),
]


class HealthMonitor:
    def __init__(self, session: StorageSession):
        self.session = session
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._last: Optional[HealthSnapshot] = None

    @property
    def last_snapshot(self) -> Optional[HealthSnapshot]:
        return self._last

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def quick_check(self) -> bool:
        """Cheap liveness probe. Never raises."""
        try:
            rows = await self.session.query("SELECT 1 AS test", want_rows=True)
        except Exception as exc:
            log.debug(f"Quick check failed: {exc}")
            return False
        return bool(rows) and rows[0]["test"] == 1

    async def _run_check(self, name: str, check, adapter: Adapter, conn: Optional[Connection]) -> HealthCheckResult:
        started = time.perf_counter()
        try:
            if conn is None or conn.closed:
                raise StorageError(f"No open {adapter.kind.value} connection")
            status, message, details = await check(adapter, conn)
        except Exception as exc:
            status, message, details = CheckStatus.FAIL, f"{type(exc).__name__}: {exc}", {}
        duration = round((time.perf_counter() - started) * 1000, 2)
        log.debug(f"Health check {name}: {status.value} ({message})")
        return HealthCheckResult(name, status, message, duration, details)

    async def full_check(self) -> HealthSnapshot:
        """Run every check against the backend active right now."""
        adapter, conn = self.session.adapter, self.session.connection
        checks = list(CHECKS)
        if adapter.kind is BackendKind.NETWORKED:
            checks.append(("required_functions", check_required_functions))

        results = [await self._run_check(name, fn, adapter, conn) for name, fn in checks]
        snapshot = HealthSnapshot(
            adapter=adapter.kind.value,
            overall=overall_status(results),
            checks=tuple(results),
            timestamp=datetime.now(timezone.utc),
        )
        summary = snapshot.summary
        log.info(
            f"Health {snapshot.overall.value} on {snapshot.adapter}: "
            f"{summary['passed']} passed, {summary['warnings']} warnings, {summary['failed']} failed"
        )
        return snapshot

    async def connection_info(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "adapter": self.session.kind.value,
            "connected": self.session.is_open,
            "description": self.session.connection.description if self.session.connection else None,
        }
        if self.session.is_open:
            try:
                info["server_version"] = await self.session.adapter.server_version(self.session.connection)
            except Exception as exc:
                info["error"] = str(exc)
        if self._last is not None:
            info["last_status"] = self._last.overall.value
        return info

    # ── monitoring loop ─────────────────────────────────────

    def start(
        self,
        interval: float = cfg.HEALTH_INTERVAL_S,
        observer: Optional[Observer] = None,
        only_on_change: bool = False,
    ) -> None:
        """Probe now and then every `interval` seconds until stop()."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        if not self.session.config.health_checks:
            log.info("Health checks disabled, monitor not started")
            return
        self.stop()
        self._generation += 1
        self._task = asyncio.get_running_loop().create_task(
            self._loop(self._generation, interval, observer, only_on_change)
        )
        log.info(f"Health monitor started (every {interval}s)")

    def stop(self) -> None:
        """Stop immediately. A probe still in flight is discarded."""
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
            self._task = None
            log.info("Health monitor stopped")

    async def _loop(self, generation: int, interval: float, observer: Optional[Observer], only_on_change: bool):
        previous: Optional[HealthStatus] = None
        try:
            while generation == self._generation:
                snapshot = await self.full_check()
                if generation != self._generation:
                    return
                self._last = snapshot
                changed = previous is None or snapshot.overall is not previous
                previous = snapshot.overall
                if observer is not None and (changed or not only_on_change):
                    try:
                        result = observer(snapshot)
                        if inspect.isawaitable(result):
                            await result
                    except Exception:
                        log.exception("Health observer raised")
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            log.debug("Health monitor loop cancelled")
            raise
