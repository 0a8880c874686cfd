"""
Tests for ledgerstore.health

Covers:
- Quick liveness probe
- Full check statuses on healthy, degraded and broken stores
- Snapshot summary and serialization
- Periodic monitor: start/stop, stale probes, observers
- Monitor and ingestion sharing one connection
"""

import asyncio

import pytest

from ledgerstore.crdt import CRDTIngestor, CRDTMessage
from ledgerstore.health import (
    CheckStatus,
    HealthCheckResult,
    HealthMonitor,
    HealthStatus,
    overall_status,
)
from ledgerstore.session import StorageSession

from .conftest import make_config


@pytest.fixture
def monitor(session):
    m = HealthMonitor(session)
    yield m
    m.stop()


async def with_clock(session):
    await CRDTIngestor(session).load_clock()


class TestQuickCheck:
    @pytest.mark.asyncio
    async def test_open_session(self, monitor):
        assert await monitor.quick_check() is True

    @pytest.mark.asyncio
    async def test_closed_session(self, monitor, session):
        await session.close()
        assert await monitor.quick_check() is False


class TestFullCheck:
    @pytest.mark.asyncio
    async def test_fresh_store_is_degraded_until_clock_saved(self, monitor, session):
        snapshot = await monitor.full_check()
        assert snapshot.adapter == "sqlite"
        assert snapshot.overall is HealthStatus.DEGRADED
        assert snapshot.check("sync_state").status is CheckStatus.WARN

        await with_clock(session)
        snapshot = await monitor.full_check()
        assert snapshot.overall is HealthStatus.HEALTHY, snapshot.to_dict()
        names = [c.name for c in snapshot.checks]
        assert names == [
            "connectivity",
            "database_version",
            "essential_tables",
            "integrity",
            "performance",
            "sync_state",
        ]
        assert snapshot.check("required_functions") is None

    @pytest.mark.asyncio
    async def test_missing_sync_table(self, monitor, session):
        await with_clock(session)
        await session.run('DROP TABLE "messages_clock"')

        snapshot = await monitor.full_check()
        tables = snapshot.check("essential_tables")
        assert tables.status is CheckStatus.WARN
        assert tables.details["missing"] == ["messages_clock"]
        assert snapshot.check("sync_state").status is CheckStatus.FAIL
        assert snapshot.overall is HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_empty_database_fails_tables(self, db_path):
        async with StorageSession(make_config(db_path, schema_validation=False)) as session:
            snapshot = await HealthMonitor(session).full_check()
        assert snapshot.check("essential_tables").status is CheckStatus.FAIL
        assert snapshot.check("connectivity").status is CheckStatus.PASS

    @pytest.mark.asyncio
    async def test_closed_session_reports_without_raising(self, monitor, session):
        await session.close()
        snapshot = await monitor.full_check()
        assert snapshot.overall is HealthStatus.UNHEALTHY
        assert all(c.status is CheckStatus.FAIL for c in snapshot.checks)
        assert "No open sqlite connection" in snapshot.check("connectivity").message

    @pytest.mark.asyncio
    async def test_summary_and_dict(self, monitor, session):
        await with_clock(session)
        snapshot = await monitor.full_check()
        summary = snapshot.summary
        assert summary["passed"] == 6
        assert summary["failed"] == 0
        assert summary["warnings"] == 0
        assert summary["total_duration_ms"] >= 0

        data = snapshot.to_dict()
        assert data["overall"] == "healthy"
        assert data["adapter"] == "sqlite"
        assert data["checks"][0]["name"] == "connectivity"
        assert data["checks"][0]["status"] == "pass"

    @pytest.mark.asyncio
    async def test_connection_info(self, monitor, session):
        info = await monitor.connection_info()
        assert info["adapter"] == "sqlite"
        assert info["connected"] is True
        assert info["server_version"].startswith("3.")
        assert "last_status" not in info

        await session.close()
        info = await monitor.connection_info()
        assert info["connected"] is False
        assert "server_version" not in info


class TestOverallStatus:
    def result(self, status):
        return HealthCheckResult("x", status, "")

    def test_rules(self):
        assert overall_status([]) is HealthStatus.HEALTHY
        assert overall_status([self.result(CheckStatus.PASS)]) is HealthStatus.HEALTHY
        assert overall_status([self.result(CheckStatus.PASS), self.result(CheckStatus.WARN)]) is HealthStatus.DEGRADED
        assert overall_status([self.result(CheckStatus.WARN), self.result(CheckStatus.FAIL)]) is HealthStatus.UNHEALTHY


class TestMonitor:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, monitor):
        seen = []
        monitor.start(interval=0.02, observer=seen.append)
        assert monitor.running
        await asyncio.sleep(0.2)
        monitor.stop()
        assert not monitor.running

        assert len(seen) >= 2
        assert monitor.last_snapshot is seen[-1]
        count = len(seen)
        await asyncio.sleep(0.1)
        assert len(seen) == count

    @pytest.mark.asyncio
    async def test_stop_discards_in_flight_probe(self, monitor):
        real = monitor.full_check
        started = asyncio.Event()

        async def slow_check():
            started.set()
            await asyncio.sleep(0.2)
            return await real()

        monitor.full_check = slow_check
        seen = []
        monitor.start(interval=0.01, observer=seen.append)
        await started.wait()
        monitor.stop()
        await asyncio.sleep(0.3)
        assert seen == []
        assert monitor.last_snapshot is None

    @pytest.mark.asyncio
    async def test_restart_replaces_previous_loop(self, monitor):
        first, second = [], []
        monitor.start(interval=0.02, observer=first.append)
        await asyncio.sleep(0.05)
        monitor.start(interval=0.02, observer=second.append)
        count = len(first)
        await asyncio.sleep(0.1)
        assert len(first) == count
        assert second

    @pytest.mark.asyncio
    async def test_only_on_change(self, monitor, session):
        seen = []
        monitor.start(interval=0.02, observer=seen.append, only_on_change=True)
        await asyncio.sleep(0.1)
        assert [s.overall for s in seen] == [HealthStatus.DEGRADED]

        await with_clock(session)
        await asyncio.sleep(0.1)
        assert [s.overall for s in seen] == [HealthStatus.DEGRADED, HealthStatus.HEALTHY]

    @pytest.mark.asyncio
    async def test_async_observer(self, monitor):
        seen = []

        async def observer(snapshot):
            await asyncio.sleep(0)
            seen.append(snapshot.overall)

        monitor.start(interval=0.02, observer=observer)
        await asyncio.sleep(0.1)
        assert seen

    @pytest.mark.asyncio
    async def test_observer_errors_do_not_stop_loop(self, monitor):
        calls = []

        def observer(snapshot):
            calls.append(snapshot)
            raise RuntimeError("observer broke")

        monitor.start(interval=0.02, observer=observer)
        await asyncio.sleep(0.15)
        assert len(calls) >= 2
        assert monitor.running

    @pytest.mark.asyncio
    async def test_runs_alongside_ingestion(self, monitor, session):
        adapter = session.adapter
        execute = adapter._execute
        active, overlapping = [0], []

        async def tracked(conn, sql, params, want_rows):
            active[0] += 1
            if active[0] > 1:
                overlapping.append(sql)
            try:
                await asyncio.sleep(0)
                return await execute(conn, sql, params, want_rows)
            finally:
                active[0] -= 1

        adapter._execute = tracked
        ingestor = CRDTIngestor(session)
        clock = await ingestor.load_clock()

        seen = []
        monitor.start(interval=0.001, observer=seen.append)
        for i in range(30):
            message = CRDTMessage("accounts", f"r{i}", "name", f"n{i}", clock.send())
            assert await ingestor.receive([message]) == 1
        await asyncio.sleep(0.05)
        monitor.stop()

        assert overlapping == []
        assert seen
        assert all(s.overall is not HealthStatus.UNHEALTHY for s in seen)
        assert len(await ingestor.select_alive("accounts")) == 30

    @pytest.mark.asyncio
    async def test_disabled_health_checks(self, db_path):
        async with StorageSession(make_config(db_path, health_checks=False)) as session:
            monitor = HealthMonitor(session)
            monitor.start(interval=0.02)
            assert not monitor.running
            assert await monitor.quick_check() is True

    @pytest.mark.asyncio
    async def test_rejects_bad_interval(self, monitor):
        with pytest.raises(ValueError):
            monitor.start(interval=0)
