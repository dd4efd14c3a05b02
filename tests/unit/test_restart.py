"""
Unit tests for the gateway launcher and restart orchestrator.

Tests cover:
- Restore before start, registration marker
- Reuse and replacement of an existing gateway
- Startup failures and timeouts
- Restart sequencing, circuit breaker suppression
- Relaunch issues (restart failure, data loss)
"""

import asyncio
import json

import pytest

from fleetops.keeper_server.config import BreakerConfig, HealthConfig
from fleetops.keeper_server.errors import FailureKind
from fleetops.keeper_server.health.breaker import CircuitBreaker
from fleetops.keeper_server.health.launcher import GatewayLauncher
from fleetops.keeper_server.health.monitor import HealthMonitor
from fleetops.keeper_server.health.restart import RestartOrchestrator
from fleetops.keeper_server.issues import InMemoryIssueSink, IssueType, Severity
from fleetops.keeper_server.session.base import ProcessStatus
from fleetops.keeper_server.snapshot.restore import RestoreFormat, RestoreResolver
from fleetops.keeper_server.snapshot.snapshotter import Snapshotter
from fleetops.keeper_server.verify.verifier import VerificationEngine

REGISTERED = "users/t1/.registered"


@pytest.fixture
def restorer(store, coordinator, snapshot_config):
    return RestoreResolver(store, coordinator, snapshot_config)


@pytest.fixture
def launcher(store, restorer, gateway_config):
    return GatewayLauncher(store, restorer, gateway_config, poll_interval_s=0.02)


@pytest.fixture
def snapshotter(store, coordinator, snapshot_config, history):
    return Snapshotter(store, coordinator, snapshot_config, history=history)


class TestGatewayLauncher:
    """Tests for GatewayLauncher.ensure_running."""

    @pytest.mark.asyncio
    async def test_restores_then_starts(self, launcher, snapshotter, store, session, empty_session):
        await snapshotter.backup("t1", session)

        result = await launcher.ensure_running("t1", empty_session)

        assert result.success
        assert result.restore.format == RestoreFormat.SNAPSHOT
        assert "/root/.openclaw/openclaw.json" in empty_session.files

        extract = next(i for i, c in enumerate(empty_session.commands) if c.startswith("tar xzf"))
        start = empty_session.commands.index(empty_session.gateway_command)
        assert extract < start

        gateway = empty_session.gateway_processes()[0]
        assert gateway.id == result.process_id
        assert gateway.env == {"TENANT_ID": "t1"}

    @pytest.mark.asyncio
    async def test_first_boot_registers(self, launcher, store, empty_session):
        result = await launcher.ensure_running("t1", empty_session)

        assert result.registered
        marker = json.loads(store.objects[REGISTERED][0])
        assert marker["tenantId"] == "t1"
        assert marker["registeredAt"].endswith("Z")

    @pytest.mark.asyncio
    async def test_registration_written_once(self, launcher, store, empty_session):
        await store.put(REGISTERED, '{"tenantId": "t1", "registeredAt": "2024-01-01T00:00:00.000Z"}')

        result = await launcher.ensure_running("t1", empty_session)

        assert not result.registered
        assert b"2024-01-01" in store.objects[REGISTERED][0]

    @pytest.mark.asyncio
    async def test_fresh_start_still_boots(self, launcher, empty_session):
        result = await launcher.ensure_running("t1", empty_session)

        assert result.success
        assert result.restore.format == RestoreFormat.FRESH

    @pytest.mark.asyncio
    async def test_reuses_running_gateway(self, launcher, empty_session):
        existing = empty_session.add_gateway()

        result = await launcher.ensure_running("t1", empty_session)

        assert result.success
        assert result.already_running
        assert result.process_id == existing.id
        assert result.restore is None
        assert empty_session.commands == []

    @pytest.mark.asyncio
    async def test_replaces_gateway_that_never_opens_port(self, launcher, empty_session):
        stuck = empty_session.add_gateway(status=ProcessStatus.STARTING, open_port=False)

        result = await launcher.ensure_running("t1", empty_session)

        assert result.success
        assert not result.already_running
        assert stuck.status == ProcessStatus.KILLED
        assert result.process_id != stuck.id

    @pytest.mark.asyncio
    async def test_gateway_crash(self, launcher, empty_session):
        empty_session.gateway_mode = "crash"

        result = await launcher.ensure_running("t1", empty_session)

        assert not result.success
        assert "exited with 1" in result.error

    @pytest.mark.asyncio
    async def test_port_timeout(self, launcher, empty_session):
        empty_session.gateway_mode = "slow"

        result = await launcher.ensure_running("t1", empty_session)

        assert not result.success
        assert "not reachable" in result.error


class TestRestartOrchestrator:
    """Tests for RestartOrchestrator."""

    @pytest.fixture
    def issues(self):
        return InMemoryIssueSink()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(BreakerConfig(window_s=900, max_restarts=5), clock=clock)

    @pytest.fixture
    def monitor(self, clock, gateway_config):
        return HealthMonitor(HealthConfig(), gateway_config, clock=clock)

    @pytest.fixture
    def orchestrator(self, monitor, breaker, snapshotter, launcher, store, snapshot_config, issues, gateway_config):
        verifier = VerificationEngine(store, snapshot_config=snapshot_config)
        return RestartOrchestrator(monitor, breaker, snapshotter, launcher, verifier, issues, gateway_config)

    @pytest.mark.asyncio
    async def test_restart_sequence(self, orchestrator, monitor, breaker, store, session, issues):
        old = session.add_gateway()
        session.files["/tmp/openclaw-gateway.lock"] = b"12345"
        monitor.get_state("t1").consecutive_failures = 3

        outcome = await orchestrator.restart("t1", session, reason="probe failed")

        assert outcome.attempted
        assert outcome.scheduled
        assert not outcome.suppressed
        assert outcome.pre_backup.success
        assert "users/t1/backup.tar.gz" in store.objects
        assert old.status == ProcessStatus.KILLED
        assert "/tmp/openclaw-gateway.lock" not in session.files
        assert monitor.get_state("t1").consecutive_failures == 0
        assert breaker.restarts_in_window("t1") == 1

        await orchestrator.drain()

        assert not orchestrator.relaunch_pending("t1")
        assert len(session.gateway_processes()) == 1
        assert session.gateway_processes()[0].id != old.id
        assert issues.issues == []

    @pytest.mark.asyncio
    async def test_suppressed_when_breaker_tripped(self, orchestrator, breaker, session):
        for _ in range(5):
            breaker.record_restart("t1")
        gateway = session.add_gateway()

        outcome = await orchestrator.restart("t1", session, reason="probe failed")

        assert outcome.suppressed
        assert not outcome.attempted
        assert outcome.kind == FailureKind.RESTART_SUPPRESSED
        assert session.commands == []
        assert gateway.status == ProcessStatus.RUNNING
        assert breaker.restarts_in_window("t1") == 5

    @pytest.mark.asyncio
    async def test_failed_relaunch_opens_restart_issue(self, orchestrator, session, issues):
        session.add_gateway()
        session.gateway_mode = "crash"

        await orchestrator.restart("t1", session, reason="probe failed")
        await orchestrator.drain()

        restart_issues = issues.of_type(IssueType.RESTART)
        assert len(restart_issues) == 1
        assert restart_issues[0].severity == Severity.CRITICAL
        assert restart_issues[0].tenant_id == "t1"

    @pytest.mark.asyncio
    async def test_missing_critical_files_open_data_loss_issue(self, orchestrator, empty_session, issues):
        empty_session.add_gateway()

        outcome = await orchestrator.restart("t1", empty_session, reason="probe failed")
        await orchestrator.drain()

        assert outcome.pre_backup.kind == FailureKind.CONFIG_INVALID
        data_loss = issues.of_type(IssueType.DATA_LOSS)
        assert len(data_loss) == 1
        assert data_loss[0].severity == Severity.CRITICAL
        assert "openclaw.json" in data_loss[0].message

    @pytest.mark.asyncio
    async def test_auto_start_bypasses_breaker(self, orchestrator, breaker, monitor, session):
        outcome = await orchestrator.auto_start("t1", session)
        await orchestrator.drain()

        assert outcome.scheduled
        assert breaker.restarts_in_window("t1") == 0
        assert monitor.get_state("t1").last_restart is None
        assert len(session.gateway_processes()) == 1

    @pytest.mark.asyncio
    async def test_one_relaunch_per_tenant(self, orchestrator, empty_session):
        empty_session.gateway_mode = "slow"

        first = await orchestrator.auto_start("t1", empty_session)
        second = await orchestrator.auto_start("t1", empty_session)

        assert first.scheduled
        assert not second.scheduled
        assert orchestrator.relaunch_pending("t1")

        while not empty_session.gateway_processes():
            await asyncio.sleep(0.01)
        empty_session.finish_boot()
        await orchestrator.drain()

        assert not orchestrator.relaunch_pending("t1")
        assert len(empty_session.gateway_processes()) == 1
