"""
Unit tests for gateway health checks and the restart circuit breaker.

Tests cover:
- Health state machine (stopped, starting, active, unhealthy)
- Consecutive failure counting
- Gateway process identification
- Sliding-window circuit breaker
"""

import pytest

from fleetops.keeper_server.config import BreakerConfig, GatewayConfig, HealthConfig
from fleetops.keeper_server.health.breaker import CircuitBreaker
from fleetops.keeper_server.health.monitor import HealthMonitor, HealthStatus, is_gateway_command
from fleetops.keeper_server.session.base import ProcessStatus


@pytest.fixture
def monitor(clock):
    return HealthMonitor(HealthConfig(), GatewayConfig(startup_timeout_s=180), clock=clock)


class TestGatewayIdentification:
    """Tests for telling the gateway apart from CLI calls."""

    @pytest.mark.parametrize(
        "command",
        ["/usr/local/bin/start-moltbot.sh", "bash -c start-moltbot.sh", "node openclaw gateway --port 18789"],
    )
    def test_gateway(self, command):
        assert is_gateway_command(command, GatewayConfig())

    @pytest.mark.parametrize(
        "command",
        ["openclaw devices list", "openclaw --version", "clawdbot devices approve x", "tar czf /tmp/a"],
    )
    def test_not_gateway(self, command):
        assert not is_gateway_command(command, GatewayConfig())


class TestHealthStates:
    """Tests for the health state machine."""

    @pytest.mark.asyncio
    async def test_stopped(self, monitor, empty_session):
        result = await monitor.check("t1", empty_session)

        assert result.state == HealthStatus.STOPPED
        assert not result.healthy
        assert monitor.get_state("t1").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_active(self, monitor, empty_session, clock):
        process = empty_session.add_gateway(start_time=clock() - 60)

        result = await monitor.check("t1", empty_session)

        assert result.state == HealthStatus.ACTIVE
        assert result.healthy
        assert result.checks.all_passed
        assert result.process_id == process.id
        assert result.uptime_seconds == 60
        assert monitor.get_state("t1").last_healthy == clock()

    @pytest.mark.asyncio
    async def test_any_http_status_counts_as_responding(self, monitor, empty_session):
        empty_session.add_gateway()
        empty_session.probe_status = "503"

        result = await monitor.check("t1", empty_session)

        assert result.state == HealthStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_starting_within_grace(self, monitor, empty_session, clock):
        empty_session.add_gateway(status=ProcessStatus.STARTING, start_time=clock() - 30, open_port=False)
        monitor.get_state("t1").consecutive_failures = 2

        result = await monitor.check("t1", empty_session)

        assert result.state == HealthStatus.STARTING
        assert monitor.get_state("t1").consecutive_failures == 2

    @pytest.mark.asyncio
    async def test_starting_past_grace_is_unhealthy(self, monitor, empty_session, clock):
        empty_session.add_gateway(status=ProcessStatus.STARTING, start_time=clock() - 500, open_port=False)

        result = await monitor.check("t1", empty_session)

        assert result.state == HealthStatus.UNHEALTHY
        assert result.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_running_with_closed_port(self, monitor, empty_session):
        empty_session.add_gateway(open_port=False)

        result = await monitor.check("t1", empty_session)

        assert result.state == HealthStatus.UNHEALTHY
        assert result.checks.process_running
        assert not result.checks.port_reachable

    @pytest.mark.asyncio
    async def test_port_open_without_process(self, monitor, empty_session):
        empty_session.open_ports.add(18789)

        result = await monitor.check("t1", empty_session)

        assert result.state == HealthStatus.UNHEALTHY
        assert not result.checks.process_running

    @pytest.mark.asyncio
    async def test_probe_failure(self, monitor, empty_session):
        empty_session.add_gateway()
        empty_session.probe_status = "000"

        result = await monitor.check("t1", empty_session)

        assert result.state == HealthStatus.UNHEALTHY
        assert result.checks.port_reachable
        assert not result.checks.gateway_responds

    @pytest.mark.asyncio
    async def test_unreachable_session(self, monitor, empty_session):
        empty_session.unreachable = True

        result = await monitor.check("t1", empty_session)

        assert result.state == HealthStatus.UNHEALTHY
        assert "Process listing failed" in result.error

    @pytest.mark.asyncio
    async def test_cli_process_is_not_a_gateway(self, monitor, empty_session):
        await empty_session.start_process("openclaw devices list")
        empty_session.processes[-1].status = ProcessStatus.RUNNING

        result = await monitor.check("t1", empty_session)

        assert result.state == HealthStatus.STOPPED


class TestFailureCounting:
    """Tests for consecutive failure bookkeeping."""

    @pytest.mark.asyncio
    async def test_counts_to_threshold(self, monitor, empty_session):
        empty_session.add_gateway()
        empty_session.probe_status = "000"

        for expected in (1, 2):
            result = await monitor.check("t1", empty_session)
            assert result.consecutive_failures == expected
            assert not monitor.should_restart("t1")

        await monitor.check("t1", empty_session)
        assert monitor.should_restart("t1")

    @pytest.mark.asyncio
    async def test_active_resets(self, monitor, empty_session):
        empty_session.add_gateway()
        empty_session.probe_status = "000"
        await monitor.check("t1", empty_session)
        await monitor.check("t1", empty_session)

        empty_session.probe_status = "200"
        await monitor.check("t1", empty_session)

        assert monitor.get_state("t1").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_stopped_keeps_counter(self, monitor, empty_session):
        monitor.get_state("t1").consecutive_failures = 2
        await monitor.check("t1", empty_session)
        assert monitor.get_state("t1").consecutive_failures == 2

    def test_record_restart_resets(self, monitor, clock):
        monitor.get_state("t1").consecutive_failures = 3
        monitor.record_restart("t1")
        state = monitor.get_state("t1")
        assert state.consecutive_failures == 0
        assert state.last_restart == clock()
        assert not monitor.should_restart("t1")

    def test_state_to_dict(self, monitor):
        data = monitor.get_state("t1").to_dict()
        assert data["state"] == "stopped"
        assert data["consecutive_failures"] == 0


class TestCircuitBreaker:
    """Tests for the sliding-window restart limiter."""

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(BreakerConfig(window_s=900, max_restarts=5), clock=clock)

    def test_trips_at_max(self, breaker, clock):
        for _ in range(4):
            breaker.record_restart("t1")
            clock.advance(10)
        assert not breaker.is_tripped("t1")

        breaker.record_restart("t1")
        assert breaker.is_tripped("t1")

    def test_closes_after_window(self, breaker, clock):
        for _ in range(5):
            breaker.record_restart("t1")
        assert breaker.retry_after("t1") == 900

        clock.advance(900)
        assert not breaker.is_tripped("t1")
        assert breaker.restarts_in_window("t1") == 0

    def test_sliding(self, breaker, clock):
        breaker.record_restart("t1")
        clock.advance(600)
        for _ in range(4):
            breaker.record_restart("t1")
        assert breaker.is_tripped("t1")

        clock.advance(301)
        assert not breaker.is_tripped("t1")
        assert breaker.restarts_in_window("t1") == 4

    def test_per_tenant(self, breaker):
        for _ in range(5):
            breaker.record_restart("t1")
        assert not breaker.is_tripped("t2")

    def test_reset(self, breaker):
        for _ in range(5):
            breaker.record_restart("t1")
        breaker.reset("t1")
        assert breaker.snapshot("t1") == {"tripped": False, "restarts_in_window": 0, "retry_after_s": 0.0}

    def test_reads_do_not_track_unknown_tenants(self, breaker):
        assert breaker.snapshot("unknown") == {"tripped": False, "restarts_in_window": 0, "retry_after_s": 0.0}
        assert not breaker.is_tripped("unknown")
        assert breaker._windows == {}
