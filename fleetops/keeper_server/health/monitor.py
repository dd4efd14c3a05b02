"""
Gateway liveness checks and the per-tenant health state machine.

States:
    STOPPED    no gateway process and the port is closed
    STARTING   gateway process still booting, inside the startup grace period
    ACTIVE     process running, port reachable, HTTP probe answers
    UNHEALTHY  anything else

Invariants:
    - STOPPED and STARTING never change the failure counter
    - ACTIVE resets the failure counter to 0
    - Each UNHEALTHY check adds exactly 1
    - check() never raises
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from ..config import GatewayConfig, HealthConfig
from ..session.base import Process, ProcessStatus, SessionHandle, run_command
from ..session.commands import probe_command

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    ACTIVE = "active"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthChecks:
    process_running: bool = False
    port_reachable: bool = False
    gateway_responds: bool = False

    @property
    def all_passed(self) -> bool:
        return self.process_running and self.port_reachable and self.gateway_responds


@dataclass
class HealthState:
    """In-memory health bookkeeping for one tenant."""

    consecutive_failures: int = 0
    last_check: float | None = None
    last_healthy: float | None = None
    last_restart: float | None = None
    state: HealthStatus = HealthStatus.STOPPED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass
class HealthCheckResult:
    tenant_id: str
    state: HealthStatus
    healthy: bool
    checks: HealthChecks = field(default_factory=HealthChecks)
    consecutive_failures: int = 0
    process_id: str | None = None
    uptime_seconds: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "state": self.state.value,
            "healthy": self.healthy,
            "checks": asdict(self.checks),
            "consecutive_failures": self.consecutive_failures,
            "process_id": self.process_id,
            "uptime_seconds": self.uptime_seconds,
            "error": self.error,
        }


def is_gateway_command(command: str, config: GatewayConfig) -> bool:
    """Whether a command line is the gateway (and not a CLI call mentioning it)."""
    if any(marker in command for marker in config.cli_markers):
        return False
    return any(marker in command for marker in config.process_markers)


async def find_gateway_process(session: SessionHandle, config: GatewayConfig) -> Process | None:
    """The active gateway process, preferring a running one over a starting one."""
    candidates = [
        p for p in await session.list_processes()
        if p.status.is_active and is_gateway_command(p.command, config)
    ]
    for process in candidates:
        if process.status == ProcessStatus.RUNNING:
            return process
    return candidates[0] if candidates else None


class HealthMonitor:
    """Runs liveness checks and tracks consecutive failures per tenant."""

    def __init__(
        self,
        config: HealthConfig | None = None,
        gateway: GatewayConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or HealthConfig()
        self.gateway = gateway or GatewayConfig()
        self.clock = clock
        self._states: dict[str, HealthState] = {}

    def get_state(self, tenant_id: str) -> HealthState:
        if tenant_id not in self._states:
            self._states[tenant_id] = HealthState()
        return self._states[tenant_id]

    def peek_state(self, tenant_id: str) -> HealthState | None:
        """Read-only lookup; never creates an entry."""
        return self._states.get(tenant_id)

    def all_states(self) -> dict[str, HealthState]:
        return dict(self._states)

    def reset(self, tenant_id: str) -> None:
        self._states.pop(tenant_id, None)

    def should_restart(self, tenant_id: str) -> bool:
        state = self._states.get(tenant_id)
        return state is not None and state.consecutive_failures >= self.config.failures_before_restart

    def record_restart(self, tenant_id: str) -> None:
        """Mark a restart attempt; the counter resets so one episode triggers one restart."""
        state = self.get_state(tenant_id)
        state.last_restart = self.clock()
        state.consecutive_failures = 0

    async def check(self, tenant_id: str, session: SessionHandle) -> HealthCheckResult:
        state = self.get_state(tenant_id)
        now = self.clock()
        state.last_check = now

        try:
            process = await asyncio.wait_for(
                find_gateway_process(session, self.gateway),
                timeout=self.config.process_list_timeout_s,
            )
        except Exception as e:
            return self._unhealthy(tenant_id, state, HealthChecks(), f"Process listing failed: {e}")

        port_ok = await self._check_port(session)
        checks = HealthChecks(
            process_running=process is not None and process.status == ProcessStatus.RUNNING,
            port_reachable=port_ok,
        )
        process_id = process.id if process else None
        uptime = now - process.start_time if process else None

        if process is None and not port_ok:
            state.state = HealthStatus.STOPPED
            return HealthCheckResult(
                tenant_id=tenant_id,
                state=HealthStatus.STOPPED,
                healthy=False,
                checks=checks,
                consecutive_failures=state.consecutive_failures,
            )

        if (
            process is not None
            and process.status == ProcessStatus.STARTING
            and uptime is not None
            and uptime < self.gateway.startup_timeout_s
        ):
            state.state = HealthStatus.STARTING
            return HealthCheckResult(
                tenant_id=tenant_id,
                state=HealthStatus.STARTING,
                healthy=False,
                checks=checks,
                consecutive_failures=state.consecutive_failures,
                process_id=process_id,
                uptime_seconds=uptime,
            )

        if port_ok:
            checks.gateway_responds = await self._probe(session)

        if checks.all_passed:
            state.state = HealthStatus.ACTIVE
            state.consecutive_failures = 0
            state.last_healthy = now
            return HealthCheckResult(
                tenant_id=tenant_id,
                state=HealthStatus.ACTIVE,
                healthy=True,
                checks=checks,
                consecutive_failures=0,
                process_id=process_id,
                uptime_seconds=uptime,
            )

        failed = [name for name, ok in asdict(checks).items() if not ok]
        result = self._unhealthy(tenant_id, state, checks, f"Failed checks: {', '.join(failed)}")
        result.process_id = process_id
        result.uptime_seconds = uptime
        return result

    def _unhealthy(
        self, tenant_id: str, state: HealthState, checks: HealthChecks, error: str
    ) -> HealthCheckResult:
        state.state = HealthStatus.UNHEALTHY
        state.consecutive_failures += 1
        logger.warning(
            f"Gateway unhealthy for {tenant_id} ({state.consecutive_failures} in a row): {error}",
            extra={"tenant_id": tenant_id, "consecutive_failures": state.consecutive_failures},
        )
        return HealthCheckResult(
            tenant_id=tenant_id,
            state=HealthStatus.UNHEALTHY,
            healthy=False,
            checks=checks,
            consecutive_failures=state.consecutive_failures,
            error=error,
        )

    async def _check_port(self, session: SessionHandle) -> bool:
        timeout = self.config.port_check_timeout_s
        try:
            return await asyncio.wait_for(session.check_port(self.gateway.port, timeout), timeout=timeout)
        except Exception as e:
            logger.debug(f"Port check failed: {e}")
            return False

    async def _probe(self, session: SessionHandle) -> bool:
        """The gateway answers HTTP with any status code."""
        timeout = self.config.probe_timeout_s
        try:
            result = await run_command(session, probe_command(self.gateway.port, timeout), timeout=timeout + 1)
        except Exception as e:
            logger.debug(f"Gateway probe failed: {e}")
            return False
        code = result.stdout.strip()
        return len(code) == 3 and code.isdigit() and code != "000"
