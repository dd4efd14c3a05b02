"""
Gateway health, restart and boot.

- HealthMonitor: liveness checks and the STOPPED/STARTING/ACTIVE/UNHEALTHY machine
- CircuitBreaker: sliding-window restart limiter
- GatewayLauncher: restore, register, start, wait for port
- RestartOrchestrator: restart decision, teardown, background relaunch

Invariants:
    - A failure episode triggers at most one restart (counter reset on attempt)
    - Restarts past the breaker limit are suppressed, not queued
    - Auto-starts of stopped gateways never feed the breaker

How to change safely:
    - Keep health state in memory; it is rebuilt within a few passes after restart
"""

from .breaker import CircuitBreaker
from .launcher import GatewayLauncher, LaunchResult
from .monitor import (
    HealthCheckResult,
    HealthChecks,
    HealthMonitor,
    HealthState,
    HealthStatus,
    find_gateway_process,
    is_gateway_command,
)
from .restart import RestartOrchestrator, RestartOutcome

__all__ = [
    "CircuitBreaker",
    "GatewayLauncher",
    "LaunchResult",
    "HealthCheckResult",
    "HealthChecks",
    "HealthMonitor",
    "HealthState",
    "HealthStatus",
    "find_gateway_process",
    "is_gateway_command",
    "RestartOrchestrator",
    "RestartOutcome",
]
