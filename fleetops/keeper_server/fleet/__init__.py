"""
Fleet-wide passes and dated backup retention.

Invariants:
    - A fleet pass never raises
    - Only one fleet pass runs at a time per process

How to change safely:
    - The timer lives outside the keeper; keep run_fleet_pass idempotent per interval
"""

from .retention import RetentionManager, RetentionReport
from .scheduler import FleetPassReport, FleetScheduler, TenantPassResult

__all__ = [
    "RetentionManager",
    "RetentionReport",
    "FleetPassReport",
    "FleetScheduler",
    "TenantPassResult",
]
