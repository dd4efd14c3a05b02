"""
Restart orchestration.

restart() decides and tears down synchronously, then hands the relaunch
to a tracked background task so a fleet pass never blocks on a gateway
boot:

    1. Suppress if the circuit breaker is tripped
    2. Record the attempt (health counter reset, breaker window)
    3. Best-effort pre-restart backup
    4. Kill every process, clear stale gateway locks
    5. Relaunch in the background, then verify durability

Invariants:
    - Every attempt is recorded before anything can fail
    - At most one relaunch task runs per tenant
    - A failed relaunch opens a critical `restart` issue
    - Critical files missing after relaunch open a critical `data_loss` issue

How to change safely:
    - Keep the breaker check first; it is what stops restart storms
    - drain() must await every task created here
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from ..config import GatewayConfig
from ..errors import FailureKind, KeeperError
from ..issues import IssueSink, IssueType, Severity
from ..session.base import SessionHandle, run_command
from ..session.commands import remove_command
from ..snapshot.snapshotter import BackupResult, Snapshotter
from ..verify.verifier import VerificationEngine
from .breaker import CircuitBreaker
from .launcher import GatewayLauncher, LaunchResult
from .monitor import HealthMonitor

logger = logging.getLogger(__name__)


@dataclass
class RestartOutcome:
    tenant_id: str
    reason: str
    attempted: bool = False
    suppressed: bool = False
    scheduled: bool = False
    kind: FailureKind | None = None
    pre_backup: BackupResult | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "reason": self.reason,
            "attempted": self.attempted,
            "suppressed": self.suppressed,
            "scheduled": self.scheduled,
            "kind": self.kind.value if self.kind else None,
            "pre_backup": self.pre_backup.to_dict() if self.pre_backup else None,
            "error": self.error,
        }


class RestartOrchestrator:
    """Restarts unhealthy gateways without causing restart storms.

    Example:
        >>> outcome = await orchestrator.restart("t1", session, reason="health_check")
        >>> await orchestrator.drain()
    """

    def __init__(
        self,
        monitor: HealthMonitor,
        breaker: CircuitBreaker,
        snapshotter: Snapshotter,
        launcher: GatewayLauncher,
        verifier: VerificationEngine,
        issues: IssueSink,
        config: GatewayConfig | None = None,
    ) -> None:
        self.monitor = monitor
        self.breaker = breaker
        self.snapshotter = snapshotter
        self.launcher = launcher
        self.verifier = verifier
        self.issues = issues
        self.config = config or GatewayConfig()
        self._relaunches: dict[str, asyncio.Task[LaunchResult]] = {}

    def relaunch_pending(self, tenant_id: str) -> bool:
        task = self._relaunches.get(tenant_id)
        return task is not None and not task.done()

    async def restart(self, tenant_id: str, session: SessionHandle, reason: str) -> RestartOutcome:
        outcome = RestartOutcome(tenant_id=tenant_id, reason=reason)

        if self.breaker.is_tripped(tenant_id):
            outcome.suppressed = True
            outcome.kind = FailureKind.RESTART_SUPPRESSED
            outcome.error = (
                f"Circuit breaker open: {self.breaker.restarts_in_window(tenant_id)} restarts in window, "
                f"retry in {self.breaker.retry_after(tenant_id):.0f}s"
            )
            logger.warning(
                f"Restart suppressed for {tenant_id}: {outcome.error}",
                extra={"tenant_id": tenant_id, "reason": reason},
            )
            return outcome

        self.monitor.record_restart(tenant_id)
        self.breaker.record_restart(tenant_id)
        outcome.attempted = True
        logger.warning(f"Restarting gateway for {tenant_id}: {reason}", extra={"tenant_id": tenant_id})

        outcome.pre_backup = await self._pre_restart_backup(tenant_id, session)

        try:
            await self._teardown(tenant_id, session)
        except KeeperError as e:
            outcome.error = f"Teardown failed: {e.message}"
            logger.error(f"Teardown failed for {tenant_id}: {e.message}", extra={"tenant_id": tenant_id})

        outcome.scheduled = self._schedule_relaunch(tenant_id, session, reason)
        return outcome

    async def auto_start(self, tenant_id: str, session: SessionHandle) -> RestartOutcome:
        """Start a stopped gateway. Not a restart: bypasses the breaker and counters."""
        outcome = RestartOutcome(tenant_id=tenant_id, reason="auto_start", attempted=True)
        logger.info(f"Auto-starting gateway for {tenant_id}", extra={"tenant_id": tenant_id})
        outcome.scheduled = self._schedule_relaunch(tenant_id, session, "auto_start")
        return outcome

    async def drain(self) -> None:
        """Wait for every outstanding relaunch task."""
        tasks = [task for task in self._relaunches.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _pre_restart_backup(self, tenant_id: str, session: SessionHandle) -> BackupResult | None:
        try:
            result = await asyncio.wait_for(
                self.snapshotter.backup(tenant_id, session),
                timeout=self.config.pre_restart_backup_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Pre-restart backup timed out for {tenant_id}", extra={"tenant_id": tenant_id})
            return None
        if not result.success:
            logger.warning(
                f"Pre-restart backup failed for {tenant_id}: {result.error}",
                extra={"tenant_id": tenant_id, "kind": result.kind.value if result.kind else None},
            )
        return result

    async def _teardown(self, tenant_id: str, session: SessionHandle) -> None:
        processes = [p for p in await session.list_processes() if p.status.is_active]
        for process in processes:
            try:
                await process.kill()
            except KeeperError as e:
                logger.warning(f"Failed to kill {process.id} for {tenant_id}: {e.message}")
        logger.info(f"Killed {len(processes)} processes for {tenant_id}", extra={"tenant_id": tenant_id})

        await asyncio.sleep(self.config.kill_settle_s)
        await run_command(session, remove_command(self.config.stale_lock_paths), timeout=10.0)

    def _schedule_relaunch(self, tenant_id: str, session: SessionHandle, reason: str) -> bool:
        if self.relaunch_pending(tenant_id):
            logger.info(f"Relaunch already in progress for {tenant_id}", extra={"tenant_id": tenant_id})
            return False
        task = asyncio.create_task(self._relaunch(tenant_id, session, reason))
        self._relaunches[tenant_id] = task
        return True

    async def _relaunch(self, tenant_id: str, session: SessionHandle, reason: str) -> LaunchResult:
        try:
            result = await asyncio.wait_for(
                self.launcher.ensure_running(tenant_id, session),
                timeout=self.config.relaunch_timeout_s,
            )
        except asyncio.TimeoutError:
            result = LaunchResult(
                tenant_id=tenant_id,
                success=False,
                error=f"Relaunch timed out after {self.config.relaunch_timeout_s}s",
            )

        try:
            if not result.success:
                await self.issues.create_issue(
                    IssueType.RESTART,
                    Severity.CRITICAL,
                    tenant_id,
                    f"Gateway relaunch failed ({reason}): {result.error}",
                    details={"reason": reason, "launch": result.to_dict()},
                )
                return result

            verification = await self.verifier.post_restart_check(tenant_id)
            if verification.missing_critical_files:
                await self.issues.create_issue(
                    IssueType.DATA_LOSS,
                    Severity.CRITICAL,
                    tenant_id,
                    f"Critical files missing after relaunch: {', '.join(verification.missing_critical_files)}",
                    details={"reason": reason, "verification": verification.to_dict()},
                )
        except Exception as e:
            logger.error(f"Post-relaunch handling failed for {tenant_id}: {e}", exc_info=True)
        return result
