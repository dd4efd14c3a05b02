"""
One fleet pass over a list of tenants.

Per tenant, in order:

    1. Health check
    2. STOPPED: auto-start if a valid archive exists, otherwise skip the tenant
    3. Restart when the failure counter reached its threshold
    4. Backup + verification (bounded by sync_timeout_s), unless the gateway
       was started or restarted in this pass
    5. Issue thresholds for sync failures and verification gaps

After all tenants the daily retention pass runs.

Invariants:
    - run_fleet_pass() never raises; per-tenant errors land in the report
    - Health and restart always precede backup for a tenant
    - Threshold issues open once per failure streak (when the streak reaches
      the threshold), not on every pass after it; skipped passes never open one

How to change safely:
    - Keep parallelism at 1 unless session API limits are raised
    - New per-tenant steps must be bounded by a timeout
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ..config import FleetConfig, SnapshotConfig
from ..errors import FailureKind
from ..health.monitor import HealthCheckResult, HealthMonitor, HealthStatus
from ..health.restart import RestartOrchestrator, RestartOutcome
from ..issues import IssueSink, IssueType, Severity
from ..layout import DEFAULT_TENANT_PREFIX, backup_key, tenant_prefix
from ..session.base import SessionHandle, SessionProvider
from ..snapshot.snapshotter import BackupResult, Snapshotter
from ..store.base import ObjectStore
from ..sync.history import SyncHistory
from ..verify.verifier import VerificationEngine, VerificationResult
from .retention import RetentionManager, RetentionReport

logger = logging.getLogger(__name__)


@dataclass
class TenantPassResult:
    """What a fleet pass did for one tenant.

    action is one of: none, auto_start, restart, restart_suppressed,
    skipped_no_data, relaunch_pending, error.
    """

    tenant_id: str
    action: str = "none"
    health: HealthCheckResult | None = None
    restart: RestartOutcome | None = None
    backup: BackupResult | None = None
    verification: VerificationResult | None = None
    issues: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "action": self.action,
            "health": self.health.to_dict() if self.health else None,
            "restart": self.restart.to_dict() if self.restart else None,
            "backup": self.backup.to_dict() if self.backup else None,
            "verification": self.verification.to_dict() if self.verification else None,
            "issues": list(self.issues),
            "error": self.error,
        }


@dataclass
class FleetPassReport:
    started_at: float
    duration_ms: int = 0
    tenants: list[TenantPassResult] = field(default_factory=list)
    retention: RetentionReport | None = None

    def count(self, action: str) -> int:
        return sum(1 for t in self.tenants if t.action == action)

    @property
    def backups_succeeded(self) -> int:
        return sum(1 for t in self.tenants if t.backup and t.backup.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
            "tenant_count": len(self.tenants),
            "backups_succeeded": self.backups_succeeded,
            "restarts": self.count("restart"),
            "auto_starts": self.count("auto_start"),
            "errors": self.count("error"),
            "tenants": [t.to_dict() for t in self.tenants],
            "retention": self.retention.to_dict() if self.retention else None,
        }


class FleetScheduler:
    """Runs health, restart, backup and verification across the fleet.

    Example:
        >>> report = await scheduler.run_fleet_pass(["t1", "t2"])
        >>> report.backups_succeeded
        2
    """

    def __init__(
        self,
        sessions: SessionProvider,
        store: ObjectStore,
        monitor: HealthMonitor,
        orchestrator: RestartOrchestrator,
        snapshotter: Snapshotter,
        verifier: VerificationEngine,
        history: SyncHistory,
        issues: IssueSink,
        retention: RetentionManager | None = None,
        config: FleetConfig | None = None,
        snapshot_config: SnapshotConfig | None = None,
        prefix_template: str = DEFAULT_TENANT_PREFIX,
    ) -> None:
        self.sessions = sessions
        self.store = store
        self.monitor = monitor
        self.orchestrator = orchestrator
        self.snapshotter = snapshotter
        self.verifier = verifier
        self.history = history
        self.issues = issues
        self.retention = retention
        self.config = config or FleetConfig()
        self.snapshot_config = snapshot_config or SnapshotConfig()
        self.prefix_template = prefix_template

        self.last_report: FleetPassReport | None = None
        self._pass_lock = asyncio.Lock()

    @property
    def pass_running(self) -> bool:
        return self._pass_lock.locked()

    async def run_fleet_pass(self, tenant_ids: Iterable[str]) -> FleetPassReport:
        """Run one pass over the given tenants. Never raises."""
        tenant_ids = list(dict.fromkeys(tenant_ids))
        async with self._pass_lock:
            report = FleetPassReport(started_at=time.time())
            started = time.monotonic()
            logger.info(f"Fleet pass starting for {len(tenant_ids)} tenants")

            semaphore = asyncio.Semaphore(self.config.parallelism)

            async def _bounded(tenant_id: str) -> TenantPassResult:
                async with semaphore:
                    return await self._process_tenant(tenant_id)

            report.tenants = list(await asyncio.gather(*(_bounded(t) for t in tenant_ids)))

            if self.retention is not None and self.retention.config.enabled:
                try:
                    report.retention = await self.retention.run(tenant_ids)
                except Exception as e:
                    logger.error(f"Retention pass failed: {e}", exc_info=True)

            report.duration_ms = int((time.monotonic() - started) * 1000)
            self.last_report = report
            logger.info(
                "Fleet pass complete",
                extra={k: v for k, v in report.to_dict().items() if k not in ("tenants", "retention")},
            )
            return report

    async def _process_tenant(self, tenant_id: str) -> TenantPassResult:
        result = TenantPassResult(tenant_id=tenant_id)
        try:
            session = await self.sessions.get_session(tenant_id)
            result.health = await self.monitor.check(tenant_id, session)

            if result.health.state == HealthStatus.STOPPED:
                if await self._has_valid_archive(tenant_id):
                    result.action = "auto_start"
                    result.restart = await self.orchestrator.auto_start(tenant_id, session)
                else:
                    result.action = "skipped_no_data"
                    logger.info(f"Gateway stopped and no backup for {tenant_id}, skipping")
                return result

            if self.monitor.should_restart(tenant_id):
                result.restart = await self.orchestrator.restart(
                    tenant_id, session, reason=result.health.error or "health_check"
                )
                if result.restart.suppressed:
                    result.action = "restart_suppressed"
                else:
                    result.action = "restart"
                    await self._open_issue(
                        result,
                        IssueType.HEALTH_FAILURE,
                        Severity.HIGH,
                        f"Gateway auto-restarted after {self.monitor.config.failures_before_restart} "
                        "failed health checks",
                        {"health": result.health.to_dict(), "restart": result.restart.to_dict()},
                    )
                    return result

            if self.orchestrator.relaunch_pending(tenant_id):
                result.action = "relaunch_pending"
                return result

            await self._sync(tenant_id, session, result)

        except Exception as e:
            result.action = "error"
            result.error = str(e)
            logger.error(f"Fleet pass failed for {tenant_id}: {e}", exc_info=True)
        return result

    async def _sync(self, tenant_id: str, session: SessionHandle, result: TenantPassResult) -> None:
        failed_this_pass = False
        try:
            await asyncio.wait_for(self._backup_and_verify(tenant_id, session, result),
                                   timeout=self.config.sync_timeout_s)
        except asyncio.TimeoutError:
            error = f"Sync timed out after {self.config.sync_timeout_s}s"
            logger.error(f"{error} for {tenant_id}", extra={"tenant_id": tenant_id})
            if result.backup is None:
                self.history.record(tenant_id, False, kind=FailureKind.TRANSFER_FAILURE, error=error)
                failed_this_pass = True
            result.error = error

        backup = result.backup
        if backup is not None and not backup.success and not backup.skipped:
            failed_this_pass = True

        # Skips leave the streak untouched; only a new failure can reach the threshold.
        failures = self.history.consecutive_failures(tenant_id)
        if failed_this_pass and failures == self.config.sync_failure_issue_threshold:
            last = self.history.recent(tenant_id)
            await self._open_issue(
                result,
                IssueType.SYNC_FAILURE,
                Severity.MEDIUM,
                f"{failures} consecutive backup failures",
                {"recent": [r.to_dict() for r in last[:failures]]},
            )

        gaps = self.history.consecutive_verification_gaps(tenant_id)
        if result.verification is not None and not result.verification.passed \
                and gaps == self.config.verification_issue_threshold:
            await self._open_issue(
                result,
                IssueType.VERIFICATION_GAP,
                Severity.HIGH,
                f"Critical files missing from durable storage for {gaps} consecutive passes: "
                f"{', '.join(result.verification.missing_critical_files)}",
                {"verification": result.verification.to_dict()},
            )

    async def _backup_and_verify(self, tenant_id: str, session: SessionHandle, result: TenantPassResult) -> None:
        result.backup = await self.snapshotter.backup(tenant_id, session)
        if result.backup.success:
            self.verifier.invalidate(tenant_id)
        if result.backup.skipped:
            return
        result.verification = await self.verifier.verify(tenant_id)
        self.history.record_verification(
            tenant_id, result.verification.passed, result.verification.to_dict()
        )

    async def _has_valid_archive(self, tenant_id: str) -> bool:
        head = await self.store.head(backup_key(tenant_prefix(tenant_id, self.prefix_template)))
        return head is not None and head.size > self.snapshot_config.corruption_floor_bytes

    async def _open_issue(
        self,
        result: TenantPassResult,
        type: IssueType,
        severity: Severity,
        message: str,
        details: dict[str, Any],
    ) -> None:
        try:
            issue = await self.issues.create_issue(type, severity, result.tenant_id, message, details)
            result.issues.append(issue.id)
        except Exception as e:
            logger.error(f"Failed to record {type.value} issue for {result.tenant_id}: {e}", exc_info=True)
