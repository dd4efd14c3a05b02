"""
Recent sync and verification outcomes per tenant.

Feeds the fleet scheduler's issue thresholds and the status API.

Invariants:
    - At most history_size records are kept per tenant (oldest dropped)
    - Skips (lock contention, cooldown) neither count as failures nor reset the streak
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from ..errors import FailureKind


@dataclass
class SyncRecord:
    """One recorded backup attempt."""

    success: bool
    timestamp: float
    sync_id: str | None = None
    kind: FailureKind | None = None
    error: str | None = None
    duration_ms: int = 0
    size_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value if self.kind else None
        return data


@dataclass
class TenantSyncStats:
    records: deque[SyncRecord]
    consecutive_failures: int = 0
    consecutive_verification_gaps: int = 0
    last_success: float | None = None
    last_verification: dict[str, Any] | None = field(default=None)


class SyncHistory:
    """Bounded per-tenant history of sync results."""

    def __init__(self, history_size: int = 10, clock: Callable[[], float] = time.time) -> None:
        self.history_size = history_size
        self.clock = clock
        self._tenants: dict[str, TenantSyncStats] = {}

    def _stats(self, tenant_id: str) -> TenantSyncStats:
        stats = self._tenants.get(tenant_id)
        if stats is None:
            stats = TenantSyncStats(records=deque(maxlen=self.history_size))
            self._tenants[tenant_id] = stats
        return stats

    def record(
        self,
        tenant_id: str,
        success: bool,
        *,
        sync_id: str | None = None,
        kind: FailureKind | None = None,
        error: str | None = None,
        duration_ms: int = 0,
        size_bytes: int = 0,
    ) -> SyncRecord:
        """Append a sync outcome and update the failure streak."""
        stats = self._stats(tenant_id)
        entry = SyncRecord(
            success=success,
            timestamp=self.clock(),
            sync_id=sync_id,
            kind=kind,
            error=error,
            duration_ms=duration_ms,
            size_bytes=size_bytes,
        )
        stats.records.append(entry)

        if success:
            stats.consecutive_failures = 0
            stats.last_success = entry.timestamp
        elif kind is None or not kind.is_skip:
            stats.consecutive_failures += 1
        return entry

    def record_verification(self, tenant_id: str, passed: bool, summary: dict[str, Any] | None = None) -> int:
        """Update the verification gap streak; returns the new streak length."""
        stats = self._stats(tenant_id)
        stats.consecutive_verification_gaps = 0 if passed else stats.consecutive_verification_gaps + 1
        stats.last_verification = summary
        return stats.consecutive_verification_gaps

    def consecutive_failures(self, tenant_id: str) -> int:
        stats = self._tenants.get(tenant_id)
        return stats.consecutive_failures if stats else 0

    def consecutive_verification_gaps(self, tenant_id: str) -> int:
        stats = self._tenants.get(tenant_id)
        return stats.consecutive_verification_gaps if stats else 0

    def recent(self, tenant_id: str) -> list[SyncRecord]:
        """Records newest first."""
        stats = self._tenants.get(tenant_id)
        return list(reversed(stats.records)) if stats else []

    def summary(self, tenant_id: str) -> dict[str, Any]:
        stats = self._tenants.get(tenant_id)
        if stats is None:
            return {"consecutive_failures": 0, "consecutive_verification_gaps": 0,
                    "last_success": None, "last_verification": None, "recent": []}
        return {
            "consecutive_failures": stats.consecutive_failures,
            "consecutive_verification_gaps": stats.consecutive_verification_gaps,
            "last_success": stats.last_success,
            "last_verification": stats.last_verification,
            "recent": [r.to_dict() for r in self.recent(tenant_id)],
        }
