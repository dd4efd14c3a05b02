"""
Durability verification against the object store.

Answers "if this session died now, would the tenant get their state
back?" by looking only at the store, never at the session.

Checks:
    - Valid primary archive: its member list must contain the critical
      files under root/.openclaw/; .last-sync and .registered are expected
      alongside it
    - Otherwise: the critical files in the newest historical layout that
      has any object
    - No data at all: every critical file is missing

Invariants:
    - Only missing required critical files fail verification
    - Results are cached per tenant for cache_ttl_s
    - verify() never raises
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..config import SnapshotConfig, VerificationConfig
from ..errors import FailureKind, KeeperError
from ..layout import (
    DEFAULT_TENANT_PREFIX,
    LEGACY_LAYOUTS,
    LegacyLayout,
    backup_key,
    registered_key,
    sync_marker_key,
    tenant_prefix,
)
from ..snapshot.snapshotter import list_members
from ..store.base import ObjectStore

logger = logging.getLogger(__name__)

ARCHIVE_AGENT_DIR = "root/.openclaw"


@dataclass
class VerificationResult:
    """Structured discrepancy report for one tenant.

    Attributes:
        tenant_id: Tenant identifier
        passed: No required critical file is missing
        missing_critical_files: Required critical files not found
        missing_files: Optional critical files and expected objects not found
        files_checked: Number of files and objects looked for
        duration_ms: Time spent checking
        timestamp: When the check ran (Unix seconds)
        source: "snapshot", "legacy:<layout>" or "none"
        error: Store failure or archive problem, if any
    """

    tenant_id: str
    passed: bool
    missing_critical_files: list[str] = field(default_factory=list)
    missing_files: list[str] = field(default_factory=list)
    files_checked: int = 0
    duration_ms: int = 0
    timestamp: float = 0.0
    source: str = "none"
    error: str | None = None

    @property
    def kind(self) -> FailureKind | None:
        return None if self.passed else FailureKind.VERIFICATION_GAP

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "passed": self.passed,
            "missing_critical_files": list(self.missing_critical_files),
            "missing_files": list(self.missing_files),
            "files_checked": self.files_checked,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
            "source": self.source,
            "error": self.error,
        }


class VerificationEngine:
    """Checks a tenant's durable state in the object store."""

    def __init__(
        self,
        store: ObjectStore,
        config: VerificationConfig | None = None,
        snapshot_config: SnapshotConfig | None = None,
        prefix_template: str = DEFAULT_TENANT_PREFIX,
        layouts: tuple[LegacyLayout, ...] = LEGACY_LAYOUTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config or VerificationConfig()
        self.snapshot_config = snapshot_config or SnapshotConfig()
        self.prefix_template = prefix_template
        self.layouts = layouts
        self.clock = clock
        self._cache: dict[str, tuple[float, VerificationResult]] = {}

    async def verify(self, tenant_id: str) -> VerificationResult:
        """Return the tenant's verification result, cached for cache_ttl_s."""
        cached = self._cache.get(tenant_id)
        if cached is not None and cached[0] > self.clock():
            return cached[1]
        return await self._check_and_cache(tenant_id)

    async def post_restart_check(self, tenant_id: str) -> VerificationResult:
        """Uncached verification used right after a relaunch."""
        return await self._check_and_cache(tenant_id)

    def invalidate(self, tenant_id: str) -> None:
        self._cache.pop(tenant_id, None)

    def cached(self, tenant_id: str) -> VerificationResult | None:
        entry = self._cache.get(tenant_id)
        return entry[1] if entry else None

    async def _check_and_cache(self, tenant_id: str) -> VerificationResult:
        started = time.monotonic()
        try:
            result = await self._check(tenant_id)
        except KeeperError as e:
            logger.error(f"Verification failed for {tenant_id}: {e.message}", extra={"tenant_id": tenant_id})
            result = VerificationResult(tenant_id=tenant_id, passed=False, error=e.message)

        result.timestamp = self.clock()
        result.duration_ms = int((time.monotonic() - started) * 1000)
        self._cache[tenant_id] = (result.timestamp + self.config.cache_ttl_s, result)

        if not result.passed:
            logger.warning(
                f"Verification gap for {tenant_id}: missing {result.missing_critical_files}",
                extra={"tenant_id": tenant_id, "source": result.source},
            )
        return result

    async def _check(self, tenant_id: str) -> VerificationResult:
        prefix = tenant_prefix(tenant_id, self.prefix_template)
        critical = self.snapshot_config.critical_files
        result = VerificationResult(tenant_id=tenant_id, passed=False)

        present = await self._archive_members(prefix, result)
        if present is not None:
            result.source = "snapshot"
            found = {name[len(ARCHIVE_AGENT_DIR) + 1:] for name in present if name.startswith(ARCHIVE_AGENT_DIR + "/")}
            for expected in (sync_marker_key(prefix), registered_key(prefix)):
                result.files_checked += 1
                if await self.store.head(expected) is None:
                    result.missing_files.append(expected[len(prefix) + 1:])
        else:
            found = set()
            for layout in self.layouts:
                objects = await self.store.list(layout.list_prefix(prefix))
                if not objects:
                    continue
                keys = {head.key for head in objects if head.size > 0}
                found = {c.path for c in critical if layout.critical_key(prefix, c.path) in keys}
                result.source = f"legacy:{layout.name}"
                break

        for entry in critical:
            result.files_checked += 1
            if entry.path in found:
                continue
            if entry.required:
                result.missing_critical_files.append(entry.path)
            else:
                result.missing_files.append(entry.path)

        result.passed = not result.missing_critical_files
        return result

    async def _archive_members(self, prefix: str, result: VerificationResult) -> list[str] | None:
        """Member names of the primary archive, or None if there is no valid one."""
        key = backup_key(prefix)
        head = await self.store.head(key)
        if head is None:
            return None
        if head.size <= self.snapshot_config.corruption_floor_bytes:
            result.error = f"Primary archive is {head.size} bytes (corrupt)"
            return None
        data = await self.store.get(key)
        if data is None:
            return None
        try:
            return list_members(data)
        except KeeperError as e:
            result.error = f"Primary archive unreadable: {e.message}"
            return None
