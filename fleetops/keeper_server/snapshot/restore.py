"""
Restore of a session's data tree from the best available source.

Sources are tried in a fixed order; the first one that restores anything wins:

    1. snapshot   primary archive {prefix}/backup.tar.gz
    2. secondary  safety-net archive {prefix}/backup-archive.tar.gz
    3. critical   the critical file set, per historical layout, newest first
    4. bulk       every object under the first historical layout that has any
    5. fresh      nothing found anywhere; the agent starts empty

An archive stage that failed with a store or session error does not count
as "nothing found": if stages 3 and 4 then restore nothing, the restore
fails instead of starting fresh.

Stages 3 and 4 run together: critical files go in first so the agent can
boot correctly even if the bulk copy is cut short, then the bulk copy
completes the tree.

Invariants:
    - Archives at or below the corruption floor are never extracted
    - The RestoreMarker is written after every attempt, including fresh and failures
    - The whole chain is bounded by restore_timeout_s
    - restore() never raises

How to change safely:
    - New layouts go at the front of LEGACY_LAYOUTS, never reorder existing ones
    - Test with fixtures of every historical layout before changing mappings
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import SnapshotConfig
from ..errors import FailureKind, KeeperError, TransferError
from ..layout import (
    AGENT_DIR,
    DEFAULT_TENANT_PREFIX,
    LEGACY_LAYOUTS,
    LegacyLayout,
    archive_key,
    backup_key,
    tenant_prefix,
)
from ..session.base import SessionHandle, run_command
from ..session.commands import decode_command, extract_command, remove_command
from ..store.base import ObjectStore
from ..sync.coordinator import SyncCoordinator
from .snapshotter import list_members

logger = logging.getLogger(__name__)


class RestoreFormat(str, Enum):
    """Which kind of source a restore came from."""

    SNAPSHOT = "snapshot"
    LEGACY = "legacy"
    FRESH = "fresh"


@dataclass
class RestoreResult:
    """Outcome of a restore.

    Attributes:
        tenant_id: Tenant identifier
        success: False when the chain failed (timeout, session down, archive lookup error with nothing else found)
        format: Source kind that was used
        kind: NO_DATA_FOUND for fresh starts, CORRUPT_SNAPSHOT if a bad archive was skipped
        error: Failure or warning detail
        duration_ms: Wall time of the restore
        attempts: Ordered trail such as ["snapshot:corrupt", "secondary:ok"]
        files_restored: Files written into the session
        source: Key or layout the data came from
    """

    tenant_id: str
    success: bool
    format: RestoreFormat | None = None
    kind: FailureKind | None = None
    error: str | None = None
    duration_ms: int = 0
    attempts: list[str] = field(default_factory=list)
    files_restored: int = 0
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "success": self.success,
            "format": self.format.value if self.format else None,
            "kind": self.kind.value if self.kind else None,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "attempts": list(self.attempts),
            "files_restored": self.files_restored,
            "source": self.source,
        }


class RestoreResolver:
    """Restores a tenant's session from the object store.

    Example:
        >>> resolver = RestoreResolver(store, coordinator)
        >>> result = await resolver.restore("tenant_1", session)
        >>> result.format
        <RestoreFormat.SNAPSHOT: 'snapshot'>
    """

    def __init__(
        self,
        store: ObjectStore,
        coordinator: SyncCoordinator,
        config: SnapshotConfig | None = None,
        prefix_template: str = DEFAULT_TENANT_PREFIX,
        layouts: tuple[LegacyLayout, ...] = LEGACY_LAYOUTS,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.config = config or SnapshotConfig()
        self.prefix_template = prefix_template
        self.layouts = layouts

    async def restore(self, tenant_id: str, session: SessionHandle) -> RestoreResult:
        """Restore the tenant's tree into the session. Never raises."""
        started = time.monotonic()
        result = RestoreResult(tenant_id=tenant_id, success=False)

        try:
            await asyncio.wait_for(
                self._run_chain(tenant_id, session, result),
                timeout=self.config.restore_timeout_s,
            )
        except asyncio.TimeoutError:
            result.success = False
            result.kind = FailureKind.TRANSFER_FAILURE
            result.error = f"Restore timed out after {self.config.restore_timeout_s}s"
            logger.error(f"Restore timed out for {tenant_id}", extra={"tenant_id": tenant_id})
        except KeeperError as e:
            result.success = False
            result.kind = FailureKind.TRANSFER_FAILURE
            result.error = e.message
            logger.error(f"Restore failed for {tenant_id}: {e.message}", extra={"tenant_id": tenant_id})
        except Exception as e:
            result.success = False
            result.kind = FailureKind.TRANSFER_FAILURE
            result.error = str(e)
            logger.error(f"Restore failed for {tenant_id}: {e}", exc_info=True)

        try:
            await self.coordinator.record_restore(session)
        except KeeperError as e:
            logger.warning(f"Could not write restore marker for {tenant_id}: {e.message}")

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Restore finished for {tenant_id}: {result.format.value if result.format else 'failed'}",
            extra={"tenant_id": tenant_id, **result.to_dict()},
        )
        return result

    async def _run_chain(self, tenant_id: str, session: SessionHandle, result: RestoreResult) -> None:
        prefix = tenant_prefix(tenant_id, self.prefix_template)
        corrupt_seen = False
        errored: list[str] = []

        for label, key in (("snapshot", backup_key(prefix)), ("secondary", archive_key(prefix))):
            outcome, count = await self._restore_archive(tenant_id, session, key)
            result.attempts.append(f"{label}:{outcome}")
            if outcome == "ok":
                result.success = True
                result.format = RestoreFormat.SNAPSHOT
                result.files_restored = count
                result.source = key
                return
            corrupt_seen = corrupt_seen or outcome == "corrupt"
            if outcome == "error":
                errored.append(label)

        restored: set[str] = set()
        critical_layout = await self._restore_critical(prefix, session, restored)
        result.attempts.append(f"critical:{critical_layout.name if critical_layout else 'none'}")
        bulk_layout = await self._restore_bulk(prefix, session, restored)
        result.attempts.append(f"bulk:{bulk_layout.name if bulk_layout else 'none'}")

        if restored:
            result.success = True
            result.format = RestoreFormat.LEGACY
            result.files_restored = len(restored)
            used = bulk_layout or critical_layout
            result.source = used.list_prefix(prefix) if used else None
            return

        # An archive lookup that errored is not proof that no data exists.
        if errored:
            result.success = False
            result.kind = FailureKind.TRANSFER_FAILURE
            result.error = f"Archive lookup failed ({', '.join(errored)}) and no per-file data was found"
            return

        result.success = True
        result.format = RestoreFormat.FRESH
        result.attempts.append("fresh")
        if corrupt_seen:
            result.kind = FailureKind.CORRUPT_SNAPSHOT
            result.error = "Only corrupt archives found; starting fresh"
        else:
            result.kind = FailureKind.NO_DATA_FOUND

    async def _restore_archive(self, tenant_id: str, session: SessionHandle, key: str) -> tuple[str, int]:
        """Returns (outcome, members) with outcome in missing/corrupt/failed/error/ok."""
        floor = self.config.corruption_floor_bytes
        try:
            head = await self.store.head(key)
            if head is None:
                return "missing", 0
            if head.size <= floor:
                logger.warning(
                    f"Archive {key} is {head.size} bytes, at or below the corruption floor",
                    extra={"tenant_id": tenant_id, "kind": FailureKind.CORRUPT_SNAPSHOT.value},
                )
                return "corrupt", 0

            data = await self.store.get(key)
            if data is None or len(data) <= floor:
                return "corrupt", 0
            try:
                members = list_members(data)
            except TransferError as e:
                logger.warning(f"Archive {key} is unreadable: {e.message}", extra={"tenant_id": tenant_id})
                return "corrupt", 0

            return ("ok", len(members)) if await self._extract(session, data) else ("failed", 0)

        except KeeperError as e:
            logger.warning(f"Restore from {key} failed: {e.message}", extra={"tenant_id": tenant_id})
            return "error", 0

    async def _extract(self, session: SessionHandle, data: bytes) -> bool:
        cfg = self.config
        await session.write_file(cfg.staging_path, base64.b64encode(data).decode("ascii"))
        try:
            decoded = await run_command(
                session, decode_command(cfg.staging_path, cfg.archive_path), timeout=cfg.chunk_timeout_s
            )
            if not decoded.ok:
                logger.warning(f"Archive decode failed: {decoded.stderr.strip()[:200]}")
                return False
            extracted = await run_command(session, extract_command(cfg.archive_path), timeout=cfg.restore_timeout_s)
            if not extracted.ok:
                logger.warning(f"Archive extraction failed: {extracted.stderr.strip()[:200]}")
                return False
            return True
        finally:
            try:
                await run_command(
                    session,
                    remove_command([cfg.staging_path, cfg.archive_path]),
                    timeout=cfg.chunk_timeout_s,
                )
            except KeeperError as e:
                logger.debug(f"Restore temp cleanup failed: {e.message}")

    async def _restore_critical(
        self, prefix: str, session: SessionHandle, restored: set[str]
    ) -> LegacyLayout | None:
        """Write the critical files from the newest layout that has any of them."""
        for layout in self.layouts:
            found = 0
            for critical in self.config.critical_files:
                body = await self.store.get(layout.critical_key(prefix, critical.path))
                if not body:
                    continue
                path = f"{AGENT_DIR}/{critical.path}"
                await session.write_file(path, body)
                restored.add(path)
                found += 1
            if found:
                logger.info(f"Restored {found} critical files from layout {layout.name}")
                return layout
        return None

    async def _restore_bulk(
        self, prefix: str, session: SessionHandle, restored: set[str]
    ) -> LegacyLayout | None:
        """Copy every non-empty object of the newest layout that has objects."""
        for layout in self.layouts:
            objects = await self.store.list(layout.list_prefix(prefix))
            if not objects:
                continue
            for head in objects:
                if head.size == 0:
                    continue
                path = layout.session_path(prefix, head.key)
                if ".." in path.split("/"):
                    logger.warning(f"Skipping object with unsafe path: {head.key}")
                    continue
                body = await self.store.get(head.key)
                if not body:
                    continue
                await session.write_file(path, body)
                restored.add(path)
            logger.info(f"Bulk restored layout {layout.name}", extra={"files": len(restored)})
            return layout
        return None
