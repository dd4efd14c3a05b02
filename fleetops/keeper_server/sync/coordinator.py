"""
Per-tenant sync lock and post-restore cooldown.

Two gates decide whether a backup may run:

1. SyncLock: process-local {tenant_id -> acquired_at}. A second sync for the
   same tenant fails fast instead of queueing. Locks older than
   lock_max_age_s are treated as leaked and replaced.
2. Cooldown: after a restore the session writes its restore time to the
   RestoreMarker file. For cooldown_s afterwards backups are suppressed so a
   half-restored tree is never uploaded over a good snapshot.

Invariants:
    - At most one sync per tenant holds a lock younger than lock_max_age_s
    - The cooldown gate fails open: a missing or unreadable marker means no cooldown
    - All state is process-local; nothing is persisted

How to change safely:
    - Keep the marker body as integer epoch seconds; deployed images read it
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from ..config import SyncConfig
from ..errors import LockContentionError
from ..session.base import SessionHandle

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """Advisory sync locks plus cooldown checks.

    Example:
        >>> coordinator = SyncCoordinator(SyncConfig())
        >>> async with coordinator.hold("tenant_1"):
        ...     remaining = await coordinator.cooldown_remaining("tenant_1", session)
    """

    def __init__(self, config: SyncConfig | None = None, clock: Callable[[], float] = time.time) -> None:
        self.config = config or SyncConfig()
        self.clock = clock
        self._locks: dict[str, float] = {}

    def try_acquire(self, tenant_id: str) -> bool:
        """Take the tenant's lock; False if a fresh lock is already held."""
        now = self.clock()
        acquired_at = self._locks.get(tenant_id)
        if acquired_at is not None:
            age = now - acquired_at
            if age < self.config.lock_max_age_s:
                logger.info(
                    f"Sync lock held for {tenant_id} ({age:.0f}s), skipping",
                    extra={"tenant_id": tenant_id, "lock_age_s": age},
                )
                return False
            logger.warning(
                f"Discarding stale sync lock for {tenant_id} ({age:.0f}s old)",
                extra={"tenant_id": tenant_id, "lock_age_s": age},
            )
        self._locks[tenant_id] = now
        return True

    def release(self, tenant_id: str) -> None:
        self._locks.pop(tenant_id, None)

    def lock_age(self, tenant_id: str) -> float | None:
        acquired_at = self._locks.get(tenant_id)
        if acquired_at is None:
            return None
        return self.clock() - acquired_at

    def held_locks(self) -> dict[str, float]:
        """Snapshot of held locks as {tenant_id: age_seconds}."""
        now = self.clock()
        return {tenant_id: now - acquired_at for tenant_id, acquired_at in self._locks.items()}

    @asynccontextmanager
    async def hold(self, tenant_id: str) -> AsyncIterator[None]:
        """Hold the tenant's lock for the duration of the block.

        Raises:
            LockContentionError: If the lock is already held
        """
        if not self.try_acquire(tenant_id):
            raise LockContentionError(tenant_id, self.lock_age(tenant_id) or 0.0)
        try:
            yield
        finally:
            self.release(tenant_id)

    async def cooldown_remaining(self, tenant_id: str, session: SessionHandle) -> float:
        """Seconds left in the post-restore cooldown, 0.0 if none."""
        try:
            raw = await session.read_file(self.config.restore_marker_path)
            restored_at = float(raw.decode("utf-8").strip())
        except Exception as e:
            logger.debug(f"No usable restore marker for {tenant_id}: {e}")
            return 0.0

        remaining = self.config.cooldown_s - (self.clock() - restored_at)
        return max(0.0, remaining)

    async def record_restore(self, session: SessionHandle) -> None:
        """Write the RestoreMarker (epoch seconds) into the session."""
        await session.write_file(self.config.restore_marker_path, str(int(self.clock())))
