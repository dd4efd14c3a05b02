"""
Daily point-in-time copies and their retention.

Once per UTC day every active tenant's objects are copied under a dated
prefix, then dated copies older than retention_days are deleted:

    backups/{YYYY-MM-DD}/{tenant_prefix}/...
    backups/.last-daily-backup              body: YYYY-MM-DD

Invariants:
    - At most one copy pass per UTC day (guarded by the day marker)
    - The day marker is written after all tenants were attempted
    - Only date-shaped directories are ever deleted
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from ..config import RetentionConfig
from ..errors import KeeperError
from ..layout import DEFAULT_TENANT_PREFIX, tenant_prefix
from ..store.base import ObjectStore

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RetentionReport:
    ran: bool
    date: str
    tenants_copied: int = 0
    objects_copied: int = 0
    deleted_dates: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ran": self.ran,
            "date": self.date,
            "tenants_copied": self.tenants_copied,
            "objects_copied": self.objects_copied,
            "deleted_dates": list(self.deleted_dates),
            "errors": list(self.errors),
        }


class RetentionManager:
    """Dated backup copies with a fixed retention window."""

    def __init__(
        self,
        store: ObjectStore,
        config: RetentionConfig | None = None,
        prefix_template: str = DEFAULT_TENANT_PREFIX,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.config = config or RetentionConfig()
        self.prefix_template = prefix_template
        self.clock = clock

    @property
    def marker_key(self) -> str:
        return f"{self.config.backups_prefix}/.last-daily-backup"

    def _dated_prefix(self, day: str) -> str:
        return f"{self.config.backups_prefix}/{day}/"

    async def run(self, tenant_ids: Iterable[str]) -> RetentionReport:
        """Copy today's backups (once per day) and prune expired ones."""
        today = self.clock().date().isoformat()
        report = RetentionReport(ran=False, date=today)

        marker = await self.store.get(self.marker_key)
        if marker is not None and marker.decode("utf-8").strip() == today:
            logger.debug(f"Daily backup already done for {today}")
            return report

        report.ran = True
        for tenant_id in tenant_ids:
            try:
                copied = await self.copy_tenant(tenant_id, today)
            except KeeperError as e:
                report.errors.append(f"{tenant_id}: {e.message}")
                logger.error(f"Daily backup failed for {tenant_id}: {e.message}", extra={"tenant_id": tenant_id})
                continue
            if copied:
                report.tenants_copied += 1
                report.objects_copied += copied

        await self.store.put(self.marker_key, today)
        report.deleted_dates = await self.cleanup(self.clock().date())

        logger.info(f"Daily backup complete for {today}", extra=report.to_dict())
        return report

    async def copy_tenant(self, tenant_id: str, day: str) -> int:
        """Copy every object of the tenant under the dated prefix."""
        prefix = tenant_prefix(tenant_id, self.prefix_template)
        copied = 0
        for head in await self.store.list(prefix + "/"):
            if await self._copy(head.key, self._dated_prefix(day) + head.key):
                copied += 1
        return copied

    async def list_backup_dates(self) -> list[str]:
        """Dates with a dated backup, newest first."""
        root = f"{self.config.backups_prefix}/"
        dates = set()
        for head in await self.store.list(root):
            segment = head.key[len(root):].split("/", 1)[0]
            if _DATE_RE.match(segment):
                dates.add(segment)
        return sorted(dates, reverse=True)

    async def cleanup(self, today: date) -> list[str]:
        """Delete dated backups older than retention_days."""
        cutoff = (today - timedelta(days=self.config.retention_days)).isoformat()
        deleted = []
        for day in await self.list_backup_dates():
            if day >= cutoff:
                continue
            for head in await self.store.list(self._dated_prefix(day)):
                await self.store.delete(head.key)
            deleted.append(day)
            logger.info(f"Deleted expired daily backup {day}")
        return deleted

    async def restore_tenant_from_date(self, tenant_id: str, day: str) -> int:
        """Copy a dated backup back over the tenant's live objects.

        Returns:
            Number of objects restored (0 if there is no backup for that date)
        """
        if not _DATE_RE.match(day):
            raise ValueError(f"Invalid date: {day!r} (expected YYYY-MM-DD)")
        source = self._dated_prefix(day)
        restored = 0
        for head in await self.store.list(source + tenant_prefix(tenant_id, self.prefix_template) + "/"):
            if await self._copy(head.key, head.key[len(source):]):
                restored += 1
        logger.info(
            f"Restored {restored} objects for {tenant_id} from {day}",
            extra={"tenant_id": tenant_id, "date": day},
        )
        return restored

    async def _copy(self, source: str, destination: str) -> bool:
        """Copy one object with its metadata; False if it vanished meanwhile."""
        head = await self.store.head(source)
        body = await self.store.get(source)
        if head is None or body is None:
            return False
        await self.store.put(destination, body, metadata=head.metadata)
        return True
