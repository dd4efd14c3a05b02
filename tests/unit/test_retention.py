"""
Unit tests for dated backups and retention.

Tests cover:
- Daily copy guarded by the day marker
- Expiry of old dated copies
- Listing and restoring from a date
"""

from datetime import datetime, timezone

import pytest

from fleetops.keeper_server.config import RetentionConfig
from fleetops.keeper_server.fleet.retention import RetentionManager

TODAY = datetime(2026, 10, 19, 3, 0, tzinfo=timezone.utc)


@pytest.fixture
def retention(store):
    return RetentionManager(store, RetentionConfig(retention_days=7), clock=lambda: TODAY)


@pytest.fixture
async def tenant_objects(store):
    await store.put("users/t1/backup.tar.gz", b"archive-t1", metadata={"syncId": "tar-1"})
    await store.put("users/t1/.last-sync", "tar-1|2026-10-19T02:00:00.000Z")
    await store.put("users/t2/backup.tar.gz", b"archive-t2")


class TestDailyCopy:
    """Tests for the daily copy pass."""

    @pytest.mark.asyncio
    async def test_copies_tenants(self, retention, store, tenant_objects):
        report = await retention.run(["t1", "t2", "t3"])

        assert report.ran
        assert report.date == "2026-10-19"
        assert report.tenants_copied == 2
        assert report.objects_copied == 3
        assert store.objects["backups/2026-10-19/users/t1/backup.tar.gz"][0] == b"archive-t1"
        assert store.objects["backups/2026-10-19/users/t1/backup.tar.gz"][1] == {"syncId": "tar-1"}
        assert ("head", "users/t1/backup.tar.gz") in store.calls
        assert store.objects["backups/.last-daily-backup"][0] == b"2026-10-19"

    @pytest.mark.asyncio
    async def test_once_per_day(self, retention, store, tenant_objects):
        await retention.run(["t1"])
        await store.put("users/t1/backup.tar.gz", b"newer")

        report = await retention.run(["t1"])

        assert not report.ran
        assert store.objects["backups/2026-10-19/users/t1/backup.tar.gz"][0] == b"archive-t1"

    @pytest.mark.asyncio
    async def test_tenant_failure_does_not_stop_pass(self, retention, store, tenant_objects):
        store.failing_keys = ["backups/*/users/t1/*"]

        report = await retention.run(["t1", "t2"])

        assert report.tenants_copied == 1
        assert report.errors and report.errors[0].startswith("t1:")
        assert "backups/.last-daily-backup" in store.objects


class TestRetention:
    """Tests for expiry and listing."""

    @pytest.mark.asyncio
    async def test_expired_dates_deleted(self, retention, store):
        for day in ("2026-10-01", "2026-10-12", "2026-10-15"):
            await store.put(f"backups/{day}/users/t1/backup.tar.gz", b"old")

        report = await retention.run([])

        assert report.deleted_dates == ["2026-10-01"]
        assert store.keys("backups/2026-10-01/") == []
        assert store.keys("backups/2026-10-12/")
        assert store.keys("backups/2026-10-15/")

    @pytest.mark.asyncio
    async def test_list_dates(self, retention, store):
        await store.put("backups/2026-10-15/users/t1/backup.tar.gz", b"a")
        await store.put("backups/2026-10-18/users/t1/backup.tar.gz", b"b")
        await store.put("backups/manual/users/t1/backup.tar.gz", b"c")
        await store.put("backups/.last-daily-backup", "2026-10-18")

        assert await retention.list_backup_dates() == ["2026-10-18", "2026-10-15"]


class TestRestoreFromDate:
    """Tests for rolling a tenant back to a dated copy."""

    @pytest.mark.asyncio
    async def test_restore(self, retention, store):
        await store.put(
            "backups/2026-10-15/users/t1/backup.tar.gz", b"from-the-15th", metadata={"syncId": "tar-15"}
        )
        await store.put("backups/2026-10-15/users/t2/backup.tar.gz", b"other-tenant")
        await store.put("users/t1/backup.tar.gz", b"current")

        restored = await retention.restore_tenant_from_date("t1", "2026-10-15")

        assert restored == 1
        assert store.objects["users/t1/backup.tar.gz"][0] == b"from-the-15th"
        assert store.objects["users/t1/backup.tar.gz"][1] == {"syncId": "tar-15"}
        assert "users/t2/backup.tar.gz" not in store.objects

    @pytest.mark.asyncio
    async def test_missing_date(self, retention):
        assert await retention.restore_tenant_from_date("t1", "2026-01-01") == 0

    @pytest.mark.asyncio
    async def test_invalid_date(self, retention):
        with pytest.raises(ValueError):
            await retention.restore_tenant_from_date("t1", "last-tuesday")
