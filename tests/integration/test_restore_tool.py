"""
Integration tests for the restore CLI tool.

Tests cover:
- Restoring a live session
- Verifying backups
- Listing and rolling back to dated backups
- Argument parsing
"""

import pytest

from fleetops.keeper_server.snapshot.restore import RestoreFormat
from fleetops.keeper_server.snapshot.snapshotter import Snapshotter
from fleetops.keeper_server.sync.coordinator import SyncCoordinator
from fleetops.keeper_server.tools.restore import RestoreTool, build_parser


@pytest.fixture
def tool(keeper_config, store, sessions):
    return RestoreTool(keeper_config, store, sessions)


class TestRestoreTool:
    """Tests for RestoreTool operations."""

    @pytest.mark.asyncio
    async def test_restore_session(self, tool, store, sessions, seed, snapshot_config):
        source = sessions.session("source")
        seed(source)
        await Snapshotter(store, SyncCoordinator(), snapshot_config).backup("t1", source)

        result = await tool.restore_session("t1")

        assert result.success
        assert result.format == RestoreFormat.SNAPSHOT
        assert "/root/.openclaw/openclaw.json" in sessions.session("t1").files

    @pytest.mark.asyncio
    async def test_restore_requires_sessions(self, keeper_config, store):
        with pytest.raises(ValueError):
            await RestoreTool(keeper_config, store).restore_session("t1")

    @pytest.mark.asyncio
    async def test_verify(self, tool, store):
        await store.put("users/t1/clawdbot/clawdbot.json", b'{"agents": {}}')

        result = await tool.verify("t1")

        assert result.passed
        assert result.source == "legacy:clawdbot"

    @pytest.mark.asyncio
    async def test_dates_and_rollback(self, tool, store):
        await store.put("backups/2026-10-17/users/t1/backup.tar.gz", b"older")
        await store.put("users/t1/backup.tar.gz", b"current")

        assert await tool.list_dates() == ["2026-10-17"]

        assert await tool.restore_date("t1", "2026-10-17", dry_run=True) == 1
        assert store.objects["users/t1/backup.tar.gz"][0] == b"current"

        assert await tool.restore_date("t1", "2026-10-17") == 1
        assert store.objects["users/t1/backup.tar.gz"][0] == b"older"


class TestParser:
    """Tests for CLI argument parsing."""

    def test_restore_date(self):
        args = build_parser().parse_args(
            ["--dry-run", "restore-date", "--tenant-id", "t1", "--date", "2026-10-17"]
        )
        assert args.command == "restore-date"
        assert args.dry_run
        assert args.tenant_id == "t1"
        assert args.date == "2026-10-17"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_verify_requires_tenant(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["verify"])
