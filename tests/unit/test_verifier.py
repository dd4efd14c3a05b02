"""
Unit tests for the verification engine.

Tests cover:
- Snapshot archive member checks
- Historical layout checks
- No data at all
- Result caching
- Store failures
"""

import io
import os
import tarfile

import pytest

from fleetops.keeper_server.config import VerificationConfig
from fleetops.keeper_server.errors import FailureKind
from fleetops.keeper_server.snapshot.snapshotter import Snapshotter
from fleetops.keeper_server.verify.verifier import VerificationEngine

BACKUP = "users/t1/backup.tar.gz"


def make_archive(files: dict[str, bytes]) -> bytes:
    """gzip tar of the given members plus incompressible padding."""
    files = {**files, "root/workspace/padding.bin": os.urandom(1024)}
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def verifier(store, snapshot_config, clock):
    return VerificationEngine(store, VerificationConfig(cache_ttl_s=30), snapshot_config, clock=clock)


class TestSnapshotVerification:
    """Tests against the primary archive."""

    @pytest.mark.asyncio
    async def test_passes_after_backup(self, verifier, store, coordinator, snapshot_config, session):
        await Snapshotter(store, coordinator, snapshot_config).backup("t1", session)

        result = await verifier.verify("t1")

        assert result.passed
        assert result.kind is None
        assert result.source == "snapshot"
        assert result.missing_critical_files == []
        assert "devices/paired.json" not in result.missing_files
        assert "auth-profiles.json" in result.missing_files
        assert ".registered" in result.missing_files
        assert ".last-sync" not in result.missing_files

    @pytest.mark.asyncio
    async def test_archive_without_config(self, verifier, store):
        await store.put(BACKUP, make_archive({"root/.openclaw/devices/paired.json": b"{}"}))

        result = await verifier.verify("t1")

        assert not result.passed
        assert result.kind == FailureKind.VERIFICATION_GAP
        assert result.missing_critical_files == ["openclaw.json"]

    @pytest.mark.asyncio
    async def test_corrupt_archive_falls_back_to_layouts(self, verifier, store):
        await store.put(BACKUP, b"x" * 120)
        await store.put("users/t1/openclaw/openclaw.json", b'{"agents": {}}')

        result = await verifier.verify("t1")

        assert result.passed
        assert result.source == "legacy:openclaw"
        assert "corrupt" in result.error

    @pytest.mark.asyncio
    async def test_unreadable_archive(self, verifier, store):
        await store.put(BACKUP, os.urandom(500))

        result = await verifier.verify("t1")

        assert not result.passed
        assert "unreadable" in result.error


class TestLegacyVerification:
    """Tests against historical per-file layouts."""

    @pytest.mark.asyncio
    async def test_clawdbot_layout(self, verifier, store):
        await store.put("users/t1/clawdbot/clawdbot.json", b'{"agents": {}}')

        result = await verifier.verify("t1")

        assert result.passed
        assert result.source == "legacy:clawdbot"

    @pytest.mark.asyncio
    async def test_empty_config_object_is_missing(self, verifier, store):
        await store.put("users/t1/openclaw/openclaw.json", b"")
        await store.put("users/t1/openclaw/devices/paired.json", b"{}")

        result = await verifier.verify("t1")

        assert not result.passed
        assert result.missing_critical_files == ["openclaw.json"]

    @pytest.mark.asyncio
    async def test_no_data(self, verifier):
        result = await verifier.verify("t1")

        assert not result.passed
        assert result.source == "none"
        assert result.missing_critical_files == ["openclaw.json"]
        assert result.files_checked == 8


class TestCaching:
    """Tests for the per-tenant result cache."""

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, verifier, store, clock):
        first = await verifier.verify("t1")
        await store.put("users/t1/openclaw/openclaw.json", b'{"agents": {}}')

        clock.advance(29)
        assert await verifier.verify("t1") is first

        clock.advance(2)
        refreshed = await verifier.verify("t1")
        assert refreshed.passed

    @pytest.mark.asyncio
    async def test_invalidate(self, verifier, store):
        await verifier.verify("t1")
        await store.put("users/t1/openclaw/openclaw.json", b'{"agents": {}}')

        verifier.invalidate("t1")

        assert (await verifier.verify("t1")).passed

    @pytest.mark.asyncio
    async def test_post_restart_check_bypasses_cache(self, verifier, store):
        await verifier.verify("t1")
        await store.put("users/t1/openclaw/openclaw.json", b'{"agents": {}}')

        result = await verifier.post_restart_check("t1")

        assert result.passed
        assert verifier.cached("t1") is result

    @pytest.mark.asyncio
    async def test_cached_accessor(self, verifier):
        assert verifier.cached("t1") is None
        result = await verifier.verify("t1")
        assert verifier.cached("t1") is result


class TestFailures:
    """Tests for store failures."""

    @pytest.mark.asyncio
    async def test_store_failure_never_raises(self, verifier, store):
        store.failing_keys = ["*"]

        result = await verifier.verify("t1")

        assert not result.passed
        assert result.error
