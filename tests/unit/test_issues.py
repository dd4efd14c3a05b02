"""
Unit tests for issue sinks.

Tests cover:
- Creating, listing and resolving issues
- SQLite persistence across instances
"""

import os
import tempfile

import pytest

from fleetops.keeper_server.issues import InMemoryIssueSink, IssueType, Severity, SqliteIssueSink


@pytest.fixture
def db_path():
    """Create temporary database path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield os.path.join(tmpdir, "state", "issues.db")


@pytest.fixture(params=["memory", "sqlite"])
async def sink(request, db_path):
    if request.param == "memory":
        return InMemoryIssueSink()
    sqlite_sink = SqliteIssueSink(db_path)
    await sqlite_sink.initialize()
    return sqlite_sink


class TestIssueSink:
    """Behaviour shared by every sink."""

    @pytest.mark.asyncio
    async def test_create(self, sink):
        issue = await sink.create_issue(
            IssueType.SYNC_FAILURE, Severity.MEDIUM, "t1", "3 consecutive backup failures", {"count": 3}
        )

        assert issue.id.startswith("iss_")
        assert issue.is_open
        assert issue.created_at > 0

        listed = await sink.list_issues()
        assert [i.id for i in listed] == [issue.id]
        assert listed[0].details == {"count": 3}
        assert listed[0].type == IssueType.SYNC_FAILURE
        assert listed[0].severity == Severity.MEDIUM

    @pytest.mark.asyncio
    async def test_filter_by_tenant(self, sink):
        await sink.create_issue(IssueType.RESTART, Severity.CRITICAL, "t1", "relaunch failed")
        await sink.create_issue(IssueType.RESTART, Severity.CRITICAL, "t2", "relaunch failed")

        listed = await sink.list_issues(tenant_id="t2")

        assert [i.tenant_id for i in listed] == ["t2"]

    @pytest.mark.asyncio
    async def test_newest_first(self, sink):
        first = await sink.create_issue(IssueType.HEALTH_FAILURE, Severity.HIGH, "t1", "first")
        second = await sink.create_issue(IssueType.HEALTH_FAILURE, Severity.HIGH, "t1", "second")

        listed = await sink.list_issues()

        assert [i.id for i in listed] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_resolve(self, sink):
        issue = await sink.create_issue(IssueType.DATA_LOSS, Severity.CRITICAL, "t1", "config missing")

        assert await sink.resolve_issue(issue.id)
        assert not await sink.resolve_issue(issue.id)
        assert await sink.list_issues() == []

        resolved = await sink.list_issues(include_resolved=True)
        assert resolved[0].resolved_at is not None

    @pytest.mark.asyncio
    async def test_resolve_unknown(self, sink):
        assert not await sink.resolve_issue("iss_missing")

    @pytest.mark.asyncio
    async def test_to_dict(self, sink):
        issue = await sink.create_issue(IssueType.VERIFICATION_GAP, Severity.HIGH, "t1", "gap")
        data = issue.to_dict()
        assert data["type"] == "verification_gap"
        assert data["severity"] == "high"
        assert data["resolved_at"] is None


class TestSqlitePersistence:
    """Tests specific to the SQLite sink."""

    @pytest.mark.asyncio
    async def test_survives_reopen(self, db_path):
        first = SqliteIssueSink(db_path)
        await first.initialize()
        issue = await first.create_issue(
            IssueType.RESTART, Severity.CRITICAL, "t1", "relaunch failed", {"launch": {"error": "exited"}}
        )

        reopened = SqliteIssueSink(db_path)
        await reopened.initialize()
        listed = await reopened.list_issues()

        assert [i.id for i in listed] == [issue.id]
        assert listed[0].details == {"launch": {"error": "exited"}}
