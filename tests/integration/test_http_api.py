"""
Integration tests for the HTTP API.

Tests cover:
- Health endpoint
- Fleet pass trigger (auth, validation, concurrency)
- Tenant status and verification
- Circuit breaker reset
- Issues
- Dated backups
- CORS
"""

import pytest
from aiohttp.test_utils import TestClient, TestServer

from fleetops.keeper_server.api import create_http_app
from fleetops.keeper_server.config import HttpConfig
from fleetops.keeper_server.issues import IssueType, Severity

TOKEN = {"X-Keeper-Token": "secret"}


@pytest.fixture
async def client(keeper):
    app = create_http_app(keeper, HttpConfig(trigger_token="secret"))
    async with TestClient(TestServer(app)) as client:
        yield client


class TestHealthEndpoint:
    """Tests for GET /v1/health."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/v1/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["pass_running"] is False
        assert data["last_pass_at"] is None


class TestFleetPassEndpoint:
    """Tests for POST /v1/fleet/pass."""

    @pytest.mark.asyncio
    async def test_requires_token(self, client):
        resp = await client.post("/v1/fleet/pass", json={"tenant_ids": ["t1"]})
        assert resp.status == 401
        assert "error" in await resp.json()

    @pytest.mark.asyncio
    async def test_wrong_token(self, client):
        resp = await client.post(
            "/v1/fleet/pass", json={"tenant_ids": ["t1"]}, headers={"X-Keeper-Token": "guess"}
        )
        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_runs_pass(self, client, add_tenant, store):
        add_tenant("t1")

        resp = await client.post("/v1/fleet/pass", json={"tenant_ids": ["t1"]}, headers=TOKEN)

        assert resp.status == 200
        data = await resp.json()
        assert data["tenant_count"] == 1
        assert data["backups_succeeded"] == 1
        assert data["tenants"][0]["action"] == "none"
        assert "users/t1/backup.tar.gz" in store.objects

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        resp = await client.post("/v1/fleet/pass", data="not json", headers=TOKEN)
        assert resp.status == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"tenant_ids": "t1"}, {"tenant_ids": [""]}, ["t1"]])
    async def test_invalid_tenant_ids(self, client, body):
        resp = await client.post("/v1/fleet/pass", json=body, headers=TOKEN)
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_conflict_while_running(self, client, keeper):
        async with keeper.scheduler._pass_lock:
            resp = await client.post("/v1/fleet/pass", json={"tenant_ids": ["t1"]}, headers=TOKEN)
        assert resp.status == 409

    @pytest.mark.asyncio
    async def test_last_pass(self, client, add_tenant):
        assert (await client.get("/v1/fleet/last-pass")).status == 404

        add_tenant("t1")
        await client.post("/v1/fleet/pass", json={"tenant_ids": ["t1"]}, headers=TOKEN)

        resp = await client.get("/v1/fleet/last-pass")
        assert resp.status == 200
        assert (await resp.json())["tenant_count"] == 1


class TestTenantEndpoints:
    """Tests for per-tenant endpoints."""

    @pytest.mark.asyncio
    async def test_status(self, client, add_tenant):
        add_tenant("t1")
        await client.post("/v1/fleet/pass", json={"tenant_ids": ["t1"]}, headers=TOKEN)

        resp = await client.get("/v1/tenants/t1/status")

        assert resp.status == 200
        data = await resp.json()
        assert data["health"]["state"] == "active"
        assert data["circuit_breaker"]["tripped"] is False
        assert data["relaunch_pending"] is False
        assert data["sync_lock_age_s"] is None
        assert len(data["sync"]["recent"]) == 1
        assert data["verification"]["passed"] is True

    @pytest.mark.asyncio
    async def test_status_of_unknown_tenant_is_read_only(self, client, keeper):
        resp = await client.get("/v1/tenants/nobody/status")

        assert resp.status == 200
        data = await resp.json()
        assert data["health"] is None
        assert data["circuit_breaker"]["tripped"] is False
        assert keeper.monitor.all_states() == {}
        assert keeper.breaker._windows == {}

    @pytest.mark.asyncio
    async def test_verification(self, client, store):
        resp = await client.get("/v1/tenants/t1/verification")
        assert (await resp.json())["passed"] is False

        await store.put("users/t1/openclaw/openclaw.json", b'{"agents": {}}')

        cached = await client.get("/v1/tenants/t1/verification")
        assert (await cached.json())["passed"] is False

        refreshed = await client.get("/v1/tenants/t1/verification?refresh=true")
        data = await refreshed.json()
        assert data["passed"] is True
        assert data["source"] == "legacy:openclaw"

    @pytest.mark.asyncio
    async def test_breaker_reset(self, client, keeper):
        for _ in range(5):
            keeper.breaker.record_restart("t1")
        assert keeper.breaker.is_tripped("t1")

        resp = await client.post("/v1/tenants/t1/circuit-breaker/reset")

        assert resp.status == 200
        assert (await resp.json())["circuit_breaker"]["tripped"] is False
        assert not keeper.breaker.is_tripped("t1")


class TestIssueEndpoints:
    """Tests for issue listing and resolution."""

    @pytest.mark.asyncio
    async def test_list_and_resolve(self, client, issues):
        issue = await issues.create_issue(IssueType.RESTART, Severity.CRITICAL, "t1", "relaunch failed")
        await issues.create_issue(IssueType.SYNC_FAILURE, Severity.MEDIUM, "t2", "3 failures")

        listed = await (await client.get("/v1/issues?tenant_id=t1")).json()
        assert [i["id"] for i in listed["issues"]] == [issue.id]

        resolved = await client.post(f"/v1/issues/{issue.id}/resolve")
        assert resolved.status == 200

        again = await client.post(f"/v1/issues/{issue.id}/resolve")
        assert again.status == 404

        open_issues = await (await client.get("/v1/issues")).json()
        assert [i["tenant_id"] for i in open_issues["issues"]] == ["t2"]

        everything = await (await client.get("/v1/issues?include_resolved=true")).json()
        assert len(everything["issues"]) == 2


class TestBackupDates:
    """Tests for GET /v1/backups/dates."""

    @pytest.mark.asyncio
    async def test_dates(self, client, store):
        await store.put("backups/2026-10-18/users/t1/backup.tar.gz", b"a")
        await store.put("backups/2026-10-19/users/t1/backup.tar.gz", b"b")

        resp = await client.get("/v1/backups/dates")

        assert (await resp.json()) == {"dates": ["2026-10-19", "2026-10-18"]}


class TestCors:
    """Tests for CORS headers."""

    @pytest.mark.asyncio
    async def test_headers_on_response(self, client):
        resp = await client.get("/v1/health", headers={"Origin": "https://dash.example.com"})
        assert resp.headers["Access-Control-Allow-Origin"] == "https://dash.example.com"

    @pytest.mark.asyncio
    async def test_preflight(self, client):
        resp = await client.options("/v1/fleet/pass", headers={"Origin": "https://dash.example.com"})
        assert resp.status == 200
        assert "X-Keeper-Token" in resp.headers["Access-Control-Allow-Headers"]
