"""
HTTP API for the session keeper.

Endpoints:
    GET  /v1/health                                   liveness of the keeper itself
    POST /v1/fleet/pass                               run a fleet pass {"tenant_ids": [...]}
    GET  /v1/fleet/last-pass                          report of the latest pass
    GET  /v1/tenants/{tenant_id}/status               health, breaker, sync and verification state
    GET  /v1/tenants/{tenant_id}/verification         verification (cached, ?refresh=true bypasses)
    POST /v1/tenants/{tenant_id}/circuit-breaker/reset
    GET  /v1/issues                                   ?tenant_id=...&include_resolved=true
    POST /v1/issues/{issue_id}/resolve
    GET  /v1/backups/dates                            dated backups, newest first

Invariants:
    - JSON request/response format
    - The fleet-pass trigger requires X-Keeper-Token when a trigger token is configured
    - Only one fleet pass runs at a time; a second trigger gets 409

How to change safely:
    - Add fields to responses, never rename existing ones (dashboards read them)
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import hmac
import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

from ..config import HttpConfig

logger = logging.getLogger(__name__)


def _json_error(exc: type[web.HTTPException], message: str) -> web.HTTPException:
    return exc(text=json.dumps({"error": message}), content_type="application/json")


def create_http_app(keeper: Any, config: HttpConfig | None = None) -> web.Application:
    """Create the HTTP application.

    Args:
        keeper: Keeper instance holding the wired components
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application()
    app["keeper"] = keeper
    app["http_config"] = config

    app.router.add_get("/v1/health", handle_health)
    app.router.add_post("/v1/fleet/pass", handle_fleet_pass)
    app.router.add_get("/v1/fleet/last-pass", handle_last_pass)
    app.router.add_get("/v1/tenants/{tenant_id}/status", handle_tenant_status)
    app.router.add_get("/v1/tenants/{tenant_id}/verification", handle_verification)
    app.router.add_post("/v1/tenants/{tenant_id}/circuit-breaker/reset", handle_breaker_reset)
    app.router.add_get("/v1/issues", handle_list_issues)
    app.router.add_post("/v1/issues/{issue_id}/resolve", handle_resolve_issue)
    app.router.add_get("/v1/backups/dates", handle_backup_dates)

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Keeper-Token"
        return response

    app.middlewares.append(cors_middleware)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response({"error": str(e), "error_code": "INTERNAL"}, status=500)

    app.middlewares.insert(0, error_middleware)

    return app


def _keeper(request: web.Request) -> Any:
    return request.app["keeper"]


async def handle_health(request: web.Request) -> web.Response:
    """Handle GET /v1/health."""
    keeper = _keeper(request)
    last = keeper.scheduler.last_report
    return web.json_response(
        {
            "status": "ok",
            "pass_running": keeper.scheduler.pass_running,
            "last_pass_at": last.started_at if last else None,
            "relaunches_pending": sum(
                1 for tenant_id in keeper.monitor.all_states()
                if keeper.orchestrator.relaunch_pending(tenant_id)
            ),
        }
    )


async def handle_fleet_pass(request: web.Request) -> web.Response:
    """Handle POST /v1/fleet/pass - Run one fleet pass."""
    keeper = _keeper(request)
    config: HttpConfig = request.app["http_config"]

    if config.trigger_token:
        supplied = request.headers.get("X-Keeper-Token", "")
        if not hmac.compare_digest(supplied, config.trigger_token):
            raise _json_error(web.HTTPUnauthorized, "Invalid or missing X-Keeper-Token")

    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise _json_error(web.HTTPBadRequest, "Invalid JSON body")

    tenant_ids = body.get("tenant_ids") if isinstance(body, dict) else None
    if not isinstance(tenant_ids, list) or not all(isinstance(t, str) and t for t in tenant_ids):
        raise _json_error(web.HTTPBadRequest, "tenant_ids must be a list of non-empty strings")

    if keeper.scheduler.pass_running:
        raise _json_error(web.HTTPConflict, "A fleet pass is already running")

    report = await keeper.scheduler.run_fleet_pass(tenant_ids)
    return web.json_response(report.to_dict())


async def handle_last_pass(request: web.Request) -> web.Response:
    """Handle GET /v1/fleet/last-pass."""
    report = _keeper(request).scheduler.last_report
    if report is None:
        raise _json_error(web.HTTPNotFound, "No fleet pass has run yet")
    return web.json_response(report.to_dict())


async def handle_tenant_status(request: web.Request) -> web.Response:
    """Handle GET /v1/tenants/{tenant_id}/status."""
    keeper = _keeper(request)
    tenant_id = request.match_info["tenant_id"]
    verification = keeper.verifier.cached(tenant_id)
    health = keeper.monitor.peek_state(tenant_id)

    return web.json_response(
        {
            "tenant_id": tenant_id,
            "health": health.to_dict() if health else None,
            "circuit_breaker": keeper.breaker.snapshot(tenant_id),
            "relaunch_pending": keeper.orchestrator.relaunch_pending(tenant_id),
            "sync_lock_age_s": keeper.coordinator.lock_age(tenant_id),
            "sync": keeper.history.summary(tenant_id),
            "verification": verification.to_dict() if verification else None,
        }
    )


async def handle_verification(request: web.Request) -> web.Response:
    """Handle GET /v1/tenants/{tenant_id}/verification."""
    keeper = _keeper(request)
    tenant_id = request.match_info["tenant_id"]
    if request.query.get("refresh", "").lower() == "true":
        keeper.verifier.invalidate(tenant_id)
    result = await keeper.verifier.verify(tenant_id)
    return web.json_response(result.to_dict())


async def handle_breaker_reset(request: web.Request) -> web.Response:
    """Handle POST /v1/tenants/{tenant_id}/circuit-breaker/reset."""
    keeper = _keeper(request)
    tenant_id = request.match_info["tenant_id"]
    keeper.breaker.reset(tenant_id)
    return web.json_response({"tenant_id": tenant_id, "circuit_breaker": keeper.breaker.snapshot(tenant_id)})


async def handle_list_issues(request: web.Request) -> web.Response:
    """Handle GET /v1/issues."""
    keeper = _keeper(request)
    issues = await keeper.issues.list_issues(
        tenant_id=request.query.get("tenant_id"),
        include_resolved=request.query.get("include_resolved", "").lower() == "true",
    )
    return web.json_response({"issues": [issue.to_dict() for issue in issues]})


async def handle_resolve_issue(request: web.Request) -> web.Response:
    """Handle POST /v1/issues/{issue_id}/resolve."""
    issue_id = request.match_info["issue_id"]
    if not await _keeper(request).issues.resolve_issue(issue_id):
        raise _json_error(web.HTTPNotFound, f"No open issue {issue_id}")
    return web.json_response({"id": issue_id, "resolved": True})


async def handle_backup_dates(request: web.Request) -> web.Response:
    """Handle GET /v1/backups/dates."""
    retention = _keeper(request).retention
    dates = await retention.list_backup_dates() if retention else []
    return web.json_response({"dates": dates})


async def run_http_server(app: web.Application, config: HttpConfig) -> web.AppRunner:
    """Start serving the app; returns the runner for cleanup."""
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()
    logger.info(f"HTTP API listening on {config.host}:{config.port}")
    return runner
