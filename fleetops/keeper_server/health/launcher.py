"""
Gateway boot path.

ensure_running() is the single way a gateway is brought up, for first
boots, auto-starts and restarts alike:

    1. Reuse a gateway that is already up (or wait for one still booting)
    2. Restore the tenant's data tree
    3. Write the registration marker on first boot
    4. Start the gateway command and wait for its port

Invariants:
    - Restore always precedes the gateway start
    - ensure_running() never raises
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..config import GatewayConfig
from ..errors import KeeperError, SessionError, SessionTimeoutError
from ..layout import DEFAULT_TENANT_PREFIX, registered_key, tenant_prefix
from ..session.base import Process, ProcessStatus, SessionHandle
from ..snapshot.restore import RestoreResolver, RestoreResult
from ..snapshot.snapshotter import utc_iso
from ..store.base import ObjectStore
from .monitor import find_gateway_process

logger = logging.getLogger(__name__)


@dataclass
class LaunchResult:
    tenant_id: str
    success: bool
    process_id: str | None = None
    already_running: bool = False
    registered: bool = False
    restore: RestoreResult | None = None
    error: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "success": self.success,
            "process_id": self.process_id,
            "already_running": self.already_running,
            "registered": self.registered,
            "restore": self.restore.to_dict() if self.restore else None,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


class GatewayLauncher:
    """Brings a tenant's gateway up with its data restored."""

    def __init__(
        self,
        store: ObjectStore,
        restorer: RestoreResolver,
        config: GatewayConfig | None = None,
        prefix_template: str = DEFAULT_TENANT_PREFIX,
        poll_interval_s: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.restorer = restorer
        self.config = config or GatewayConfig()
        self.prefix_template = prefix_template
        self.poll_interval_s = poll_interval_s
        self.clock = clock

    async def ensure_running(self, tenant_id: str, session: SessionHandle) -> LaunchResult:
        started = time.monotonic()
        result = LaunchResult(tenant_id=tenant_id, success=False)
        try:
            await self._ensure_running(tenant_id, session, result)
        except KeeperError as e:
            result.error = e.message
            logger.error(f"Gateway launch failed for {tenant_id}: {e.message}", extra={"tenant_id": tenant_id})
        except Exception as e:
            result.error = str(e)
            logger.error(f"Gateway launch failed for {tenant_id}: {e}", exc_info=True)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    async def _ensure_running(self, tenant_id: str, session: SessionHandle, result: LaunchResult) -> None:
        existing = await find_gateway_process(session, self.config)
        if existing is not None:
            try:
                await self._wait_for_port(session, existing)
                result.success = True
                result.already_running = True
                result.process_id = existing.id
                return
            except SessionError as e:
                logger.warning(
                    f"Existing gateway for {tenant_id} never became reachable, replacing it: {e.message}",
                    extra={"tenant_id": tenant_id, "process_id": existing.id},
                )
                await existing.kill()

        result.restore = await self.restorer.restore(tenant_id, session)
        if not result.restore.success:
            logger.warning(
                f"Starting gateway for {tenant_id} after failed restore: {result.restore.error}",
                extra={"tenant_id": tenant_id},
            )

        result.registered = await self._register(tenant_id)

        logger.info(f"Starting gateway for {tenant_id}", extra={"tenant_id": tenant_id})
        process = await session.start_process(self.config.command, env={"TENANT_ID": tenant_id})
        result.process_id = process.id
        await self._wait_for_port(session, process)
        result.success = True
        logger.info(f"Gateway up for {tenant_id}", extra={"tenant_id": tenant_id, "process_id": process.id})

    async def _register(self, tenant_id: str) -> bool:
        """Write the first-boot registration marker if absent."""
        key = registered_key(tenant_prefix(tenant_id, self.prefix_template))
        if await self.store.head(key) is not None:
            return False
        body = json.dumps({"registeredAt": utc_iso(self.clock()), "tenantId": tenant_id})
        await self.store.put(key, body)
        logger.info(f"Registered tenant {tenant_id}", extra={"tenant_id": tenant_id})
        return True

    async def _wait_for_port(self, session: SessionHandle, process: Process) -> None:
        """Wait for the gateway port, failing early if the process exits.

        Raises:
            SessionTimeoutError: If the port stays closed past startup_timeout_s
            SessionError: If the process exits first
        """
        deadline = time.monotonic() + self.config.startup_timeout_s
        while True:
            remaining = deadline - time.monotonic()
            if await session.check_port(self.config.port, timeout=max(0.1, min(5.0, remaining))):
                return
            if remaining <= 0:
                raise SessionTimeoutError(
                    f"Gateway port {self.config.port} not reachable after {self.config.startup_timeout_s}s",
                    timeout_s=self.config.startup_timeout_s,
                )
            try:
                exit_code = await process.wait(min(self.poll_interval_s, max(remaining, 0.01)))
            except SessionTimeoutError:
                continue
            if process.status == ProcessStatus.KILLED:
                raise SessionError(f"Gateway process {process.id} was killed during startup")
            logs = await process.get_logs()
            raise SessionError(
                f"Gateway exited with {exit_code} during startup",
                details={"stderr": logs.stderr[-500:]},
            )
