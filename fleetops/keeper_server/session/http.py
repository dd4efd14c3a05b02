"""
HTTP session backend.

Talks to the session control API that fronts the tenant sandboxes:

    GET    /v1/sessions/{name}/processes
    POST   /v1/sessions/{name}/processes            {"command", "env"}
    GET    /v1/sessions/{name}/processes/{id}
    GET    /v1/sessions/{name}/processes/{id}/logs
    DELETE /v1/sessions/{name}/processes/{id}
    GET    /v1/sessions/{name}/files?path=...
    PUT    /v1/sessions/{name}/files?path=...       raw body
    GET    /v1/sessions/{name}/ports/{port}?timeout_ms=...

Invariants:
    - One aiohttp.ClientSession is shared by all tenants
    - Transient gateway errors (502/503/504) are retried with backoff
    - Any other non-2xx response raises SessionError

How to change safely:
    - Keep field names in sync with the control API
    - Never log the bearer token
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from ..config import SessionApiConfig
from ..errors import SessionError, SessionFileNotFoundError, SessionTimeoutError
from .base import ProcessLogs, ProcessStatus

logger = logging.getLogger(__name__)

# HTTP status codes that indicate transient errors worth retrying
TRANSIENT_HTTP_CODES = frozenset({502, 503, 504})


class HttpSessionClient:
    """Low-level JSON client for the session control API."""

    def __init__(self, config: SessionApiConfig, max_retries: int = 3) -> None:
        self.config = config
        self.max_retries = max_retries
        self._base_url = config.base_url.rstrip("/")
        self._http: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._http is not None:
            return
        headers = {}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        self._http = aiohttp.ClientSession(
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_s),
        )

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
            self._http = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        data: bytes | None = None,
        params: dict[str, str] | None = None,
        raw: bool = False,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON (or raw bytes).

        Raises:
            SessionError: On connection failure or a non-2xx response
            SessionTimeoutError: If the request times out
        """
        if self._http is None:
            await self.start()

        url = f"{self._base_url}{path}"
        request_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None
        delay = 0.5

        for attempt in range(self.max_retries):
            try:
                async with self._http.request(
                    method,
                    url,
                    json=json_body,
                    data=data,
                    params=params,
                    timeout=request_timeout,
                ) as resp:
                    if resp.status in TRANSIENT_HTTP_CODES and attempt < self.max_retries - 1:
                        logger.info(
                            f"Session API {resp.status} on {method} {path}, retrying in {delay:.1f}s "
                            f"(attempt {attempt + 1}/{self.max_retries})"
                        )
                        await asyncio.sleep(delay)
                        delay *= 2
                        continue
                    if resp.status >= 400:
                        body = await resp.text()
                        raise SessionError(
                            f"Session API returned {resp.status} for {method} {path}",
                            details={"status": resp.status, "body": body[:500]},
                        )
                    if raw:
                        return await resp.read()
                    if resp.status == 204:
                        return None
                    return await resp.json()
            except asyncio.TimeoutError:
                raise SessionTimeoutError(f"Session API timed out on {method} {path}", timeout_s=timeout)
            except aiohttp.ClientError as e:
                raise SessionError(f"Session API request failed: {e}", details={"path": path}) from e

        raise SessionError(f"Session API request failed after {self.max_retries} retries: {path}")


class HttpProcess:
    """A process handle backed by the control API."""

    def __init__(self, client: HttpSessionClient, session_path: str, payload: dict[str, Any],
                 poll_interval_s: float) -> None:
        self._client = client
        self._session_path = session_path
        self._poll_interval_s = poll_interval_s
        self._update(payload)

    def _update(self, payload: dict[str, Any]) -> None:
        self.id = str(payload["id"])
        self.command = payload.get("command", "")
        self.status = ProcessStatus(payload.get("status", ProcessStatus.RUNNING.value))
        self.exit_code = payload.get("exitCode")
        self.start_time = float(payload.get("startTime", 0.0))

    @property
    def _path(self) -> str:
        return f"{self._session_path}/processes/{self.id}"

    async def refresh(self) -> None:
        self._update(await self._client.request("GET", self._path))

    async def get_logs(self) -> ProcessLogs:
        payload = await self._client.request("GET", f"{self._path}/logs")
        return ProcessLogs(stdout=payload.get("stdout", ""), stderr=payload.get("stderr", ""))

    async def wait(self, timeout: float) -> int | None:
        async def _poll() -> None:
            while self.status.is_active:
                await asyncio.sleep(self._poll_interval_s)
                await self.refresh()

        try:
            await asyncio.wait_for(_poll(), timeout)
        except asyncio.TimeoutError:
            raise SessionTimeoutError(
                f"Process {self.id} still running after {timeout}s", timeout_s=timeout
            )
        return self.exit_code

    async def kill(self) -> None:
        await self._client.request("DELETE", self._path)
        self.status = ProcessStatus.KILLED


class HttpSession:
    """SessionHandle for one tenant's sandbox."""

    def __init__(self, client: HttpSessionClient, session_name: str, poll_interval_s: float = 0.25) -> None:
        self._client = client
        self.session_name = session_name
        self._poll_interval_s = poll_interval_s
        self._path = f"/v1/sessions/{session_name}"

    def _process(self, payload: dict[str, Any]) -> HttpProcess:
        return HttpProcess(self._client, self._path, payload, self._poll_interval_s)

    async def list_processes(self) -> list[HttpProcess]:
        payload = await self._client.request("GET", f"{self._path}/processes")
        return [self._process(p) for p in payload.get("processes", [])]

    async def start_process(self, command: str, env: dict[str, str] | None = None) -> HttpProcess:
        payload = await self._client.request(
            "POST",
            f"{self._path}/processes",
            json_body={"command": command, "env": env or {}},
        )
        return self._process(payload)

    async def read_file(self, path: str) -> bytes:
        try:
            return await self._client.request("GET", f"{self._path}/files", params={"path": path}, raw=True)
        except SessionError as e:
            if e.details.get("status") == 404:
                raise SessionFileNotFoundError(path) from e
            raise

    async def write_file(self, path: str, content: bytes | str) -> None:
        if isinstance(content, str):
            content = content.encode("utf-8")
        await self._client.request(
            "PUT",
            f"{self._path}/files",
            params={"path": path, "mkdirs": "true"},
            data=content,
            raw=True,
        )

    async def check_port(self, port: int, timeout: float) -> bool:
        payload = await self._client.request(
            "GET",
            f"{self._path}/ports/{port}",
            params={"timeout_ms": str(int(timeout * 1000))},
            timeout=timeout + 1,
        )
        return bool(payload.get("reachable"))


class HttpSessionProvider:
    """SessionProvider over the control API.

    Example:
        >>> provider = HttpSessionProvider(SessionApiConfig.from_env())
        >>> await provider.start()
        >>> session = await provider.get_session("tenant_1")
    """

    def __init__(self, config: SessionApiConfig) -> None:
        self.config = config
        self.client = HttpSessionClient(config)

    async def start(self) -> None:
        await self.client.start()

    async def close(self) -> None:
        await self.client.close()

    async def get_session(self, tenant_id: str) -> HttpSession:
        name = self.config.session_name.format(tenant_id=tenant_id)
        return HttpSession(self.client, name, poll_interval_s=self.config.poll_interval_s)
