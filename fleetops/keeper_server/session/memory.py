"""
In-memory session implementation for testing.

This module provides a session backend that keeps a fake filesystem and
process table in memory and emulates the handful of shell commands the
keeper issues (see commands.py):

- tar czf / tar xzf (via tarfile, honouring --exclude patterns)
- stat -c%s
- dd ... | base64 -w 0 chunk reads
- base64 -d decode
- rm -f
- curl status probe of a local port
- the gateway launch command

Invariants:
    - All data is lost on process exit
    - Unknown commands exit with 127
    - The gateway process owns the gateway port: killing it closes the port

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep command parsing in sync with commands.py
    - Add knobs to help with failure scenarios rather than subclassing
"""

from __future__ import annotations

import asyncio
import base64
import fnmatch
import io
import itertools
import logging
import re
import shlex
import tarfile
import time
from collections.abc import Callable
from dataclasses import dataclass

from ..errors import SessionError, SessionFileNotFoundError, SessionTimeoutError
from .base import ProcessLogs, ProcessStatus

logger = logging.getLogger(__name__)

_PROBE_RE = re.compile(r"http://localhost:(\d+)/")


@dataclass
class CommandOverride:
    """Forced outcome for commands containing `fragment`.

    exit_code None means the command never finishes.
    """

    fragment: str
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""


class InMemoryProcess:
    """A process in the in-memory session."""

    def __init__(
        self,
        session: InMemorySession,
        pid: str,
        command: str,
        start_time: float,
        status: ProcessStatus = ProcessStatus.RUNNING,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
        env: dict[str, str] | None = None,
    ) -> None:
        self._session = session
        self.id = pid
        self.command = command
        self.start_time = start_time
        self.status = status
        self.exit_code = exit_code
        self.env = env or {}
        self._stdout = stdout
        self._stderr = stderr
        self._done = asyncio.Event()
        if not status.is_active:
            self._done.set()

    def finish(
        self,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        status: ProcessStatus | None = None,
    ) -> None:
        self.exit_code = exit_code
        self.status = status or (ProcessStatus.COMPLETED if exit_code == 0 else ProcessStatus.FAILED)
        self._stdout += stdout
        self._stderr += stderr
        self._done.set()

    async def get_logs(self) -> ProcessLogs:
        self._session._check_reachable()
        return ProcessLogs(stdout=self._stdout, stderr=self._stderr)

    async def wait(self, timeout: float) -> int | None:
        self._session._check_reachable()
        try:
            await asyncio.wait_for(self._done.wait(), timeout)
        except asyncio.TimeoutError:
            raise SessionTimeoutError(
                f"Process {self.id} still running after {timeout}s", timeout_s=timeout
            )
        return self.exit_code

    async def kill(self) -> None:
        self._session._check_reachable()
        if self.status.is_active:
            self.finish(137, status=ProcessStatus.KILLED)
            self._session._on_killed(self)

    def __repr__(self) -> str:
        return f"InMemoryProcess(id={self.id!r}, command={self.command!r}, status={self.status.value})"


class InMemorySession:
    """In-memory implementation of SessionHandle for testing.

    Attributes:
        files: Absolute path -> content
        processes: Every process ever started, oldest first
        open_ports: Ports currently accepting connections
        commands: Every command line started, in order
        gateway_mode: What the gateway command does when started:
            "ready" (running, port open), "slow" (starting, port closed until
            finish_boot()), "crash" (exits 1 immediately)
        probe_status: HTTP status printed by the curl probe when the port is open
        tar_exit_code: Exit code reported by tar czf after writing the archive
        unreachable: When true every call raises SessionError

    Example:
        >>> session = InMemorySession()
        >>> await session.write_file("/root/.openclaw/openclaw.json", "{}")
        >>> await session.read_file("/root/.openclaw/openclaw.json")
        b'{}'
    """

    def __init__(
        self,
        gateway_command: str = "/usr/local/bin/start-moltbot.sh",
        gateway_port: int = 18789,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gateway_command = gateway_command
        self.gateway_port = gateway_port
        self.clock = clock

        self.files: dict[str, bytes] = {}
        self.processes: list[InMemoryProcess] = []
        self.open_ports: set[int] = set()
        self.commands: list[str] = []
        self.overrides: list[CommandOverride] = []

        self.gateway_mode = "ready"
        self.probe_status = "200"
        self.tar_exit_code = 0
        self.unreachable = False

        self._ids = itertools.count(1)

    # =========================================================================
    # SessionHandle
    # =========================================================================

    async def list_processes(self) -> list[InMemoryProcess]:
        self._check_reachable()
        return list(self.processes)

    async def start_process(
        self, command: str, env: dict[str, str] | None = None
    ) -> InMemoryProcess:
        self._check_reachable()
        self.commands.append(command)
        process = InMemoryProcess(
            session=self,
            pid=f"proc_{next(self._ids)}",
            command=command,
            start_time=self.clock(),
            env=env,
        )
        self.processes.append(process)

        override = self._find_override(command)
        if override is not None:
            if override.exit_code is not None:
                process.finish(override.exit_code, override.stdout, override.stderr)
            return process

        if command == self.gateway_command:
            self._boot_gateway(process)
            return process

        exit_code, stdout, stderr = self._execute(command)
        process.finish(exit_code, stdout, stderr)
        return process

    async def read_file(self, path: str) -> bytes:
        self._check_reachable()
        if path not in self.files:
            raise SessionFileNotFoundError(path)
        return self.files[path]

    async def write_file(self, path: str, content: bytes | str) -> None:
        self._check_reachable()
        if isinstance(content, str):
            content = content.encode("utf-8")
        self.files[path] = content

    async def check_port(self, port: int, timeout: float) -> bool:
        self._check_reachable()
        return port in self.open_ports

    # =========================================================================
    # Testing helpers
    # =========================================================================

    def fail_command(
        self, fragment: str, exit_code: int | None, stdout: str = "", stderr: str = ""
    ) -> None:
        """Force every command containing fragment to exit with exit_code (None hangs)."""
        self.overrides.append(CommandOverride(fragment, exit_code, stdout, stderr))

    def add_gateway(
        self,
        status: ProcessStatus = ProcessStatus.RUNNING,
        start_time: float | None = None,
        open_port: bool = True,
    ) -> InMemoryProcess:
        """Register a gateway process without going through start_process."""
        process = InMemoryProcess(
            session=self,
            pid=f"proc_{next(self._ids)}",
            command=self.gateway_command,
            start_time=self.clock() if start_time is None else start_time,
            status=status,
        )
        self.processes.append(process)
        if open_port:
            self.open_ports.add(self.gateway_port)
        return process

    def finish_boot(self) -> None:
        """Complete the boot of every gateway still starting."""
        for process in self.processes:
            if process.command == self.gateway_command and process.status == ProcessStatus.STARTING:
                process.status = ProcessStatus.RUNNING
        self.open_ports.add(self.gateway_port)

    def crash_gateway(self) -> None:
        """Make every active gateway exit and close its port."""
        for process in self.gateway_processes():
            process.finish(1, stderr="gateway crashed")
        self.open_ports.discard(self.gateway_port)

    def gateway_processes(self) -> list[InMemoryProcess]:
        return [
            p for p in self.processes if p.command == self.gateway_command and p.status.is_active
        ]

    def tree(self, prefix: str = "/root/") -> dict[str, bytes]:
        return {path: data for path, data in self.files.items() if path.startswith(prefix)}

    # =========================================================================
    # Internals
    # =========================================================================

    def _check_reachable(self) -> None:
        if self.unreachable:
            raise SessionError("Session unreachable")

    def _on_killed(self, process: InMemoryProcess) -> None:
        if process.command == self.gateway_command and not self.gateway_processes():
            self.open_ports.discard(self.gateway_port)

    def _find_override(self, command: str) -> CommandOverride | None:
        for override in self.overrides:
            if override.fragment in command:
                return override
        return None

    def _boot_gateway(self, process: InMemoryProcess) -> None:
        if self.gateway_mode == "crash":
            process.finish(1, stderr="gateway exited during startup")
        elif self.gateway_mode == "slow":
            process.status = ProcessStatus.STARTING
        else:
            self.open_ports.add(self.gateway_port)

    def _execute(self, command: str) -> tuple[int, str, str]:
        probe = _PROBE_RE.search(command)
        if command.startswith("curl ") and probe:
            if int(probe.group(1)) in self.open_ports:
                return 0, self.probe_status, ""
            return 7, "000", ""

        try:
            tokens = shlex.split(command)
        except ValueError as e:
            return 2, "", f"parse error: {e}"
        if not tokens:
            return 0, "", ""

        program = tokens[0]
        if program == "tar" and len(tokens) > 2 and tokens[1] == "czf":
            return self._tar_create(tokens)
        if program == "tar" and len(tokens) > 2 and tokens[1] == "xzf":
            return self._tar_extract(tokens[2])
        if program == "stat":
            return self._stat(tokens[-1])
        if program == "dd":
            return self._read_chunk(tokens)
        if program == "base64" and tokens[1:2] == ["-d"] and ">" in tokens:
            return self._decode(tokens[2], tokens[tokens.index(">") + 1])
        if program == "rm":
            return self._remove([t for t in tokens[1:] if not t.startswith("-")])
        return 127, "", f"{program}: command not found"

    def _tar_create(self, tokens: list[str]) -> tuple[int, str, str]:
        archive_path = tokens[2]
        excludes = [t[len("--exclude="):] for t in tokens if t.startswith("--exclude=")]
        tree = tokens[-1].rstrip("/")
        root = "/" + tree + "/"

        members = {
            path: data
            for path, data in sorted(self.files.items())
            if path.startswith(root) and not self._excluded(path, excludes)
        }
        if not members:
            return 2, "", f"tar: {tree}: Cannot stat: No such file or directory"

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
            for path, data in members.items():
                info = tarfile.TarInfo(name=path.lstrip("/"))
                info.size = len(data)
                info.mtime = int(self.clock())
                tar.addfile(info, io.BytesIO(data))
        self.files[archive_path] = buffer.getvalue()

        stderr = "tar: root: file changed as we read it" if self.tar_exit_code == 1 else ""
        return self.tar_exit_code, "", stderr

    @staticmethod
    def _excluded(path: str, patterns: list[str]) -> bool:
        parts = path.strip("/").split("/")
        return any(fnmatch.fnmatch(part, pattern) for part in parts for pattern in patterns)

    def _tar_extract(self, archive_path: str) -> tuple[int, str, str]:
        data = self.files.get(archive_path)
        if data is None:
            return 2, "", f"tar: {archive_path}: Cannot open: No such file or directory"
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
                for member in tar.getmembers():
                    if not member.isfile():
                        continue
                    extracted = tar.extractfile(member)
                    if extracted is not None:
                        self.files["/" + member.name.lstrip("/")] = extracted.read()
        except (tarfile.TarError, OSError, EOFError) as e:
            return 2, "", f"gzip: stdin: not in gzip format ({e})"
        return 0, "", ""

    def _stat(self, path: str) -> tuple[int, str, str]:
        if path not in self.files:
            return 1, "", f"stat: cannot stat '{path}': No such file or directory"
        return 0, f"{len(self.files[path])}\n", ""

    def _read_chunk(self, tokens: list[str]) -> tuple[int, str, str]:
        args = dict(t.split("=", 1) for t in tokens[1:] if "=" in t and not t.startswith("2>"))
        path = args.get("if", "")
        if path not in self.files:
            return 1, "", f"dd: failed to open '{path}'"
        size = int(args["bs"])
        start = int(args["skip"]) * size
        chunk = self.files[path][start:start + size]
        return 0, base64.b64encode(chunk).decode("ascii"), ""

    def _decode(self, source: str, target: str) -> tuple[int, str, str]:
        if source not in self.files:
            return 1, "", f"base64: {source}: No such file or directory"
        try:
            decoded = base64.b64decode(b"".join(self.files[source].split()), validate=True)
        except ValueError:
            return 1, "", "base64: invalid input"
        self.files[target] = decoded
        return 0, "", ""

    def _remove(self, paths: list[str]) -> tuple[int, str, str]:
        for pattern in paths:
            for path in [p for p in self.files if fnmatch.fnmatch(p, pattern)]:
                del self.files[path]
        return 0, "", ""


class InMemorySessionProvider:
    """SessionProvider handing out one InMemorySession per tenant."""

    def __init__(self, factory: Callable[[], InMemorySession] = InMemorySession) -> None:
        self._factory = factory
        self.sessions: dict[str, InMemorySession] = {}

    def session(self, tenant_id: str) -> InMemorySession:
        if tenant_id not in self.sessions:
            self.sessions[tenant_id] = self._factory()
        return self.sessions[tenant_id]

    async def get_session(self, tenant_id: str) -> InMemorySession:
        return self.session(tenant_id)
