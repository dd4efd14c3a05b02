"""
Base protocol and types for the remote session abstraction.

A session is an ephemeral, per-tenant execution environment that runs the
agent gateway. The keeper only ever talks to it through SessionHandle;
backends differ in transport (in-memory for tests, HTTP for the session
control API).

Invariants:
    - Every call is async and may raise SessionError
    - read_file raises SessionError when the path does not exist
    - write_file creates parent directories
    - Process.wait raises SessionTimeoutError when the budget runs out

How to change safely:
    - Protocol changes require updating all implementations
    - Keep process status values in sync with the control API
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from ..errors import SessionTimeoutError

logger = logging.getLogger(__name__)


class ProcessStatus(str, Enum):
    """Lifecycle status reported for a session process."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_active(self) -> bool:
        return self in (ProcessStatus.STARTING, ProcessStatus.RUNNING)


@dataclass
class ProcessLogs:
    """Captured output of a process."""

    stdout: str = ""
    stderr: str = ""


@dataclass
class CommandResult:
    """Outcome of a command run to completion.

    Attributes:
        command: Command line that was run
        exit_code: Exit code (None if the process reported none)
        stdout: Captured stdout
        stderr: Captured stderr
    """

    command: str
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class Process(Protocol):
    """A process started inside a session.

    Attributes:
        id: Process identifier assigned by the session
        command: Command line
        status: Last known status
        exit_code: Exit code once finished
        start_time: Start time (Unix seconds)
    """

    id: str
    command: str
    status: ProcessStatus
    exit_code: int | None
    start_time: float

    async def get_logs(self) -> ProcessLogs:
        """Return captured stdout/stderr."""
        ...

    async def wait(self, timeout: float) -> int | None:
        """Wait for the process to exit and return its exit code.

        Raises:
            SessionTimeoutError: If it is still running after timeout seconds
        """
        ...

    async def kill(self) -> None:
        """Terminate the process."""
        ...


@runtime_checkable
class SessionHandle(Protocol):
    """Remote session operations used by the keeper."""

    async def list_processes(self) -> list[Process]:
        ...

    async def start_process(self, command: str, env: dict[str, str] | None = None) -> Process:
        ...

    async def read_file(self, path: str) -> bytes:
        ...

    async def write_file(self, path: str, content: bytes | str) -> None:
        ...

    async def check_port(self, port: int, timeout: float) -> bool:
        ...


@runtime_checkable
class SessionProvider(Protocol):
    """Resolves the session handle of a tenant."""

    async def get_session(self, tenant_id: str) -> SessionHandle:
        ...


async def run_command(session: SessionHandle, command: str, timeout: float) -> CommandResult:
    """Run a command in the session and wait for it to finish.

    The process is killed (best effort) if it overruns its budget.

    Args:
        session: Target session
        command: Shell command line
        timeout: Seconds to wait for completion

    Returns:
        CommandResult with exit code and captured output

    Raises:
        SessionError: If the session call fails
        SessionTimeoutError: If the command does not finish in time
    """
    process = await session.start_process(command)
    try:
        exit_code = await process.wait(timeout)
    except SessionTimeoutError:
        try:
            await process.kill()
        except Exception as e:
            logger.debug(f"Failed to kill overrunning process {process.id}: {e}")
        raise

    logs = await process.get_logs()
    return CommandResult(
        command=command,
        exit_code=exit_code,
        stdout=logs.stdout,
        stderr=logs.stderr,
    )
