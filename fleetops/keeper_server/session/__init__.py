"""
Remote session abstraction.

The keeper reaches each tenant's sandbox only through SessionHandle.
Backends:
- memory: in-process fake filesystem and process table (tests, local dev)
- http: aiohttp client for the session control API

Invariants:
    - Session calls are async and raise SessionError on failure
    - Shell command lines are built only in commands.py

How to change safely:
    - Protocol changes require updating both backends
    - New commands need matching emulation in memory.py
"""

from .base import (
    CommandResult,
    Process,
    ProcessLogs,
    ProcessStatus,
    SessionHandle,
    SessionProvider,
    run_command,
)
from .http import HttpSession, HttpSessionClient, HttpSessionProvider
from .memory import InMemoryProcess, InMemorySession, InMemorySessionProvider

__all__ = [
    "CommandResult",
    "Process",
    "ProcessLogs",
    "ProcessStatus",
    "SessionHandle",
    "SessionProvider",
    "run_command",
    "HttpSession",
    "HttpSessionClient",
    "HttpSessionProvider",
    "InMemoryProcess",
    "InMemorySession",
    "InMemorySessionProvider",
]
