"""
Error types for the session keeper.

Two layers:
- Exceptions (KeeperError and subclasses) are raised inside a component
  when a remote call or validation step fails.
- FailureKind tags the typed result a component returns at its public
  boundary. Nothing raised inside a component escapes it; callers branch
  on result.success and result.kind.

Invariants:
    - All exceptions inherit from KeeperError
    - Every failed result carries exactly one FailureKind
    - LOCK_CONTENTION, COOLDOWN_ACTIVE and NO_DATA_FOUND are skips, not incidents

How to change safely:
    - Add new kinds at the end; dashboards match on the string values
    - Never reuse a kind for a different failure mode
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    """Classification of a failed (or skipped) operation."""

    CONFIG_INVALID = "config_invalid"
    TRANSFER_FAILURE = "transfer_failure"
    LOCK_CONTENTION = "lock_contention"
    COOLDOWN_ACTIVE = "cooldown_active"
    CORRUPT_SNAPSHOT = "corrupt_snapshot"
    NO_DATA_FOUND = "no_data_found"
    VERIFICATION_GAP = "verification_gap"
    RESTART_SUPPRESSED = "restart_suppressed"

    @property
    def is_skip(self) -> bool:
        """Whether this kind is a benign no-op rather than a failure."""
        return self in (
            FailureKind.LOCK_CONTENTION,
            FailureKind.COOLDOWN_ACTIVE,
            FailureKind.NO_DATA_FOUND,
        )


class KeeperError(Exception):
    """Base exception for all keeper errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "KEEPER_ERROR"
        self.details = details or {}


class SessionError(KeeperError):
    """A call against a remote session failed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="SESSION_ERROR", details=details)


class SessionTimeoutError(SessionError):
    """A session call or process did not finish within its budget."""

    def __init__(self, message: str, timeout_s: float | None = None) -> None:
        super().__init__(message, details={"timeout_s": timeout_s})
        self.code = "SESSION_TIMEOUT"
        self.timeout_s = timeout_s


class SessionFileNotFoundError(SessionError):
    """A file read from the session does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"No such file: {path}", details={"path": path})
        self.code = "SESSION_FILE_NOT_FOUND"
        self.path = path


class StoreError(KeeperError):
    """An object store call failed."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message, code="STORE_ERROR", details={"key": key})
        self.key = key


class ConfigInvalidError(KeeperError):
    """The session's primary config is missing, unparseable or still a template."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message, code="CONFIG_INVALID", details={"path": path})
        self.path = path


class TransferError(KeeperError):
    """Archive creation or transfer out of (or into) the session failed."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        output: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSFER_FAILURE",
            details={"exit_code": exit_code, "output": output},
        )
        self.exit_code = exit_code
        self.output = output


class LockContentionError(KeeperError):
    """A sync lock for the tenant is already held."""

    def __init__(self, tenant_id: str, held_for_s: float) -> None:
        super().__init__(
            f"Sync already in progress for {tenant_id} ({held_for_s:.0f}s)",
            code="LOCK_CONTENTION",
            details={"tenant_id": tenant_id, "held_for_s": held_for_s},
        )
        self.tenant_id = tenant_id
        self.held_for_s = held_for_s
