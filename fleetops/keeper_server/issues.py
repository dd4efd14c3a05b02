"""
Operator-facing issues.

An Issue is opened when automation gives up or detects possible data
loss. Issues stay open until an operator resolves them.

Sinks:
- InMemoryIssueSink: tests and local development
- SqliteIssueSink: durable single-file store for the keeper process

Invariants:
    - Issues are never resolved automatically
    - created_at / resolved_at are Unix milliseconds

How to change safely:
    - Add new IssueType values at the end; dashboards match on them
    - Schema changes must be additive (ALTER TABLE ADD COLUMN)

Table schema:
    issues:
        - id TEXT PRIMARY KEY
        - type TEXT
        - severity TEXT
        - tenant_id TEXT
        - message TEXT
        - details_json TEXT
        - created_at INTEGER (Unix ms)
        - resolved_at INTEGER (Unix ms, NULL while open)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class IssueType(str, Enum):
    SYNC_FAILURE = "sync_failure"
    HEALTH_FAILURE = "health_failure"
    RESTART = "restart"
    VERIFICATION_GAP = "verification_gap"
    DATA_LOSS = "data_loss"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class Issue:
    """An operator-visible problem for one tenant."""

    id: str
    type: IssueType
    severity: Severity
    tenant_id: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    created_at: int = 0
    resolved_at: int | None = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "tenant_id": self.tenant_id,
            "message": self.message,
            "details": self.details,
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
        }


@runtime_checkable
class IssueSink(Protocol):
    """Where issues are recorded."""

    async def create_issue(
        self,
        type: IssueType,
        severity: Severity,
        tenant_id: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> Issue:
        ...

    async def list_issues(self, tenant_id: str | None = None, include_resolved: bool = False) -> list[Issue]:
        ...

    async def resolve_issue(self, issue_id: str) -> bool:
        ...


def _new_issue(
    type: IssueType,
    severity: Severity,
    tenant_id: str,
    message: str,
    details: dict[str, Any] | None,
) -> Issue:
    issue = Issue(
        id=f"iss_{uuid.uuid4().hex[:16]}",
        type=IssueType(type),
        severity=Severity(severity),
        tenant_id=tenant_id,
        message=message,
        details=details or {},
        created_at=int(time.time() * 1000),
    )
    logger.warning(
        f"Issue opened for {tenant_id}: {message}",
        extra={"issue_id": issue.id, "issue_type": issue.type.value, "severity": issue.severity.value},
    )
    return issue


class InMemoryIssueSink:
    """List-backed IssueSink."""

    def __init__(self) -> None:
        self.issues: list[Issue] = []

    async def create_issue(
        self,
        type: IssueType,
        severity: Severity,
        tenant_id: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> Issue:
        issue = _new_issue(type, severity, tenant_id, message, details)
        self.issues.append(issue)
        return issue

    async def list_issues(self, tenant_id: str | None = None, include_resolved: bool = False) -> list[Issue]:
        return [
            issue
            for issue in reversed(self.issues)
            if (tenant_id is None or issue.tenant_id == tenant_id)
            and (include_resolved or issue.is_open)
        ]

    async def resolve_issue(self, issue_id: str) -> bool:
        for issue in self.issues:
            if issue.id == issue_id and issue.is_open:
                issue.resolved_at = int(time.time() * 1000)
                return True
        return False

    def of_type(self, type: IssueType) -> list[Issue]:
        return [issue for issue in self.issues if issue.type == type]


class SqliteIssueSink:
    """SQLite-backed IssueSink.

    Example:
        >>> sink = SqliteIssueSink("/var/lib/keeper/issues.db")
        >>> await sink.initialize()
        >>> issue = await sink.create_issue(IssueType.RESTART, Severity.CRITICAL, "t1", "relaunch failed")
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA journal_mode = WAL")
            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create the schema if needed."""
        async with self._lock:
            with self._get_connection() as conn:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS issues (
                        id TEXT PRIMARY KEY,
                        type TEXT NOT NULL,
                        severity TEXT NOT NULL,
                        tenant_id TEXT NOT NULL,
                        message TEXT NOT NULL,
                        details_json TEXT NOT NULL DEFAULT '{}',
                        created_at INTEGER NOT NULL,
                        resolved_at INTEGER
                    );

                    CREATE INDEX IF NOT EXISTS idx_issues_tenant ON issues(tenant_id, created_at DESC);
                    CREATE INDEX IF NOT EXISTS idx_issues_open ON issues(resolved_at, created_at DESC);
                """)
        logger.info(f"Issue store ready at {self.db_path}")

    @staticmethod
    def _row_to_issue(row: sqlite3.Row) -> Issue:
        return Issue(
            id=row["id"],
            type=IssueType(row["type"]),
            severity=Severity(row["severity"]),
            tenant_id=row["tenant_id"],
            message=row["message"],
            details=json.loads(row["details_json"]),
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
        )

    async def create_issue(
        self,
        type: IssueType,
        severity: Severity,
        tenant_id: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> Issue:
        issue = _new_issue(type, severity, tenant_id, message, details)
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO issues (id, type, severity, tenant_id, message, details_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        issue.id,
                        issue.type.value,
                        issue.severity.value,
                        issue.tenant_id,
                        issue.message,
                        json.dumps(issue.details, default=str),
                        issue.created_at,
                    ),
                )
        return issue

    async def list_issues(self, tenant_id: str | None = None, include_resolved: bool = False) -> list[Issue]:
        query = "SELECT * FROM issues WHERE 1=1"
        params: list[Any] = []
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if not include_resolved:
            query += " AND resolved_at IS NULL"
        query += " ORDER BY created_at DESC, rowid DESC"

        async with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute(query, params).fetchall()
        return [self._row_to_issue(row) for row in rows]

    async def resolve_issue(self, issue_id: str) -> bool:
        async with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "UPDATE issues SET resolved_at = ? WHERE id = ? AND resolved_at IS NULL",
                    (int(time.time() * 1000), issue_id),
                )
                return cursor.rowcount > 0
