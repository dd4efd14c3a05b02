"""
Snapshot module for the session keeper.

This module moves a session's data tree to and from the object store:
- Snapshotter: tar archive backup with safety net
- RestoreResolver: ordered fallback chain across archives and historical layouts

Invariants:
    - Archives at or below the corruption floor are never trusted
    - Public entry points return typed results and never raise
"""

from .restore import RestoreFormat, RestoreResolver, RestoreResult
from .snapshotter import BackupResult, Snapshotter, list_members, utc_iso

__all__ = [
    "BackupResult",
    "Snapshotter",
    "RestoreFormat",
    "RestoreResolver",
    "RestoreResult",
    "list_members",
    "utc_iso",
]
