"""
Sync concurrency controls and history.

Invariants:
    - Sync locks and history are process-local
    - Cooldown after restore fails open

How to change safely:
    - Lock semantics are skip-on-contention; never make backups queue
"""

from .coordinator import SyncCoordinator
from .history import SyncHistory, SyncRecord

__all__ = ["SyncCoordinator", "SyncHistory", "SyncRecord"]
