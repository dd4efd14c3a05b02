"""
Session Keeper - Durability and liveness for a fleet of tenant sessions.

Each tenant runs a long-lived agent gateway inside an ephemeral sandbox
session. The keeper snapshots the session's data tree to an S3-compatible
object store, restores it when a session is recreated, watches gateway
health and restarts it, and proves that backups hold the files that
matter.

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │  External   │────▶│  HTTP API   │────▶│ Fleet Scheduler │
    │   timer     │     │             │     │  (one pass)     │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │ per tenant
                        ┌────────────────────────────┼───────────────┐
                        │                            │               │
                        ▼                            ▼               ▼
                   ┌─────────┐               ┌─────────────┐   ┌──────────┐
                   │ Health  │──restart────▶ │ Orchestrator│   │Snapshot- │
                   │ Monitor │               │ + Breaker   │   │ter       │
                   └────┬────┘               └──────┬──────┘   └────┬─────┘
                        │                           │               │
                        ▼                           ▼               ▼
                   ┌─────────┐               ┌─────────────┐   ┌──────────┐
                   │ Session │◀──restore─────│  Launcher   │   │  Object  │
                   │  (API)  │               │             │   │  Store   │
                   └─────────┘               └─────────────┘   └──────────┘

Invariants:
    - The object store is the source of truth for tenant data
    - At most one backup or restore runs per tenant at a time
    - A restore is never followed by a backup within the cooldown window
    - Archives at or below the corruption floor are never written or restored
    - Restarts are bounded per tenant by the circuit breaker

How to change safely:
    - Object key layout (layout.py) is shared with existing backups; extend, never rename
    - New restore sources go after the existing ones in the fallback chain
    - Keep failure kinds stable; issue dashboards group by them

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
