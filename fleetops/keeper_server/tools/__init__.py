"""
Operator tools for the session keeper.

- restore: restore a session, verify backups, list and roll back to dated backups
"""

from .restore import RestoreTool

__all__ = ["RestoreTool"]
