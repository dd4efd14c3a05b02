"""
HTTP API for the session keeper.

The API is the trigger surface for fleet passes (an external timer posts
to it) and the read surface for dashboards.

Invariants:
    - Handlers only read component state or call public component methods
    - Errors are returned as JSON {"error": ...}
"""

from .http_server import create_http_app, run_http_server

__all__ = ["create_http_app", "run_http_server"]
