"""
Session keeper test suite.

This package contains:
- unit/: Unit tests (in-memory store and sessions, no network)
- integration/: Integration tests (fleet passes, HTTP API, restore tool)
"""
