"""
In-memory object store for testing and local development.

Invariants:
    - All data is lost on process exit
    - Same None-on-missing semantics as the S3 backend
"""

from __future__ import annotations

import fnmatch
from collections.abc import Callable
from datetime import datetime, timezone

from ..errors import StoreError
from .base import ObjectHead


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryObjectStore:
    """Dict-backed ObjectStore.

    Attributes:
        objects: key -> (body, metadata, uploaded)
        failing_keys: fnmatch patterns whose put/get raise StoreError
        calls: (operation, key) log for assertions

    Example:
        >>> store = InMemoryObjectStore()
        >>> await store.put("users/t1/.last-sync", "sync|2024-01-01T00:00:00Z")
        >>> (await store.head("users/t1/.last-sync")).size
        25
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self.clock = clock
        self.objects: dict[str, tuple[bytes, dict[str, str], datetime]] = {}
        self.failing_keys: list[str] = []
        self.calls: list[tuple[str, str]] = []

    def _check(self, op: str, key: str) -> None:
        self.calls.append((op, key))
        if any(fnmatch.fnmatch(key, pattern) for pattern in self.failing_keys):
            raise StoreError(f"Injected {op} failure", key=key)

    async def get(self, key: str) -> bytes | None:
        self._check("get", key)
        entry = self.objects.get(key)
        return entry[0] if entry else None

    async def put(self, key: str, data: bytes | str, metadata: dict[str, str] | None = None) -> None:
        self._check("put", key)
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.objects[key] = (data, dict(metadata or {}), self.clock())

    async def head(self, key: str) -> ObjectHead | None:
        self._check("head", key)
        entry = self.objects.get(key)
        if entry is None:
            return None
        data, metadata, uploaded = entry
        return ObjectHead(key=key, size=len(data), uploaded=uploaded, metadata=dict(metadata))

    async def list(self, prefix: str) -> list[ObjectHead]:
        self._check("list", prefix)
        return [
            ObjectHead(key=key, size=len(data), uploaded=uploaded)
            for key, (data, _, uploaded) in sorted(self.objects.items())
            if key.startswith(prefix)
        ]

    async def delete(self, key: str) -> None:
        self._check("delete", key)
        self.objects.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))
