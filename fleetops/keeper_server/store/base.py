"""
Base protocol and types for the object store abstraction.

Invariants:
    - get/head return None for a missing key; only transport failures raise
    - list returns every object under a prefix, sorted by key, without
      metadata (as S3 ListObjectsV2); use head for metadata
    - Metadata values are strings (S3 user metadata semantics)

How to change safely:
    - Protocol changes require updating all implementations
    - Do not add server-side features (copy, multipart) to the protocol
      unless every backend can provide them
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class ObjectHead:
    """Object attributes without the body.

    Attributes:
        key: Object key
        size: Size in bytes
        uploaded: Last upload time (UTC)
        metadata: User metadata
    """

    key: str
    size: int
    uploaded: datetime
    metadata: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class ObjectStore(Protocol):
    """Namespaced blob store."""

    async def get(self, key: str) -> bytes | None:
        ...

    async def put(self, key: str, data: bytes | str, metadata: dict[str, str] | None = None) -> None:
        ...

    async def head(self, key: str) -> ObjectHead | None:
        ...

    async def list(self, prefix: str) -> list[ObjectHead]:
        ...

    async def delete(self, key: str) -> None:
        ...
