"""
Object store abstraction.

Backends:
- memory: dict-backed, for tests and local development
- s3: S3-compatible bucket via aiobotocore

Invariants:
    - Missing keys are None, not errors
    - Transport failures raise StoreError

How to change safely:
    - Protocol changes require updating both backends
"""

from .base import ObjectHead, ObjectStore
from .memory import InMemoryObjectStore
from .s3 import S3ObjectStore

__all__ = ["ObjectHead", "ObjectStore", "InMemoryObjectStore", "S3ObjectStore"]
