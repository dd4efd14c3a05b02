"""
S3-compatible object store (AWS S3, R2, MinIO) via aiobotocore.

Invariants:
    - One client per store, opened in start() and closed in close()
    - NoSuchKey / 404 map to None, every other ClientError to StoreError
    - Metadata keys are sent as-is; S3 lowercases them on read

How to change safely:
    - Test against MinIO before changing request parameters
"""

from __future__ import annotations

import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..config import StoreConfig
from ..errors import StoreError
from .base import ObjectHead

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


class S3ObjectStore:
    """ObjectStore backed by an S3 bucket.

    Example:
        >>> store = S3ObjectStore(StoreConfig.from_env())
        >>> await store.start()
        >>> head = await store.head("users/t1/backup.tar.gz")
        >>> await store.close()
    """

    def __init__(self, config: StoreConfig) -> None:
        self.config = config
        self._session = None
        self._s3_ctx = None
        self._client = None

    async def start(self) -> None:
        """Initialize S3 client."""
        if self._client is not None:
            return
        self._session = get_session()

        client_kwargs: dict[str, Any] = {"region_name": self.config.region}
        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url
        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._client = await self._s3_ctx.__aenter__()
        logger.info("S3 client initialized", extra={"bucket": self.config.bucket})

    async def close(self) -> None:
        """Close S3 client."""
        if self._client is not None:
            await self._s3_ctx.__aexit__(None, None, None)
            self._client = None

    async def __aenter__(self) -> S3ObjectStore:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _require_client(self) -> Any:
        if self._client is None:
            raise StoreError("S3 client not started")
        return self._client

    @staticmethod
    def _is_missing(error: ClientError) -> bool:
        return str(error.response.get("Error", {}).get("Code")) in _MISSING_CODES

    async def get(self, key: str) -> bytes | None:
        client = self._require_client()
        try:
            response = await client.get_object(Bucket=self.config.bucket, Key=key)
            async with response["Body"] as stream:
                return await stream.read()
        except ClientError as e:
            if self._is_missing(e):
                return None
            raise StoreError(f"S3 get failed: {e}", key=key) from e
        except BotoCoreError as e:
            raise StoreError(f"S3 get failed: {e}", key=key) from e

    async def put(self, key: str, data: bytes | str, metadata: dict[str, str] | None = None) -> None:
        client = self._require_client()
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            await client.put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=data,
                Metadata={k: str(v) for k, v in (metadata or {}).items()},
            )
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"S3 put failed: {e}", key=key) from e

    async def head(self, key: str) -> ObjectHead | None:
        client = self._require_client()
        try:
            response = await client.head_object(Bucket=self.config.bucket, Key=key)
        except ClientError as e:
            if self._is_missing(e):
                return None
            raise StoreError(f"S3 head failed: {e}", key=key) from e
        except BotoCoreError as e:
            raise StoreError(f"S3 head failed: {e}", key=key) from e
        return ObjectHead(
            key=key,
            size=int(response["ContentLength"]),
            uploaded=response["LastModified"],
            metadata=dict(response.get("Metadata", {})),
        )

    async def list(self, prefix: str) -> list[ObjectHead]:
        client = self._require_client()
        heads: list[ObjectHead] = []
        try:
            paginator = client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    heads.append(
                        ObjectHead(key=obj["Key"], size=int(obj["Size"]), uploaded=obj["LastModified"])
                    )
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"S3 list failed: {e}", key=prefix) from e
        return sorted(heads, key=lambda h: h.key)

    async def delete(self, key: str) -> None:
        client = self._require_client()
        try:
            await client.delete_object(Bucket=self.config.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"S3 delete failed: {e}", key=key) from e
