from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from photo_catalog import config
from photo_catalog.core.bridge import AsyncBridge
from photo_catalog.core.exceptions import UpstreamFailure

logger = logging.getLogger("photo_catalog.storage")

# Global variable to store the storage adapter instance
_storage_adapter: Optional["S3StorageAdapter"] = None


class ObjectStorageAdapter(Protocol):
    """What handlers need from object storage: presigned grants and deletion by key."""

    async def mint_write_grant(self, key: str, content_type: str, ttl: timedelta) -> str:
        ...

    async def mint_read_grant(self, key: str, ttl: timedelta) -> str:
        ...

    async def delete_object(self, key: str) -> None:
        ...

    async def ping(self) -> bool:
        ...


class S3StorageAdapter:
    """boto3-backed adapter. The client is blocking, so every call goes through a bridge."""

    def __init__(self, client, bucket: str, bridge: AsyncBridge) -> None:
        if not bucket:
            raise ValueError("S3_BUCKET must be set")
        self._client = client
        self._bucket = bucket
        self._bridge = bridge

    @property
    def bucket(self) -> str:
        return self._bucket

    async def mint_write_grant(self, key: str, content_type: str, ttl: timedelta) -> str:
        return await self._bridge.run(
            self._client.generate_presigned_url,
            "put_object",
            Params={"Bucket": self._bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=int(ttl.total_seconds()),
        )

    async def mint_read_grant(self, key: str, ttl: timedelta) -> str:
        return await self._bridge.run(
            self._client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self._bucket, "Key": key},
            ExpiresIn=int(ttl.total_seconds()),
        )

    async def delete_object(self, key: str) -> None:
        await self._bridge.run(self._client.delete_object, Bucket=self._bucket, Key=key)
        logger.info("event=object_deleted bucket=%s key=%s", self._bucket, key)

    async def ping(self) -> bool:
        try:
            await self._bridge.run(self._client.head_bucket, Bucket=self._bucket)
        except UpstreamFailure:
            logger.warning("event=storage_unreachable bucket=%s", self._bucket)
            return False
        return True

    def close(self) -> None:
        self._bridge.shutdown(wait=False)


def build_s3_client():
    kwargs = {
        "region_name": config.S3_REGION,
        "config": Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
    }
    if config.S3_ENDPOINT_URL:
        kwargs["endpoint_url"] = config.S3_ENDPOINT_URL
    if config.AWS_ACCESS_KEY_ID and config.AWS_SECRET_ACCESS_KEY:
        kwargs["aws_access_key_id"] = config.AWS_ACCESS_KEY_ID
        kwargs["aws_secret_access_key"] = config.AWS_SECRET_ACCESS_KEY
    return boto3.client("s3", **kwargs)


def get_storage_adapter() -> ObjectStorageAdapter:
    """Lazily build the process-wide S3 adapter."""
    global _storage_adapter
    if _storage_adapter is None:
        bridge = AsyncBridge(
            config.STORAGE_WORKERS,
            name="storage",
            upstream_errors=(BotoCoreError, ClientError),
            upstream_message="Object storage unavailable",
        )
        _storage_adapter = S3StorageAdapter(build_s3_client(), config.S3_BUCKET, bridge)
        logger.info("event=storage_adapter_ready bucket=%s", config.S3_BUCKET)
    return _storage_adapter


def shutdown_storage_adapter() -> None:
    global _storage_adapter
    if _storage_adapter is not None:
        _storage_adapter.close()
        _storage_adapter = None
