from __future__ import annotations

import asyncio
import logging
from typing import Any

import boto3

from app.core.settings import Settings

logger = logging.getLogger(__name__)


class StorageNotConfiguredError(RuntimeError):
    pass


class S3ArtifactStore:
    """S3 adapter for ArtifactStore. boto3 is blocking, so every call runs in a worker thread."""

    def __init__(
        self,
        *,
        bucket: str | None,
        region: str = "us-east-1",
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        endpoint_url: str | None = None,
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self._region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._endpoint_url = endpoint_url
        self._client = client

    @classmethod
    def from_settings(cls, cfg: Settings) -> "S3ArtifactStore":
        return cls(
            bucket=cfg.s3_bucket_name,
            region=cfg.aws_region,
            access_key_id=cfg.aws_access_key_id,
            secret_access_key=cfg.aws_secret_access_key,
            endpoint_url=cfg.s3_endpoint_url,
        )

    @property
    def configured(self) -> bool:
        return bool(self.bucket)

    def _s3(self) -> Any:
        if not self.bucket:
            raise StorageNotConfiguredError("S3 bucket name is not configured")
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=self._region,
                aws_access_key_id=self._access_key_id,
                aws_secret_access_key=self._secret_access_key,
                endpoint_url=self._endpoint_url,
            )
        return self._client

    async def put(self, key: str, body: bytes, content_type: str) -> None:
        s3 = self._s3()
        await asyncio.to_thread(
            s3.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
        )
        logger.info("storage.put bucket=%s key=%s bytes=%s", self.bucket, key, len(body))

    async def signed_url(self, key: str, ttl_s: int) -> str:
        s3 = self._s3()
        return await asyncio.to_thread(
            s3.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=int(ttl_s),
        )

    async def delete(self, key: str) -> None:
        s3 = self._s3()
        await asyncio.to_thread(s3.delete_object, Bucket=self.bucket, Key=key)
        logger.info("storage.delete bucket=%s key=%s", self.bucket, key)
