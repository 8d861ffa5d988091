"""S3-compatible object storage adapter."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

import boto3
import structlog
from boto3.exceptions import Boto3Error
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..config import StorageConfig
from ..errors import StorageWriteError


class ObjectStore(Protocol):
    """Narrow contract consumed by the import pipeline and the facade."""

    async def upload(self, bucket: str, key: str, path: Path, content_type: str) -> None:
        """Upload a local file under ``key``."""

    def presigned_url(
        self, bucket: str, key: str, ttl: int, filename: str | None = None
    ) -> str:
        """Return a time-limited GET URL for ``key``."""


class S3ObjectStore:
    """boto3-backed object store; blocking calls run in worker threads."""

    def __init__(self, config: StorageConfig, client=None) -> None:
        self.config = config
        self.logger = structlog.get_logger("catalog_mirror.object_store")
        self._client = client or boto3.client(
            "s3",
            endpoint_url=config.endpoint_url or None,
            region_name=config.region,
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            config=BotoConfig(
                connect_timeout=5,
                read_timeout=60,
                s3={"addressing_style": "path" if config.force_path_style else "auto"},
            ),
        )

    async def upload(self, bucket: str, key: str, path: Path, content_type: str) -> None:
        try:
            await asyncio.to_thread(
                self._client.upload_file,
                str(path),
                bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        # upload_file re-raises ClientError as S3UploadFailedError
        except (Boto3Error, BotoCoreError, ClientError) as exc:
            raise StorageWriteError(f"Upload of {key} to {bucket} failed: {exc}") from exc
        self.logger.info("object_uploaded", bucket=bucket, key=key, size=path.stat().st_size)

    def presigned_url(
        self, bucket: str, key: str, ttl: int, filename: str | None = None
    ) -> str:
        params = {"Bucket": bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{filename}"'
        return self._client.generate_presigned_url("get_object", Params=params, ExpiresIn=ttl)


__all__ = ["ObjectStore", "S3ObjectStore"]
