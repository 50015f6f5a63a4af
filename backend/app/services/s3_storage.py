"""
SiteSurvey Backend — S3-Compatible Object Storage
===================================================

What:  Stores uploads in one bucket (AWS S3, Wasabi, MinIO, Spaces).
How:   boto3 is synchronous; every call runs via asyncio.to_thread.
       Path-style addressing so custom endpoints work without DNS tricks.

Object keys are the logical paths themselves; the category/owner prefix
plays the role of a folder and needs no creation step.

Public URLs:
    <S3_PUBLIC_BASE_URL or S3_ENDPOINT_URL>/<bucket>/<key>
    Objects are written with ACL=public-read, so the URL is readable as soon
    as put() returns.

Direct uploads:
    create_upload_url() signs a PUT for a key so a client can send the bytes
    straight to the bucket. Valid for S3_UPLOAD_URL_EXPIRES seconds.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.config import settings
from app.exceptions import NotFoundError, StorageError
from app.services.retry import RetryPolicy
from app.services.storage_base import (
    DirectUpload,
    RemoteStorageClient,
    StageCallback,
    validate_logical_path,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3StorageClient(RemoteStorageClient):
    """Bucket backend with public-read objects."""

    service_name = "s3"

    def __init__(
        self,
        client: Any = None,
        bucket: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        public_base_url: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        **kwargs,
    ):
        """
        Args:
            client:          Pre-built boto3 S3 client (tests pass a MagicMock).
                             Built from settings when omitted; missing keys fall
                             back to boto3's default credential chain.
            bucket:          Defaults to S3_BUCKET.
            endpoint_url:    Defaults to S3_ENDPOINT_URL (None means AWS).
            public_base_url: Defaults to S3_PUBLIC_BASE_URL, then the endpoint.
        """
        super().__init__(retry_policy=retry_policy, **kwargs)
        self.bucket = bucket or settings.s3_bucket
        self.endpoint_url = endpoint_url or settings.s3_endpoint_url
        self.region = settings.s3_region
        self.upload_url_expires = settings.s3_upload_url_expires
        if client is None:
            extra = {} if self.endpoint_url is None else {"endpoint_url": self.endpoint_url}
            client = boto3.client(
                "s3",
                region_name=self.region,
                aws_access_key_id=settings.s3_access_key_id,
                aws_secret_access_key=settings.s3_secret_access_key,
                config=Config(s3={"addressing_style": "path"}),
                **extra,
            )
        self._client = client

        base = public_base_url or settings.s3_public_base_url or self.endpoint_url
        if not base:
            base = f"https://s3.{self.region}.amazonaws.com"
        self.public_base_url = base.rstrip("/")

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{self.bucket}/{key}"

    def key_from_url(self, url_or_ref: str) -> str:
        """Object key after "<bucket>/" in a URL; a bare key is returned as-is."""
        marker = f"{self.bucket}/"
        if url_or_ref.startswith(("http://", "https://")):
            _, found, key = url_or_ref.partition(marker)
            if not found:
                raise StorageError(
                    message="URL does not point into the configured bucket",
                    context={"url": url_or_ref, "bucket": self.bucket},
                )
            return key.split("?", 1)[0]
        return url_or_ref.lstrip("/")

    async def create_upload_url(self, logical_path: str, content_type: str) -> DirectUpload:
        """
        Presigned PUT for `logical_path`.

        The client must send the same Content-Type and the public-read ACL
        header, both of which are part of the signature.
        """
        key = validate_logical_path(logical_path)
        expires_in = self.upload_url_expires

        def _sign() -> str:
            return self._client.generate_presigned_url(
                "put_object",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "ContentType": content_type,
                    "ACL": "public-read",
                },
                ExpiresIn=expires_in,
            )

        try:
            upload_url = await asyncio.to_thread(_sign)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                message="Failed to create an S3 upload URL",
                context={"key": key, "error": str(e)},
            ) from e

        logger.info("Issued S3 upload URL for %s (expires in %ds)", key, expires_in)
        return DirectUpload(
            upload_url=upload_url,
            public_url=self.public_url(key),
            logical_path=key,
            expires_in=expires_in,
        )

    async def _put_once(
        self,
        content: bytes,
        content_type: str,
        folder: str,
        filename: str,
        on_stage: Optional[StageCallback],
    ) -> str:
        key = f"{folder}/{filename}"

        def _upload() -> None:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
                ACL="public-read",
            )

        await asyncio.to_thread(_upload)
        return self.public_url(key)

    async def delete(self, url_or_ref: str) -> bool:
        key = self.key_from_url(url_or_ref)

        def _delete() -> bool:
            try:
                self._client.head_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if _error_code(e) in _MISSING_CODES:
                    return False
                raise
            self._client.delete_object(Bucket=self.bucket, Key=key)
            return True

        try:
            deleted = await asyncio.to_thread(_delete)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                message="Failed to delete object from S3",
                context={"key": key, "error": str(e)},
            ) from e

        if deleted:
            logger.info("Deleted S3 object %s", key)
        else:
            logger.debug("Delete: S3 object already gone: %s", key)
        return deleted

    async def get_stream(self, logical_path: str) -> AsyncIterator[bytes]:
        key = logical_path.lstrip("/")

        def _get() -> bytes:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        try:
            body = await asyncio.to_thread(_get)
        except Exception as e:
            logger.warning("S3 read of %s failed: %s", key, e)
            raise NotFoundError(resource="file", resource_id=logical_path) from e

        for offset in range(0, len(body), CHUNK_SIZE):
            yield body[offset:offset + CHUNK_SIZE]

    async def health_check(self) -> bool:
        try:
            await asyncio.to_thread(self._client.head_bucket, Bucket=self.bucket)
            return True
        except Exception as e:
            logger.warning("S3 health check failed: %s", e)
            return False
