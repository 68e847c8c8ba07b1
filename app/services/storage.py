import logging
import re
from asyncio import Lock
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

import aioboto3
from aiobotocore.client import AioBaseClient
from botocore.exceptions import BotoCoreError, ClientError

from app.config import Settings


logger = logging.getLogger("s3")  # Logger for S3 interactions

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class StorageNotConfiguredError(RuntimeError):
    """Raised when no bucket is configured for blob storage."""


class StorageError(RuntimeError):
    """Raised when an S3 call fails."""


@dataclass(frozen=True)
class StoredObject:
    key: str
    url: str
    content_type: str
    size: int


@dataclass(frozen=True)
class FetchedObject:
    data: bytes
    content_type: str


class BlobStorage:
    """S3-compatible object storage holding uploads and generated outputs."""

    def __init__(self, cfg: Settings) -> None:
        self._cfg = cfg
        self._client_ctx: AbstractAsyncContextManager[AioBaseClient] | None = None
        self._client: AioBaseClient | None = None
        self._client_lock = Lock()

    @property
    def configured(self) -> bool:
        return bool(self._cfg.s3_bucket)

    @property
    def bucket(self) -> str:
        if not self._cfg.s3_bucket:
            raise StorageNotConfiguredError("S3_BUCKET is not set")
        return self._cfg.s3_bucket

    async def _make_client(self) -> AioBaseClient:
        session = aioboto3.Session()
        client_ctx = session.client(
            "s3",
            endpoint_url=self._cfg.s3_endpoint,
            region_name=self._cfg.s3_region,
            aws_access_key_id=self._cfg.s3_access_key,
            aws_secret_access_key=self._cfg.s3_secret_key,
        )
        try:
            client = await client_ctx.__aenter__()
        except Exception as exc:
            try:
                await client_ctx.__aexit__(None, None, None)
            except Exception:  # pragma: no cover - best effort cleanup
                logger.exception("Failed to close S3 client after failed entry")
            logger.exception("Failed to create S3 client: %s", exc)
            raise
        self._client_ctx = client_ctx
        return client

    async def get_client(self) -> AioBaseClient:
        """Return a cached aioboto3 client, creating it if needed."""
        if self._client is not None:
            return self._client

        async with self._client_lock:
            if self._client is None:
                self._client = await self._make_client()
            return self._client

    async def close(self) -> None:
        """Close the cached S3 client if it exists."""
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception:  # pragma: no cover - best effort cleanup
                logger.exception("Failed to close S3 client")
        self._client = None
        self._client_ctx = None

    async def put(self, key: str, data: bytes, content_type: str) -> StoredObject:
        """Upload bytes under ``key`` and return where they landed."""
        bucket = self.bucket
        try:
            client = await self.get_client()
            await client.put_object(
                Bucket=bucket, Key=key, Body=data, ContentType=content_type
            )
        except (BotoCoreError, ClientError) as exc:
            logger.exception("S3 upload failed for %s: %s", key, exc)
            raise StorageError("S3 upload failed") from exc
        return StoredObject(
            key=key,
            url=self.public_url(key),
            content_type=content_type,
            size=len(data),
        )

    async def get(self, key: str) -> FetchedObject:
        bucket = self.bucket
        try:
            client = await self.get_client()
            resp = await client.get_object(Bucket=bucket, Key=key)
            async with resp["Body"] as stream:
                data = await stream.read()
        except (BotoCoreError, ClientError) as exc:
            logger.exception("S3 download failed for %s: %s", key, exc)
            raise StorageError("S3 download failed") from exc
        return FetchedObject(
            data=data,
            content_type=resp.get("ContentType") or "application/octet-stream",
        )

    def public_url(self, key: str) -> str:
        """Return a public URL for the object."""
        bucket = self.bucket
        base = self._cfg.s3_public_url
        if base:
            return f"{base.rstrip('/')}/{key}"

        endpoint = self._cfg.s3_endpoint
        if endpoint:
            return f"{endpoint.rstrip('/')}/{bucket}/{key}"

        return f"https://{bucket}.s3.{self._cfg.s3_region}.amazonaws.com/{key}"


def upload_key(user_id: int, filename: str | None) -> str:
    """Key for a user upload; always lives under ``uploads/``."""
    ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    safe_name = _UNSAFE_NAME_CHARS.sub("_", filename or "upload") or "upload"
    return f"uploads/{user_id}/{ts}-{uuid4().hex}-{safe_name}"


def output_key(job_id: str, ext: str) -> str:
    return f"generated/{job_id}.{ext}"


__all__ = [
    "BlobStorage",
    "FetchedObject",
    "StorageError",
    "StorageNotConfiguredError",
    "StoredObject",
    "output_key",
    "upload_key",
]
