from __future__ import annotations

import logging
import re

import boto3
import pytest
import pytest_asyncio
from botocore.exceptions import BotoCoreError
from moto import mock_aws

from app.config import Settings
from app.services import storage
from app.services.storage import (
    BlobStorage,
    StorageError,
    StorageNotConfiguredError,
    output_key,
    upload_key,
)
from tests.fakes import make_png

PNG_BYTES = make_png(8, 8)


class _AsyncBody:
    def __init__(self, data: bytes):
        self._data = data

    async def read(self) -> bytes:
        return self._data

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _AsyncWrapper:
    """aiobotocore-shaped facade over a synchronous (moto-backed) boto3 client."""

    def __init__(self, client):
        self._client = client
        self.meta = client.meta
        self.closed = False

    async def put_object(self, **kwargs):
        return self._client.put_object(**kwargs)

    async def get_object(self, **kwargs):
        resp = self._client.get_object(**kwargs)
        resp["Body"] = _AsyncBody(resp["Body"].read())
        return resp

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True
        self._client.close()


def _settings(**overrides) -> Settings:
    values = {
        "S3_BUCKET": "testbucket",
        "S3_REGION": "us-east-1",
        "S3_ENDPOINT": None,
        "S3_PUBLIC_URL": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _use_sync_client(monkeypatch, blob: BlobStorage):
    async def _make():
        ctx = _AsyncWrapper(boto3.client("s3", region_name="us-east-1"))
        blob._client_ctx = ctx
        return await ctx.__aenter__()

    monkeypatch.setattr(blob, "_make_client", _make)


@pytest_asyncio.fixture
async def blob(monkeypatch):
    store = BlobStorage(_settings())
    _use_sync_client(monkeypatch, store)
    yield store
    await store.close()


@pytest.mark.asyncio
async def test_lazy_client_initialization(blob):
    with mock_aws():
        assert blob._client is None
        first = await blob.get_client()
        again = await blob.get_client()
        assert first is again


@pytest.mark.asyncio
async def test_put_and_get_roundtrip(blob):
    with mock_aws():
        s3 = boto3.client("s3", region_name="us-east-1")
        s3.create_bucket(Bucket="testbucket")

        key = upload_key(42, "my feet.png")
        stored = await blob.put(key, PNG_BYTES, "image/png")
        assert stored.key == key
        assert stored.size == len(PNG_BYTES)
        assert stored.url == f"https://testbucket.s3.us-east-1.amazonaws.com/{key}"

        obj = s3.get_object(Bucket="testbucket", Key=key)
        assert obj["ContentType"] == "image/png"

        fetched = await blob.get(key)
        assert fetched.data == PNG_BYTES
        assert fetched.content_type == "image/png"


@pytest.mark.asyncio
async def test_put_failure_raises_storage_error(blob, caplog):
    with mock_aws():
        # Intentionally do not create bucket to trigger error
        with caplog.at_level(logging.ERROR, logger="s3"):
            with pytest.raises(StorageError):
                await blob.put("uploads/1/x.png", PNG_BYTES, "image/png")
        assert "S3 upload failed" in caplog.text


@pytest.mark.asyncio
async def test_get_missing_key_raises_storage_error(blob):
    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(Bucket="testbucket")
        with pytest.raises(StorageError):
            await blob.get("generated/nope.png")


@pytest.mark.asyncio
async def test_not_configured():
    blob = BlobStorage(_settings(S3_BUCKET=None))
    assert not blob.configured
    with pytest.raises(StorageNotConfiguredError):
        await blob.put("uploads/1/x.png", PNG_BYTES, "image/png")


def test_public_url_variants():
    assert (
        BlobStorage(_settings(S3_PUBLIC_URL="https://cdn.example.com/")).public_url("a/b.png")
        == "https://cdn.example.com/a/b.png"
    )
    assert (
        BlobStorage(_settings(S3_ENDPOINT="http://minio:9000")).public_url("a/b.png")
        == "http://minio:9000/testbucket/a/b.png"
    )


def test_key_helpers():
    key = upload_key(7, "../../etc/passwd")
    assert re.fullmatch(r"uploads/7/\d{14}-[0-9a-f]{32}-[A-Za-z0-9._-]+", key)
    assert "/" not in key.split("-", 2)[-1]
    assert output_key("abc", "webp") == "generated/abc.webp"


@pytest.mark.asyncio
async def test_make_client_logs_error(monkeypatch, caplog):
    class FailingCtx:
        async def __aenter__(self):
            raise BotoCoreError()

        async def __aexit__(self, exc_type, exc, tb):
            return False

    class FakeSession:
        def client(self, *args, **kwargs):
            return FailingCtx()

    monkeypatch.setattr(storage.aioboto3, "Session", lambda: FakeSession())
    blob = BlobStorage(_settings())
    with caplog.at_level(logging.ERROR, logger="s3"):
        with pytest.raises(BotoCoreError):
            await blob.get_client()
    assert "Failed to create S3 client" in caplog.text
    assert blob._client is None


@pytest.mark.asyncio
async def test_close_ignores_errors(caplog):
    class FailingCtx:
        async def __aexit__(self, exc_type, exc, tb):
            raise RuntimeError("boom")

    blob = BlobStorage(_settings())
    blob._client = object()
    blob._client_ctx = FailingCtx()
    with caplog.at_level(logging.ERROR):
        await blob.close()
    assert "Failed to close S3 client" in caplog.text
    assert blob._client is None
